"""
Permission engine unit tests.

Tests cover:
  - role defaults and SUPER_ADMIN bypass
  - explicit grants on top of role defaults
  - dependency / conflict validation
  - diff + risk level
  - suggestions and search
"""

from admin_console.services import permission_engine as pe


class TestRoleChecks:
    def test_super_admin_bypasses_everything(self):
        assert pe.has_permission("SUPER_ADMIN", "users.bulk")
        assert pe.has_permission("SUPER_ADMIN", "made.up")

    def test_admin_lacks_segregated_permissions(self):
        assert pe.has_permission("ADMIN", "users.manage")
        assert not pe.has_permission("ADMIN", "invoices.create")

    def test_client_only_sees_dashboard(self):
        assert pe.get_common_permissions_for_role("CLIENT") == ["dashboard.view"]
        assert not pe.has_permission("CLIENT", "users.view")

    def test_missing_or_unknown_role(self):
        assert not pe.has_permission(None, "dashboard.view")
        assert pe.get_common_permissions_for_role("JANITOR") == []

    def test_explicit_grant_extends_role(self):
        assert not pe.has_permission("STAFF", "audit.view")
        assert pe.has_permission("STAFF", "audit.view", grants=["audit.view"])


class TestValidation:
    def test_valid_set(self):
        result = pe.validate(["users.view", "users.manage"])
        assert result["is_valid"] is True
        assert result["errors"] == []

    def test_missing_dependency(self):
        result = pe.validate(["users.manage"])
        assert result["is_valid"] is False
        assert result["errors"][0]["type"] == "missing_dependency"
        assert result["errors"][0]["requires"] == "users.view"

    def test_conflict_reported_once(self):
        result = pe.validate(["invoices.view", "invoices.create", "invoices.approve"])
        conflicts = [e for e in result["errors"] if e["type"] == "conflict"]
        assert len(conflicts) == 1

    def test_unknown_permission(self):
        result = pe.validate(["nope.nothing"])
        assert result["errors"][0]["type"] == "unknown_permission"

    def test_critical_permission_warns(self):
        result = pe.validate(["settings.view", "settings.manage"])
        assert result["is_valid"] is True
        assert result["warnings"][0]["permission"] == "settings.manage"

    def test_can_grant_permission(self):
        assert pe.can_grant_permission("users.manage", ["users.view"])
        assert not pe.can_grant_permission("users.manage", [])
        assert not pe.can_grant_permission("invoices.approve", ["invoices.view", "invoices.create"])
        assert not pe.can_grant_permission("ghost.perm", [])

    def test_expand_with_dependencies_is_transitive(self):
        assert pe.expand_with_dependencies(["users.bulk"]) == ["users.bulk", "users.manage", "users.view"]


class TestDiffAndSuggestions:
    def test_diff(self):
        diff = pe.calculate_diff(["users.view", "audit.view"], ["users.view", "users.bulk"])
        assert diff["added"] == ["users.bulk"]
        assert diff["removed"] == ["audit.view"]
        assert diff["unchanged"] == ["users.view"]
        assert diff["risk_level"] == "critical"

    def test_diff_without_additions_is_low_risk(self):
        assert pe.calculate_diff(["users.bulk"], [])["risk_level"] == "low"

    def test_suggests_missing_dependency(self):
        suggestions = pe.get_suggestions(None, ["audit.export"])
        assert {"action": "add", "permission": "audit.view", "reason": "Required by audit.export"} in suggestions

    def test_suggests_dropping_riskier_conflict(self):
        suggestions = pe.get_suggestions(None, ["invoices.view", "invoices.create", "invoices.approve"])
        removals = [s for s in suggestions if s["action"] == "remove"]
        assert removals == [{"action": "remove", "permission": "invoices.approve",
                             "reason": "Conflicts with invoices.create"}]

    def test_suggests_role_defaults(self):
        suggestions = pe.get_suggestions("CLIENT", [])
        assert suggestions == [{"action": "add", "permission": "dashboard.view",
                                "reason": "Default for role CLIENT"}]

    def test_search_is_case_insensitive(self):
        codenames = {p["codename"] for p in pe.search_permissions("AUDIT")}
        assert codenames == {"audit.view", "audit.export"}

    def test_categories_cover_catalogue(self):
        grouped = pe.list_permissions_by_category()
        assert sum(len(v) for v in grouped.values()) == len(pe.ALL_PERMISSIONS)
        assert "billing" in grouped
