"""
Entity relationship analysis tests (service + /api/v1/admin/entities).

Tests cover:
  - role overlap and the conflict threshold
  - orphaned users, permission gaps, dependency gaps
  - team hierarchy loops and parents outside the firm
  - set_team_parent loop guard and audit entry
  - relationship map nodes / edges and endpoint permissions
"""

import pytest

from admin_console.core.exceptions import NotFoundError, ValidationError
from admin_console.models import db
from admin_console.models.audit import AuditLog
from admin_console.models.auth import Team
from admin_console.services import entity_analysis

BASE = "/api/v1/admin/entities"


def _team(tenant, name, parent=None):
    t = Team(tenant_id=tenant.id, name=name, parent_id=parent.id if parent else None)
    db.session.add(t)
    db.session.commit()
    return t


class TestRoles:
    def test_admin_roles_overlap(self):
        overlap = entity_analysis.role_overlap("SUPER_ADMIN", "ADMIN")
        assert overlap["overlapPercentage"] == 93
        assert len(overlap["overlappingPermissions"]) == 25
        assert "invoices.create" not in overlap["overlappingPermissions"]

    def test_default_conflicts(self):
        conflicts = entity_analysis.detect_role_conflicts()
        assert [(c["role1"], c["role2"]) for c in conflicts] == [("SUPER_ADMIN", "ADMIN")]

    def test_threshold(self):
        assert entity_analysis.detect_role_conflicts(["STAFF", "TEAM_MEMBER"]) == []
        found = entity_analysis.detect_role_conflicts(["STAFF", "TEAM_MEMBER"], threshold=70)
        assert [(c["role1"], c["role2"], c["overlapPercentage"]) for c in found] == [
            ("TEAM_MEMBER", "STAFF", 78),
        ]


class TestUsers:
    def test_orphaned_users(self, tenant, other_tenant, admin, staff_user, team, make_user):
        make_user(tenant, "placed@acme-accounting.com", "STAFF", team_id=team.id)
        outside = _team(other_tenant, "Audit")
        stray = make_user(tenant, "stray@acme-accounting.com", "TEAM_MEMBER", team_id=outside.id)
        make_user(tenant, "gone@acme-accounting.com", "STAFF", status="ARCHIVED")

        orphans = entity_analysis.find_orphaned_users(tenant.id)
        assert [(o["userId"], o["reason"]) for o in orphans] == [
            (staff_user.id, "no_team"),
            (stray.id, "foreign_team"),
        ]

    def test_permission_gaps(self, tenant, staff_user):
        gaps = entity_analysis.find_permission_gaps(
            tenant.id, staff_user.id, ["clients.view", "users.manage", "clients.view"],
        )
        assert gaps == {
            "userId": staff_user.id,
            "requiredPermissions": ["clients.view", "users.manage"],
            "missingPermissions": ["users.manage"],
        }

        staff_user.permissions = ["users.view", "users.manage"]
        db.session.commit()
        assert entity_analysis.find_permission_gaps(tenant.id, staff_user.id, ["users.manage"])[
            "missingPermissions"] == []

    def test_permission_gaps_unknown_codename(self, tenant, staff_user):
        with pytest.raises(ValidationError):
            entity_analysis.find_permission_gaps(tenant.id, staff_user.id, ["coffee.make"])

    def test_permission_gaps_other_tenant(self, other_tenant, staff_user):
        with pytest.raises(NotFoundError):
            entity_analysis.find_permission_gaps(other_tenant.id, staff_user.id, ["clients.view"])

    def test_dependency_gaps_only_for_explicit_grants(self, tenant, make_user):
        exporter = make_user(tenant, "exporter@acme-accounting.com", "STAFF", permissions=["audit.export"])
        make_user(tenant, "reporter@acme-accounting.com", "STAFF", permissions=["reports.export"])
        make_user(tenant, "lead@acme-accounting.com", "TEAM_LEAD")

        gaps = entity_analysis.analyze(tenant.id)["permissionGaps"]
        assert gaps == [{
            "userId": exporter.id,
            "requiredPermissions": ["audit.export"],
            "missingPermissions": ["audit.view"],
        }]


class TestHierarchy:
    def test_loop_reported_once(self, tenant):
        a = _team(tenant, "Advisory")
        b = _team(tenant, "Bookkeeping", parent=a)
        c = _team(tenant, "Compliance", parent=b)
        a.parent_id = c.id
        _team(tenant, "Delivery", parent=c)
        db.session.commit()

        issues = entity_analysis.detect_hierarchy_issues(tenant.id)
        assert len(issues) == 1
        assert issues[0]["type"] == "circular_dependency"
        assert issues[0]["severity"] == "critical"
        assert issues[0]["teams"] == [a.id, c.id, b.id]
        assert issues[0]["description"] == (
            "Circular team hierarchy: Advisory -> Compliance -> Bookkeeping -> Advisory"
        )

    def test_parent_outside_firm(self, tenant, other_tenant):
        foreign = _team(other_tenant, "Rival HQ")
        local = _team(tenant, "Payroll", parent=foreign)
        issues = entity_analysis.detect_hierarchy_issues(tenant.id)
        assert [(i["id"], i["type"]) for i in issues] == [(local.id, "missing_parent")]

    def test_clean_tree(self, tenant):
        root = _team(tenant, "Firm")
        _team(tenant, "Tax", parent=root)
        assert entity_analysis.detect_hierarchy_issues(tenant.id) == []


class TestSetTeamParent:
    def test_attach_and_audit(self, tenant, admin):
        root = _team(tenant, "Firm")
        tax = _team(tenant, "Tax")
        entity_analysis.set_team_parent(tenant.id, tax.id, root.id, admin.id)
        assert tax.parent_id == root.id
        entry = AuditLog.query.filter_by(action="team.set_parent").one()
        assert entry.details == {"before": None, "after": root.id}

    def test_loop_refused(self, tenant):
        root = _team(tenant, "Firm")
        mid = _team(tenant, "Tax", parent=root)
        leaf = _team(tenant, "VAT", parent=mid)
        with pytest.raises(ValidationError):
            entity_analysis.set_team_parent(tenant.id, root.id, leaf.id)
        with pytest.raises(ValidationError):
            entity_analysis.set_team_parent(tenant.id, mid.id, mid.id)
        assert root.parent_id is None

    def test_detach(self, tenant):
        root = _team(tenant, "Firm")
        tax = _team(tenant, "Tax", parent=root)
        entity_analysis.set_team_parent(tenant.id, tax.id, None)
        assert tax.parent_id is None

    def test_parent_of_other_tenant_is_not_found(self, tenant, other_tenant):
        tax = _team(tenant, "Tax")
        foreign = _team(other_tenant, "Rival HQ")
        with pytest.raises(NotFoundError):
            entity_analysis.set_team_parent(tenant.id, tax.id, foreign.id)


class TestMap:
    def test_nodes_and_edges(self, tenant, admin, team, make_user):
        member = make_user(tenant, "member@acme-accounting.com", "STAFF",
                           team_id=team.id, permissions=["reports.export"])
        result = entity_analysis.build_relationship_map(tenant.id)

        node_ids = [n["id"] for n in result["nodes"]]
        assert node_ids == [
            "role-ADMIN", "role-STAFF", f"team-{team.id}",
            f"user-{admin.id}", f"user-{member.id}", "perm-reports.export",
        ]
        edges = {(e["fromId"], e["toId"], e["type"]) for e in result["edges"]}
        assert edges == {
            (f"user-{admin.id}", "role-ADMIN", "HAS_ROLE"),
            (f"user-{member.id}", "role-STAFF", "HAS_ROLE"),
            (f"user-{member.id}", f"team-{team.id}", "BELONGS_TO"),
            (f"user-{member.id}", "perm-reports.export", "GRANTED"),
        }
        team_node = next(n for n in result["nodes"] if n["type"] == "TEAM")
        assert team_node["metadata"] == {"memberCount": 1, "parentId": None}

    def test_scores(self, tenant, admin, staff_user):
        analysis = entity_analysis.analyze(tenant.id)
        assert analysis["densityScore"] == 100
        assert analysis["complexityScore"] == 50
        assert analysis["roleConflicts"] == []


class TestApi:
    def test_relationships(self, client, admin, auth_headers):
        res = client.get(f"{BASE}/relationships", headers=auth_headers(admin))
        assert res.status_code == 200
        body = res.get_json()
        assert body["nodes"][0]["id"] == "role-ADMIN"
        assert body["analysis"]["orphanedUsers"] == []

    def test_analysis_lists_role_conflicts(self, client, admin, super_admin, auth_headers):
        res = client.get(f"{BASE}/analysis", headers=auth_headers(admin))
        conflicts = res.get_json()["roleConflicts"]
        assert [(c["role1"], c["role2"]) for c in conflicts] == [("SUPER_ADMIN", "ADMIN")]

    def test_staff_forbidden(self, client, staff_user, auth_headers):
        res = client.get(f"{BASE}/analysis", headers=auth_headers(staff_user))
        assert res.status_code == 403

    def test_permission_gaps(self, client, admin, staff_user, auth_headers):
        url = f"{BASE}/users/{staff_user.id}/permission-gaps"
        res = client.get(f"{url}?required=clients.view,audit.view", headers=auth_headers(admin))
        assert res.get_json()["missingPermissions"] == ["audit.view"]

        assert client.get(url, headers=auth_headers(admin)).status_code == 400
        res = client.get(f"{url}?required=coffee.make", headers=auth_headers(admin))
        assert res.status_code == 422

    def test_set_parent(self, client, tenant, admin, auth_headers):
        root = _team(tenant, "Firm")
        tax = _team(tenant, "Tax", parent=root)
        headers = auth_headers(admin)

        res = client.put(f"{BASE}/teams/{root.id}/parent", json={"parentId": tax.id}, headers=headers)
        assert res.status_code == 422

        res = client.put(f"{BASE}/teams/{tax.id}/parent", json={"parentId": None}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["parent_id"] is None

        res = client.put(f"{BASE}/teams/{tax.id}/parent", json={"parentId": "1"}, headers=headers)
        assert res.status_code == 400
