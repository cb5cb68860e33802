"""
Audit log tests (service + /api/v1/admin/audit-logs).

Tests cover:
  - filters (action, user, resource, date range, free-text search)
  - paging and has_more
  - metadata: distinct actions, stats
  - CSV export content and its own audit entry
  - tenant scoping and audit.export permission
"""

import csv
import io
from datetime import datetime, timezone

import pytest

from admin_console.models import db
from admin_console.models.audit import AuditLog, write_audit
from admin_console.services import audit_service

BASE = "/api/v1/admin/audit-logs"


def _log(tenant, action, resource="user", user=None, when=None, **details):
    entry = AuditLog(
        tenant_id=tenant.id,
        user_id=user.id if user else None,
        action=action,
        resource=resource,
        resource_id="1",
        details=details,
    )
    if when is not None:
        entry.created_at = when
    db.session.add(entry)
    db.session.commit()
    return entry


@pytest.fixture()
def entries(tenant, other_tenant, admin, staff_user):
    return [
        _log(tenant, "settings.update", "user_management_settings", admin,
             when=datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)),
        _log(tenant, "workflow.create", "user_workflow", staff_user,
             when=datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)),
        _log(tenant, "bulk_operation.execute", "bulk_operation", admin,
             when=datetime(2026, 2, 15, 23, 30, tzinfo=timezone.utc)),
        _log(tenant, "menu.reset", "menu_customization", None,
             when=datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)),
        _log(other_tenant, "settings.update", "user_management_settings", None),
    ]


class TestAuditService:
    def test_newest_first_and_tenant_scoped(self, tenant, entries):
        result = audit_service.fetch_audit_logs(tenant.id)
        assert result["total"] == 4
        assert [log["action"] for log in result["logs"]][0] == "menu.reset"

    def test_filters(self, tenant, admin, entries):
        assert audit_service.fetch_audit_logs(tenant.id, user_id=admin.id)["total"] == 2
        assert audit_service.fetch_audit_logs(tenant.id, action="workflow.create")["total"] == 1
        assert audit_service.fetch_audit_logs(tenant.id, resource="bulk_operation")["total"] == 1

    def test_date_range(self, tenant, entries):
        result = audit_service.fetch_audit_logs(
            tenant.id,
            start_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
            end_date=datetime(2026, 2, 15, 23, 59, 59, tzinfo=timezone.utc),
        )
        assert {log["action"] for log in result["logs"]} == {"workflow.create", "bulk_operation.execute"}

    def test_search_matches_user_email(self, tenant, entries):
        result = audit_service.fetch_audit_logs(tenant.id, search="staff@")
        assert [log["action"] for log in result["logs"]] == ["workflow.create"]

    def test_paging(self, tenant, entries):
        page = audit_service.fetch_audit_logs(tenant.id, limit=3, offset=0)
        assert page["has_more"] is True
        last = audit_service.fetch_audit_logs(tenant.id, limit=3, offset=3)
        assert last["has_more"] is False
        assert len(last["logs"]) == 1

    def test_distinct_actions(self, tenant, entries):
        assert audit_service.get_distinct_actions(tenant.id) == [
            "bulk_operation.execute", "menu.reset", "settings.update", "workflow.create",
        ]

    def test_stats_counts_recent_entries(self, tenant, admin):
        write_audit(action="menu.update", resource="menu_customization", tenant_id=tenant.id, user_id=admin.id)
        write_audit(action="menu.update", resource="menu_customization", tenant_id=tenant.id, user_id=admin.id)
        write_audit(action="menu.reset", resource="menu_customization", tenant_id=tenant.id)
        db.session.commit()
        stats = audit_service.get_audit_stats(tenant.id, days=7)
        assert stats["total"] == 3
        assert stats["unique_users"] == 1
        assert stats["by_action"][0] == {"action": "menu.update", "count": 2}
        assert sum(d["count"] for d in stats["by_day"]) == 3

    def test_export_csv(self, tenant, entries):
        content = audit_service.export_audit_logs(tenant.id)
        rows = list(csv.reader(io.StringIO(content)))
        assert rows[0] == audit_service.CSV_COLUMNS
        assert len(rows) == 5
        assert rows[1][1] == "system"
        assert rows[-1][2] == "settings.update"

    def test_export_filename(self):
        assert audit_service.export_filename(datetime(2026, 4, 2, tzinfo=timezone.utc)) == "audit-logs-2026-04-02.csv"


class TestAuditApi:
    def test_list_with_query_filters(self, client, admin, auth_headers, entries):
        res = client.get(f"{BASE}?startDate=2026-02-01&endDate=2026-02-15&limit=10", headers=auth_headers(admin))
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 2
        assert body["limit"] == 10

    def test_metadata(self, client, admin, auth_headers, entries):
        res = client.get(f"{BASE}/metadata?type=actions", headers=auth_headers(admin))
        assert "workflow.create" in res.get_json()["actions"]
        res = client.get(f"{BASE}/metadata?type=stats&days=30", headers=auth_headers(admin))
        assert res.get_json()["days"] == 30
        res = client.get(f"{BASE}/metadata?type=bogus", headers=auth_headers(admin))
        assert res.status_code == 400

    def test_export_downloads_csv_and_is_audited(self, client, admin, auth_headers, entries):
        res = client.post(f"{BASE}/export", json={"action": "settings.update"}, headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        assert res.headers["Content-Disposition"].startswith('attachment; filename="audit-logs-')
        rows = list(csv.reader(io.StringIO(res.get_data(as_text=True))))
        assert len(rows) == 2

        exported = AuditLog.query.filter_by(action="audit.export").one()
        assert exported.user_id == admin.id
        assert exported.details == {"action": "settings.update"}

    def test_staff_cannot_read_audit(self, client, staff_user, auth_headers):
        res = client.get(BASE, headers=auth_headers(staff_user))
        assert res.status_code == 403

    def test_export_requires_export_permission(self, client, tenant, make_user, auth_headers):
        reader = make_user(tenant, "reader@acme-accounting.com", "STAFF", permissions=["audit.view"])
        assert client.get(BASE, headers=auth_headers(reader)).status_code == 200
        res = client.post(f"{BASE}/export", json={}, headers=auth_headers(reader))
        assert res.status_code == 403
        assert res.get_json()["details"]["required"] == "audit.export"
