"""
Demo seed and CLI command tests.
"""

from admin_console.models.auth import Team, Tenant, User
from admin_console.models.settings import UserManagementSettings
from admin_console.services.demo_seed import DEMO_USERS, seed_demo_data


def test_seed_creates_firm():
    result = seed_demo_data()
    tenant = Tenant.query.filter_by(slug="demo-accounting").one()
    assert result == {"tenant_id": tenant.id, "tenant_slug": "demo-accounting", "created": len(DEMO_USERS)}
    assert {t.name for t in Team.query_for_tenant(tenant.id)} == {"Tax", "Audit", "Advisory"}
    admin = User.query_for_tenant(tenant.id).filter_by(role="ADMIN").one()
    assert admin.mfa_enabled is True
    assert UserManagementSettings.query_for_tenant(tenant.id).count() == 1


def test_seed_is_idempotent():
    seed_demo_data()
    again = seed_demo_data()
    assert again["created"] == 0
    assert Tenant.query.count() == 1
    assert User.query.count() == len(DEMO_USERS)


def test_seeded_staff_belongs_to_team():
    seed_demo_data()
    staff = User.query.filter_by(email="staff@demo-accounting.com").one()
    assert staff.team.name == "Advisory"


def test_cli_seed_demo(app):
    result = app.test_cli_runner().invoke(args=["seed-demo"])
    assert result.exit_code == 0, result.output
    assert User.query.filter_by(role="SUPER_ADMIN").count() == 1


def test_cli_dispatch_notifications_with_empty_queue(app):
    result = app.test_cli_runner().invoke(args=["dispatch-notifications"])
    assert result.exit_code == 0, result.output


def test_cli_run_scheduled_workflows_with_none_due(app):
    result = app.test_cli_runner().invoke(args=["run-scheduled-workflows"])
    assert result.exit_code == 0, result.output
