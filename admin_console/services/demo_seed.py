"""
Demo Seed Service — populates a demo firm for local development.

Creates (idempotently):
  - tenant "demo-accounting"
  - teams: Tax, Audit, Advisory
  - one user per role, with the admin holding MFA
  - the tenant's default user management settings
"""

import logging

from admin_console.models import db
from admin_console.models.auth import Team, Tenant, User
from admin_console.services.settings_service import get_settings

logger = logging.getLogger(__name__)

DEMO_SLUG = "demo-accounting"
DEMO_TEAMS = ("Tax", "Audit", "Advisory")
DEMO_USERS = (
    # email, name, role, team
    ("owner@demo-accounting.com", "Olivia Owner", "SUPER_ADMIN", None),
    ("admin@demo-accounting.com", "Adam Admin", "ADMIN", None),
    ("lead@demo-accounting.com", "Lena Lead", "TEAM_LEAD", "Tax"),
    ("member@demo-accounting.com", "Mark Member", "TEAM_MEMBER", "Audit"),
    ("staff@demo-accounting.com", "Sara Staff", "STAFF", "Advisory"),
    ("client@demo-accounting.com", "Carl Client", "CLIENT", None),
)


def seed_demo_data(slug=DEMO_SLUG):
    """Create the demo tenant and its users if missing.

    Returns:
        {"tenant_id": int, "tenant_slug": str, "created": int}
    """
    tenant = Tenant.query.filter_by(slug=slug).first()
    if tenant is None:
        tenant = Tenant(name="Demo Accounting", slug=slug)
        db.session.add(tenant)
        db.session.flush()
        logger.info("Created demo tenant %s (id=%d)", slug, tenant.id)

    teams = {}
    for name in DEMO_TEAMS:
        team = Team.query_for_tenant(tenant.id).filter_by(name=name).first()
        if team is None:
            team = Team(tenant_id=tenant.id, name=name, department=name)
            db.session.add(team)
            db.session.flush()
        teams[name] = team

    created = 0
    for email, name, role, team_name in DEMO_USERS:
        if User.query_for_tenant(tenant.id).filter_by(email=email).first():
            continue
        db.session.add(User(
            tenant_id=tenant.id,
            email=email,
            name=name,
            role=role,
            status="ACTIVE",
            team_id=teams[team_name].id if team_name else None,
            mfa_enabled=role in ("SUPER_ADMIN", "ADMIN"),
        ))
        created += 1

    db.session.commit()
    get_settings(tenant.id)
    return {"tenant_id": tenant.id, "tenant_slug": slug, "created": created}
