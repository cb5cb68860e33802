"""
Directory Models — tenants (accounting firms), teams and users.

A tenant is one firm. Users carry a single role string and an optional
list of explicit permission grants on top of the role defaults.
"""

from datetime import datetime, timezone

from admin_console.models import db
from admin_console.models.base import TenantModel
from admin_console.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = ("SUPER_ADMIN", "ADMIN", "TEAM_LEAD", "TEAM_MEMBER", "STAFF", "CLIENT")
ADMIN_ROLES = ("SUPER_ADMIN", "ADMIN")
STAFF_ROLES = ("TEAM_LEAD", "TEAM_MEMBER", "STAFF")

USER_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED", "INVITED", "ARCHIVED")


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════
# 2. TEAMS
# ═══════════════════════════════════════════════════════════════
class Team(TenantModel):
    __tablename__ = "teams"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    department = db.Column(db.String(100))
    parent_id = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_team_tenant_name"),
    )

    members = db.relationship("User", back_populates="team", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "department": self.department,
            "parent_id": self.parent_id,
            "created_at": isoformat(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════
# 3. USERS
# ═══════════════════════════════════════════════════════════════
class User(TenantModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False)
    name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default="CLIENT")
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"), index=True)
    permissions = db.Column(db.JSON, default=list)  # explicit grants beyond role defaults
    mfa_enabled = db.Column(db.Boolean, default=False)
    last_login_at = db.Column(db.DateTime(timezone=True))
    archived_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Same email can exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_role", "tenant_id", "role"),
        db.Index("ix_users_tenant_status", "tenant_id", "status"),
    )

    tenant = db.relationship("Tenant", back_populates="users")
    team = db.relationship("Team", back_populates="members")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "team_id": self.team_id,
            "team_name": self.team.name if self.team else None,
            "permissions": list(self.permissions or []),
            "mfa_enabled": bool(self.mfa_enabled),
            "last_login_at": isoformat(self.last_login_at),
            "archived_at": isoformat(self.archived_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
