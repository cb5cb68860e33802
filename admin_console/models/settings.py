"""
Accounting Admin Console
Per-tenant settings and per-user preference models.

Models:
    - UserManagementSettings: JSON sections for roles, policies, sessions, …
    - MenuCustomization: admin sidebar order, hidden items, bookmarks, layout
"""

from datetime import datetime, timezone

from admin_console.models import db
from admin_console.models.base import TenantModel
from admin_console.utils.helpers import isoformat


class UserManagementSettings(TenantModel):
    __tablename__ = "user_management_settings"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", name="uq_user_management_settings_tenant"),
    )

    id = db.Column(db.Integer, primary_key=True)
    roles = db.Column(db.JSON, default=dict)
    permissions = db.Column(db.JSON, default=list)
    onboarding = db.Column(db.JSON, default=dict)
    policies = db.Column(db.JSON, default=dict)
    rate_limits = db.Column(db.JSON, default=dict)
    sessions = db.Column(db.JSON, default=dict)
    invitations = db.Column(db.JSON, default=dict)
    client_settings = db.Column(db.JSON)
    team_settings = db.Column(db.JSON)
    last_updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "roles": self.roles or {},
            "permissions": self.permissions or [],
            "onboarding": self.onboarding or {},
            "policies": self.policies or {},
            "rateLimits": self.rate_limits or {},
            "sessions": self.sessions or {},
            "invitations": self.invitations or {},
            "entities": {
                "clients": self.client_settings,
                "teams": self.team_settings,
            },
            "lastUpdatedAt": isoformat(self.updated_at),
            "lastUpdatedBy": self.last_updated_by or "system",
        }


class MenuCustomization(TenantModel):
    __tablename__ = "menu_customizations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    section_order = db.Column(db.JSON, default=list)
    hidden_items = db.Column(db.JSON, default=list)
    practice_items = db.Column(db.JSON, default=list)
    bookmarks = db.Column(db.JSON, default=list)
    sidebar_collapsed = db.Column(db.Boolean, nullable=False, default=False)
    sidebar_width = db.Column(db.Integer, nullable=False, default=256)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "sectionOrder": list(self.section_order or []),
            "hiddenItems": list(self.hidden_items or []),
            "practiceItems": list(self.practice_items or []),
            "bookmarks": list(self.bookmarks or []),
            "sidebar": {
                "collapsed": bool(self.sidebar_collapsed),
                "width": self.sidebar_width,
            },
            "updatedAt": isoformat(self.updated_at),
        }
