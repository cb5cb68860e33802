"""
Accounting Admin Console
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for admin actions.
"""

import logging
from datetime import datetime, timezone

from admin_console.models import db
from admin_console.utils.helpers import isoformat

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Workflows
    "workflow.create",
    "workflow.execute",
    "workflow.pause",
    "workflow.resume",
    "workflow.cancel",
    "workflow.step_approve",
    "workflow.step_reject",
    # Bulk operations
    "bulk_operation.create",
    "bulk_operation.approve",
    "bulk_operation.reject",
    "bulk_operation.cancel",
    "bulk_operation.execute",
    "bulk_operation.rollback",
    "bulk_operation.delete",
    # Settings / preferences
    "settings.update",
    "menu.update",
    "menu.reset",
    # Audit
    "audit.export",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every admin action.

    One row per action.  ``details`` carries the before/after snapshot
    or the action parameters.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_tenant_created", "tenant_id", "created_at"),
        db.Index("idx_audit_resource", "resource", "resource_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_user", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Acting user (nullable for system entries)",
    )
    action = db.Column(db.String(60), nullable=False)
    resource = db.Column(db.String(60), nullable=False)
    resource_id = db.Column(db.String(36))
    details = db.Column(db.JSON, default=dict)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    user = db.relationship("User", foreign_keys=[user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "user_email": self.user.email if self.user else None,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.resource}/{self.resource_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    action: str,
    resource: str,
    resource_id=None,
    tenant_id: int | None = None,
    user_id: int | None = None,
    details: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        logger.warning("Unregistered audit action: %s", action)
    ip_address = None
    user_agent = None
    from flask import g, has_request_context, request
    if has_request_context():
        if tenant_id is None:
            tenant_id = getattr(g, "jwt_tenant_id", None)
        if user_id is None:
            user_id = getattr(g, "jwt_user_id", None)
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        ip_address = forwarded_for.split(",")[0].strip() if forwarded_for else request.remote_addr
        user_agent = (request.headers.get("User-Agent") or "")[:300] or None

    log = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(log)
    db.session.flush()
    return log
