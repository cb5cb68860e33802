"""
Accounting Admin Console
Bulk user operation models.

Models:
    - BulkOperation: one batched mutation request and its lifecycle
    - BulkOperationResult: per-user outcome of an execution
    - BulkOperationChange: changelog row (old → new) used for rollback
"""

from datetime import datetime, timezone

from admin_console.models import db
from admin_console.models.base import TenantModel
from admin_console.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

OPERATION_TYPES = (
    "ROLE_CHANGE",
    "STATUS_CHANGE",
    "TEAM_ASSIGNMENT",
    "PERMISSION_GRANT",
    "PERMISSION_REVOKE",
)

OPERATION_STATUSES = (
    "DRAFT",
    "PENDING_APPROVAL",
    "APPROVED",
    "IN_PROGRESS",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    "ROLLED_BACK",
)


class BulkOperation(TenantModel):
    """A batched mutation (role/status/team/permission) across many users."""

    __tablename__ = "bulk_operations"
    __table_args__ = (
        db.Index("ix_bulk_operations_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    operation_type = db.Column(db.String(30), nullable=False)
    user_filter = db.Column(db.JSON, default=dict)
    operation_config = db.Column(db.JSON, default=dict)
    approval_required = db.Column(db.Boolean, nullable=False, default=False)
    notify_users = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="DRAFT")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approved_at = db.Column(db.DateTime(timezone=True))
    rejection_reason = db.Column(db.Text)

    scheduled_for = db.Column(db.DateTime(timezone=True))
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    rolled_back_at = db.Column(db.DateTime(timezone=True))

    total_users = db.Column(db.Integer, nullable=False, default=0)
    succeeded_count = db.Column(db.Integer, nullable=False, default=0)
    failed_count = db.Column(db.Integer, nullable=False, default=0)
    warning_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    results = db.relationship(
        "BulkOperationResult",
        back_populates="operation",
        order_by="BulkOperationResult.id",
        cascade="all, delete-orphan",
    )
    changes = db.relationship(
        "BulkOperationChange",
        back_populates="operation",
        order_by="BulkOperationChange.id",
        cascade="all, delete-orphan",
    )

    @property
    def target_value(self):
        return (self.operation_config or {}).get("target_value")

    @property
    def is_atomic(self):
        return bool((self.operation_config or {}).get("atomic"))

    def to_dict(self, include_results=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "operation_type": self.operation_type,
            "user_filter": self.user_filter or {},
            "operation_config": self.operation_config or {},
            "approval_required": self.approval_required,
            "notify_users": self.notify_users,
            "status": self.status,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": isoformat(self.approved_at),
            "rejection_reason": self.rejection_reason,
            "scheduled_for": isoformat(self.scheduled_for),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "rolled_back_at": isoformat(self.rolled_back_at),
            "total_users": self.total_users,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "warning_count": self.warning_count,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_results:
            d["results"] = [r.to_dict() for r in self.results]
        return d

    def __repr__(self):
        return f"<BulkOperation {self.id}: {self.operation_type} {self.status}>"


class BulkOperationResult(db.Model):
    __tablename__ = "bulk_operation_results"

    id = db.Column(db.Integer, primary_key=True)
    operation_id = db.Column(
        db.Integer,
        db.ForeignKey("bulk_operations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    status = db.Column(db.String(20), nullable=False)  # SUCCESS | FAILED | WARNING
    message = db.Column(db.Text)
    changes = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    operation = db.relationship("BulkOperation", back_populates="results")

    def to_dict(self):
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "status": self.status,
            "message": self.message,
            "changes": self.changes or {},
            "created_at": isoformat(self.created_at),
        }


class BulkOperationChange(db.Model):
    """Append-only record of one applied field change; source for rollback."""

    __tablename__ = "bulk_operation_changes"

    id = db.Column(db.Integer, primary_key=True)
    operation_id = db.Column(
        db.Integer,
        db.ForeignKey("bulk_operations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    field = db.Column(db.String(50), nullable=False)
    old_value = db.Column(db.JSON)
    new_value = db.Column(db.JSON)
    executed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    rolled_back_at = db.Column(db.DateTime(timezone=True))

    operation = db.relationship("BulkOperation", back_populates="changes")

    def to_dict(self):
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "executed_by": self.executed_by,
            "created_at": isoformat(self.created_at),
            "rolled_back_at": isoformat(self.rolled_back_at),
        }
