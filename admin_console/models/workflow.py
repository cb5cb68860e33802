"""
Accounting Admin Console
User lifecycle workflow models.

Models:
    - UserWorkflow: one onboarding / offboarding / role-change run for a user
    - WorkflowStep: ordered, typed step belonging to a workflow
    - WorkflowNotification: queued email tied to a workflow event
"""

from datetime import datetime, timezone

from admin_console.models import db
from admin_console.models.base import TenantModel
from admin_console.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_TYPES = ("ONBOARDING", "OFFBOARDING", "ROLE_CHANGE")

WORKFLOW_STATUSES = (
    "DRAFT", "PENDING", "IN_PROGRESS", "PAUSED", "COMPLETED", "FAILED", "CANCELLED",
)
WORKFLOW_TERMINAL_STATUSES = ("COMPLETED", "CANCELLED")

STEP_DONE_STATUSES = ("COMPLETED", "SKIPPED")

ACTION_TYPES = (
    "CREATE_ACCOUNT",
    "PROVISION_ACCESS",
    "SEND_EMAIL",
    "ASSIGN_ROLE",
    "DISABLE_ACCOUNT",
    "ARCHIVE_DATA",
    "REQUEST_APPROVAL",
    "SYNC_PERMISSIONS",
)

NOTIFICATION_EVENTS = (
    "APPROVAL_REQUESTED",
    "STEP_EMAIL",
    "WORKFLOW_COMPLETED",
    "WORKFLOW_FAILED",
    "WORKFLOW_CANCELLED",
)


class UserWorkflow(TenantModel):
    """
    A lifecycle process for one user.

    ``completed_steps`` / ``progress_percent`` are derived from step
    statuses and written only by the executor through ``recompute_progress``.
    """

    __tablename__ = "user_workflows"
    __table_args__ = (
        db.Index("ix_user_workflows_tenant_status", "tenant_id", "status"),
        db.Index("ix_user_workflows_user", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    workflow_type = db.Column(db.String(20), nullable=False, default="ONBOARDING")
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    template_key = db.Column(db.String(100))
    triggered_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    total_steps = db.Column(db.Integer, nullable=False, default=0)
    completed_steps = db.Column(db.Integer, nullable=False, default=0)
    progress_percent = db.Column(db.Integer, nullable=False, default=0)

    scheduled_for = db.Column(db.DateTime(timezone=True))
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    last_error_at = db.Column(db.DateTime(timezone=True))
    error_message = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = db.relationship("User", foreign_keys=[user_id])
    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.step_number",
        cascade="all, delete-orphan",
    )
    notifications = db.relationship(
        "WorkflowNotification",
        back_populates="workflow",
        order_by="WorkflowNotification.id",
        cascade="all, delete-orphan",
    )

    def recompute_progress(self):
        """Derive completed_steps / progress_percent from step statuses."""
        total = len(self.steps)
        completed = sum(1 for s in self.steps if s.status == "COMPLETED")
        self.total_steps = total
        self.completed_steps = completed
        self.progress_percent = round(completed / total * 100) if total else 0

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "user_email": self.user.email if self.user else None,
            "workflow_type": self.workflow_type,
            "status": self.status,
            "template_key": self.template_key,
            "triggered_by": self.triggered_by,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress_percent": self.progress_percent,
            "scheduled_for": isoformat(self.scheduled_for),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "last_error_at": isoformat(self.last_error_at),
            "error_message": self.error_message,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<UserWorkflow {self.id}: {self.workflow_type} {self.status}>"


class WorkflowStep(db.Model):
    """One typed step of a workflow; only status fields change after creation."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_number", name="uq_workflow_step_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("user_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    action_type = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")  # PENDING | IN_PROGRESS | COMPLETED | FAILED | SKIPPED

    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    approved_at = db.Column(db.DateTime(timezone=True))
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approval_requested_at = db.Column(db.DateTime(timezone=True))

    config = db.Column(db.JSON, default=dict)
    error_message = db.Column(db.Text)
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    duration_ms = db.Column(db.Integer)

    workflow = db.relationship("UserWorkflow", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "name": self.name,
            "description": self.description,
            "action_type": self.action_type,
            "status": self.status,
            "requires_approval": self.requires_approval,
            "approved_at": isoformat(self.approved_at),
            "approved_by": self.approved_by,
            "approval_requested_at": isoformat(self.approval_requested_at),
            "config": self.config or {},
            "error_message": self.error_message,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: #{self.step_number} {self.action_type} {self.status}>"


class WorkflowNotification(db.Model):
    """Email row queued by a workflow event; dispatched out of band."""

    __tablename__ = "workflow_notifications"
    __table_args__ = (
        db.Index("ix_workflow_notifications_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("user_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id = db.Column(db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"))
    event = db.Column(db.String(30), nullable=False, default="STEP_EMAIL")
    email_to = db.Column(db.String(200), nullable=False)
    email_subject = db.Column(db.String(300), nullable=False)
    email_body = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="PENDING")  # PENDING | SENT | FAILED
    sent_at = db.Column(db.DateTime(timezone=True))
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("UserWorkflow", back_populates="notifications")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "event": self.event,
            "email_to": self.email_to,
            "email_subject": self.email_subject,
            "email_body": self.email_body,
            "status": self.status,
            "sent_at": isoformat(self.sent_at),
            "error_message": self.error_message,
            "created_at": isoformat(self.created_at),
        }
