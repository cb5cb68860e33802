"""
Approval Manager — gates workflow steps on a human decision.

A gated step (``requires_approval``) stays out of execution until
``approved_at`` is set here. Rejection fails the step and its workflow.

All functions take ``tenant_id`` and resolve the step through its
workflow, so a step of another tenant reads as not found.
"""

import logging
from datetime import datetime, timezone

from admin_console.core.exceptions import NotFoundError, StateTransitionError, ValidationError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.auth import User
from admin_console.models.workflow import WORKFLOW_TERMINAL_STATUSES, UserWorkflow, WorkflowStep
from admin_console.services.notification_manager import NotificationManager
from admin_console.utils.helpers import isoformat

logger = logging.getLogger(__name__)


def get_step_for_tenant(step_id: int, tenant_id: int) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if step is None or step.workflow.tenant_id != tenant_id:
        raise NotFoundError(resource="WorkflowStep", resource_id=step_id, tenant_id=tenant_id)
    return step


def default_approver_emails(tenant_id: int) -> list[str]:
    """Active firm admins, used when a step names no approvers."""
    admins = (
        User.query_for_tenant(tenant_id)
        .filter(User.role.in_(("ADMIN", "SUPER_ADMIN")), User.status == "ACTIVE")
        .order_by(User.id)
        .all()
    )
    return [a.email for a in admins]


def request_approval(step: WorkflowStep, approver_emails=None) -> int:
    """Queue one approval-request email per approver; flush only.

    Returns the number of notifications created.
    """
    workflow = step.workflow
    emails = list(approver_emails or (step.config or {}).get("approvers") or [])
    if not emails:
        emails = default_approver_emails(workflow.tenant_id)
    created = NotificationManager.notify_approval_request(workflow, step, emails)
    step.approval_requested_at = datetime.now(timezone.utc)
    db.session.flush()
    logger.info("Approval requested for step %d (%d approvers)", step.id, len(created),
                extra={"workflow_id": workflow.id, "step_id": step.id})
    return len(created)


def approve_step(step_id: int, tenant_id: int, approver_id: int) -> WorkflowStep:
    """Record approval. Approving an already-approved step is a no-op."""
    step = get_step_for_tenant(step_id, tenant_id)
    if not step.requires_approval:
        raise ValidationError("Step does not require approval", details={"step_id": step_id})
    if step.status in ("COMPLETED", "FAILED", "SKIPPED"):
        raise StateTransitionError("WorkflowStep", step.status, "approve")
    if step.workflow.status in WORKFLOW_TERMINAL_STATUSES:
        raise StateTransitionError("UserWorkflow", step.workflow.status, "approve a step of")
    if step.approved_at is not None:
        return step

    step.approved_at = datetime.now(timezone.utc)
    step.approved_by = approver_id
    write_audit(
        action="workflow.step_approve",
        resource="workflow_step",
        resource_id=step.id,
        tenant_id=tenant_id,
        user_id=approver_id,
        details={"workflow_id": step.workflow_id, "step_number": step.step_number},
    )
    db.session.commit()
    logger.info("Step %d approved by user %d", step.id, approver_id,
                extra={"workflow_id": step.workflow_id, "step_id": step.id})
    return step


def reject_step(step_id: int, tenant_id: int, approver_id: int, reason: str | None = None) -> WorkflowStep:
    """Reject a pending gated step; the step and its workflow become FAILED."""
    step = get_step_for_tenant(step_id, tenant_id)
    if not step.requires_approval:
        raise ValidationError("Step does not require approval", details={"step_id": step_id})
    if step.approved_at is not None or step.status != "PENDING":
        raise StateTransitionError("WorkflowStep", step.status, "reject")

    message = f"Approval rejected: {reason}" if reason else "Approval rejected"
    now = datetime.now(timezone.utc)
    step.status = "FAILED"
    step.error_message = message
    workflow: UserWorkflow = step.workflow
    workflow.status = "FAILED"
    workflow.error_message = message
    workflow.last_error_at = now
    NotificationManager.notify_workflow_failed(workflow, step, message)
    write_audit(
        action="workflow.step_reject",
        resource="workflow_step",
        resource_id=step.id,
        tenant_id=tenant_id,
        user_id=approver_id,
        details={"workflow_id": workflow.id, "reason": reason},
    )
    db.session.commit()
    logger.info("Step %d rejected by user %d", step.id, approver_id,
                extra={"workflow_id": workflow.id, "step_id": step.id})
    return step


def get_approval_status(step_id: int, tenant_id: int) -> dict:
    step = get_step_for_tenant(step_id, tenant_id)
    return {
        "step_id": step.id,
        "requires_approval": step.requires_approval,
        "approved": step.approved_at is not None,
        "approved_at": isoformat(step.approved_at),
        "approved_by": step.approved_by,
        "requested_at": isoformat(step.approval_requested_at),
    }


def list_pending_approvals(tenant_id: int) -> list[dict]:
    """Gated, unapproved steps of workflows that can still run."""
    rows = (
        WorkflowStep.query
        .join(UserWorkflow, WorkflowStep.workflow_id == UserWorkflow.id)
        .filter(
            UserWorkflow.tenant_id == tenant_id,
            UserWorkflow.status.in_(("DRAFT", "PENDING", "IN_PROGRESS", "PAUSED")),
            WorkflowStep.requires_approval.is_(True),
            WorkflowStep.approved_at.is_(None),
            WorkflowStep.status == "PENDING",
        )
        .order_by(WorkflowStep.workflow_id, WorkflowStep.step_number)
        .all()
    )
    result = []
    for step in rows:
        d = step.to_dict()
        d["workflow_type"] = step.workflow.workflow_type
        d["user_email"] = step.workflow.user.email if step.workflow.user else None
        result.append(d)
    return result
