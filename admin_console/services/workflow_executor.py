"""
Workflow Executor — runs a workflow's steps in order.

Execution rules:
    - Steps run in ascending ``step_number``; COMPLETED / SKIPPED steps are
      not re-entered, so resume continues from the first incomplete step.
    - A gated step without ``approved_at`` is set PENDING, an approval
      request is queued once, and the run halts with the workflow in
      PENDING ("Awaiting approval"). Approving the step and executing again
      continues from that step.
    - Each handler runs inside a savepoint. A raising handler leaves no
      partial side effect; the step and the workflow become FAILED and a
      failure notification is queued.
    - After every step, ``completed_steps`` / ``progress_percent`` are
      recomputed from step statuses and committed.
    - A pause or cancel committed by another request is honoured between
      steps.

Every public function takes ``tenant_id``; a workflow of another tenant
reads as not found.
"""

import logging
import time
from datetime import datetime, timezone

from admin_console.core.exceptions import NotFoundError, StateTransitionError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.workflow import (
    STEP_DONE_STATUSES,
    WORKFLOW_STATUSES,
    WORKFLOW_TERMINAL_STATUSES,
    WORKFLOW_TYPES,
    UserWorkflow,
)
from admin_console.services import approval_manager
from admin_console.services.notification_manager import NotificationManager
from admin_console.services.workflow_steps import get_step_handler
from admin_console.utils.helpers import isoformat

logger = logging.getLogger(__name__)

AWAITING_APPROVAL = "Awaiting approval"
DEFAULT_CANCEL_REASON = "Workflow cancelled by user"

_PAUSABLE = ("DRAFT", "PENDING", "IN_PROGRESS")
_NOT_EXECUTABLE = ("COMPLETED", "CANCELLED", "PAUSED")


def _now():
    return datetime.now(timezone.utc)


def _log_extra(workflow, step=None):
    extra = {"tenant_id": workflow.tenant_id, "workflow_id": workflow.id}
    if step is not None:
        extra["step_id"] = step.id
    return extra


# ═════════════════════════════════════════════════════════════════════════
# Lookup
# ═════════════════════════════════════════════════════════════════════════

def get_workflow(workflow_id, tenant_id) -> UserWorkflow:
    workflow = UserWorkflow.get_for_tenant(workflow_id, tenant_id)
    if workflow is None:
        raise NotFoundError(resource="UserWorkflow", resource_id=workflow_id, tenant_id=tenant_id)
    return workflow


def list_workflows(tenant_id, *, status=None, workflow_type=None, page=1, limit=20):
    """Return (workflows, total) newest first."""
    q = UserWorkflow.query_for_tenant(tenant_id)
    if status in WORKFLOW_STATUSES:
        q = q.filter(UserWorkflow.status == status)
    if workflow_type in WORKFLOW_TYPES:
        q = q.filter(UserWorkflow.workflow_type == workflow_type)
    total = q.count()
    items = (
        q.order_by(UserWorkflow.created_at.desc(), UserWorkflow.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def get_workflow_progress(workflow_id, tenant_id) -> dict:
    workflow = get_workflow(workflow_id, tenant_id)
    current = next((s for s in workflow.steps if s.status not in STEP_DONE_STATUSES), None)
    return {
        "workflow_id": workflow.id,
        "status": workflow.status,
        "total_steps": workflow.total_steps,
        "completed_steps": workflow.completed_steps,
        "progress_percent": workflow.progress_percent,
        "current_step": current.to_dict() if current else None,
        "error_message": workflow.error_message,
        "started_at": isoformat(workflow.started_at),
        "completed_at": isoformat(workflow.completed_at),
    }


# ═════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════

def _result(workflow, *, success, error=None, step=None):
    return {
        "workflow_id": workflow.id,
        "success": success,
        "status": workflow.status,
        "error": error,
        "step_id": step.id if step is not None else None,
        "completed_steps": workflow.completed_steps,
        "total_steps": workflow.total_steps,
        "progress_percent": workflow.progress_percent,
    }


def execute_step(step, workflow) -> dict:
    """
    Run one step under the approval gate.

    Returns {"status": COMPLETED | PENDING | FAILED, "error": str | None}.
    The caller commits.
    """
    if step.requires_approval and step.approved_at is None:
        step.status = "PENDING"
        if step.approval_requested_at is None:
            approval_manager.request_approval(step)
        db.session.flush()
        logger.info("Step %d awaiting approval", step.id, extra=_log_extra(workflow, step))
        return {"status": "PENDING", "error": AWAITING_APPROVAL}

    step.status = "IN_PROGRESS"
    step.started_at = _now()
    step.error_message = None
    db.session.flush()

    started = time.perf_counter()
    try:
        handler = get_step_handler(step.action_type)
        if handler is None:
            raise ValueError(f"Unknown action type: {step.action_type}")
        with db.session.begin_nested():
            output = handler(step, workflow, workflow.user)
    except Exception as exc:
        # Any handler error becomes the step's recorded failure
        step.status = "FAILED"
        step.error_message = str(exc) or exc.__class__.__name__
        step.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.warning("Step %d (%s) failed: %s", step.id, step.action_type, exc,
                       exc_info=True, extra=_log_extra(workflow, step))
        return {"status": "FAILED", "error": step.error_message}

    step.status = "COMPLETED"
    step.completed_at = _now()
    step.duration_ms = int((time.perf_counter() - started) * 1000)
    logger.debug("Step %d (%s) completed: %s", step.id, step.action_type, output,
                 extra=_log_extra(workflow, step))
    return {"status": "COMPLETED", "error": None}


def execute_workflow(workflow_id, tenant_id, actor_id=None) -> dict:
    """Run (or continue) a workflow until it completes, fails, or waits."""
    workflow = get_workflow(workflow_id, tenant_id)
    if workflow.status in _NOT_EXECUTABLE:
        raise StateTransitionError("UserWorkflow", workflow.status, "execute")

    if workflow.status == "FAILED":
        # Retry: the failed step runs again from scratch
        for step in workflow.steps:
            if step.status == "FAILED":
                step.status = "PENDING"
                if step.requires_approval and step.approved_at is None:
                    # Rejected: the gate asks for a fresh decision
                    step.approval_requested_at = None

    workflow.status = "IN_PROGRESS"
    workflow.error_message = None
    if workflow.started_at is None:
        workflow.started_at = _now()
    write_audit(
        action="workflow.execute",
        resource="user_workflow",
        resource_id=workflow.id,
        tenant_id=tenant_id,
        user_id=actor_id,
        details={"completed_steps": workflow.completed_steps},
    )
    db.session.commit()
    logger.info("Executing workflow %d", workflow.id, extra=_log_extra(workflow))

    for step in sorted(workflow.steps, key=lambda s: s.step_number):
        if step.status in STEP_DONE_STATUSES:
            continue

        db.session.refresh(workflow, ["status"])
        if workflow.status in ("PAUSED", "CANCELLED"):
            logger.info("Workflow %d stopped: %s", workflow.id, workflow.status,
                        extra=_log_extra(workflow))
            return _result(workflow, success=False, error=f"Workflow {workflow.status.lower()}")

        outcome = execute_step(step, workflow)
        workflow.recompute_progress()

        if outcome["status"] == "PENDING":
            workflow.status = "PENDING"
            db.session.commit()
            return _result(workflow, success=False, error=AWAITING_APPROVAL, step=step)

        if outcome["status"] == "FAILED":
            workflow.status = "FAILED"
            workflow.error_message = outcome["error"]
            workflow.last_error_at = _now()
            NotificationManager.notify_workflow_failed(workflow, step, outcome["error"])
            db.session.commit()
            logger.error("Workflow %d failed at step %d: %s",
                         workflow.id, step.step_number, outcome["error"],
                         extra=_log_extra(workflow, step))
            return _result(workflow, success=False, error=outcome["error"], step=step)

        db.session.commit()

    workflow.recompute_progress()
    workflow.status = "COMPLETED"
    workflow.completed_at = _now()
    NotificationManager.notify_workflow_completed(workflow)
    db.session.commit()
    logger.info("Workflow %d completed (%d steps)", workflow.id, workflow.total_steps,
                extra=_log_extra(workflow))
    return _result(workflow, success=True)


def execute_due_workflows(now=None) -> list[dict]:
    """Start scheduled workflows whose ``scheduled_for`` has passed."""
    now = now or _now()
    due = (
        UserWorkflow.query
        .filter(
            UserWorkflow.status == "PENDING",
            UserWorkflow.started_at.is_(None),
            UserWorkflow.scheduled_for.isnot(None),
            UserWorkflow.scheduled_for <= now,
        )
        .order_by(UserWorkflow.scheduled_for)
        .all()
    )
    return [execute_workflow(w.id, w.tenant_id) for w in due]


# ═════════════════════════════════════════════════════════════════════════
# Status transitions
# ═════════════════════════════════════════════════════════════════════════

def pause_workflow(workflow_id, tenant_id, actor_id=None) -> UserWorkflow:
    workflow = get_workflow(workflow_id, tenant_id)
    if workflow.status not in _PAUSABLE:
        raise StateTransitionError("UserWorkflow", workflow.status, "pause")
    workflow.status = "PAUSED"
    write_audit(action="workflow.pause", resource="user_workflow", resource_id=workflow.id,
                tenant_id=tenant_id, user_id=actor_id)
    db.session.commit()
    logger.info("Workflow %d paused", workflow.id, extra=_log_extra(workflow))
    return workflow


def resume_workflow(workflow_id, tenant_id, actor_id=None) -> dict:
    """Resume a PAUSED workflow from its first incomplete step."""
    workflow = get_workflow(workflow_id, tenant_id)
    if workflow.status != "PAUSED":
        raise StateTransitionError("UserWorkflow", workflow.status, "resume")
    workflow.status = "IN_PROGRESS"
    write_audit(action="workflow.resume", resource="user_workflow", resource_id=workflow.id,
                tenant_id=tenant_id, user_id=actor_id)
    db.session.commit()
    logger.info("Workflow %d resumed", workflow.id, extra=_log_extra(workflow))
    return execute_workflow(workflow.id, tenant_id, actor_id)


def cancel_workflow(workflow_id, tenant_id, reason=None, actor_id=None) -> UserWorkflow:
    workflow = get_workflow(workflow_id, tenant_id)
    if workflow.status in WORKFLOW_TERMINAL_STATUSES:
        raise StateTransitionError("UserWorkflow", workflow.status, "cancel")
    reason = reason or DEFAULT_CANCEL_REASON
    workflow.status = "CANCELLED"
    workflow.error_message = reason
    for step in workflow.steps:
        if step.status == "PENDING":
            step.status = "SKIPPED"
    workflow.recompute_progress()
    NotificationManager.notify_workflow_cancelled(workflow, reason)
    write_audit(action="workflow.cancel", resource="user_workflow", resource_id=workflow.id,
                tenant_id=tenant_id, user_id=actor_id, details={"reason": reason})
    db.session.commit()
    logger.info("Workflow %d cancelled: %s", workflow.id, reason, extra=_log_extra(workflow))
    return workflow


def approve_step(step_id, tenant_id, approver_id):
    return approval_manager.approve_step(step_id, tenant_id, approver_id)


def reject_step(step_id, tenant_id, approver_id, reason=None):
    return approval_manager.reject_step(step_id, tenant_id, approver_id, reason)
