"""
Accounting Admin Console
Notification Manager — queues workflow emails as rows and dispatches them.

Queue helpers only ``flush``; the workflow executor owns the commit so a
notification never outlives a rolled-back state change. ``mark_sent``,
``mark_failed`` and ``dispatch_pending`` are standalone operations and
commit themselves.
"""

import logging
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email

from admin_console.core.exceptions import NotFoundError, ValidationError
from admin_console.models import db
from admin_console.models.auth import User
from admin_console.models.workflow import NOTIFICATION_EVENTS, WorkflowNotification
from admin_console.services.email_service import EmailService

logger = logging.getLogger(__name__)


def normalize_recipient(address: str) -> str:
    """Validate syntax only (no DNS lookups) and return the normalized address."""
    try:
        return validate_email(address or "", check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(
            f"Invalid email recipient: {address!r}", details={"email_to": str(exc)},
        ) from exc


def _context(workflow, step=None, **extra):
    user = workflow.user
    ctx = {
        "workflow_id": workflow.id,
        "workflow_type": workflow.workflow_type,
        "user_email": user.email if user else "",
        "total_steps": workflow.total_steps,
    }
    if step is not None:
        ctx.update(step_number=step.step_number, step_name=step.name)
    ctx.update(extra)
    return ctx


class NotificationManager:
    """Stateless service class for workflow notification operations."""

    # ── Queue ─────────────────────────────────────────────────────────────

    @staticmethod
    def queue_email(*, workflow_id, to, subject, body="", event="STEP_EMAIL", step_id=None):
        """
        Create a PENDING notification row.

        Returns:
            The flushed WorkflowNotification.
        """
        if event not in NOTIFICATION_EVENTS:
            raise ValidationError(f"Unknown notification event: {event}")
        notif = WorkflowNotification(
            workflow_id=workflow_id,
            step_id=step_id,
            event=event,
            email_to=normalize_recipient(to),
            email_subject=subject[:300],
            email_body=body,
            status="PENDING",
        )
        db.session.add(notif)
        db.session.flush()
        logger.debug("Queued %s notification to %s", event, notif.email_to,
                     extra={"workflow_id": workflow_id, "step_id": step_id})
        return notif

    @classmethod
    def _queue_template(cls, workflow, template, recipients, *, event, step=None, **extra):
        subject, body = EmailService.render(template, _context(workflow, step, **extra))
        seen = set()
        created = []
        for address in recipients:
            if not address or address in seen:
                continue
            seen.add(address)
            try:
                notif = cls.queue_email(
                    workflow_id=workflow.id,
                    to=address,
                    subject=subject,
                    body=body,
                    event=event,
                    step_id=step.id if step is not None else None,
                )
            except ValidationError as exc:
                # Undeliverable addresses are logged and skipped
                logger.warning("Skipping %s notification to %r: %s", event, address, exc.details,
                               extra={"workflow_id": workflow.id})
                continue
            created.append(notif)
        return created

    @staticmethod
    def _workflow_recipients(workflow):
        recipients = [workflow.user.email] if workflow.user else []
        if workflow.triggered_by:
            admin = db.session.get(User, workflow.triggered_by)
            if admin:
                recipients.append(admin.email)
        return recipients

    @classmethod
    def notify_approval_request(cls, workflow, step, approver_emails):
        return cls._queue_template(
            workflow, "approval_request", approver_emails,
            event="APPROVAL_REQUESTED", step=step,
        )

    @classmethod
    def notify_workflow_completed(cls, workflow):
        return cls._queue_template(
            workflow, "workflow_completed", cls._workflow_recipients(workflow),
            event="WORKFLOW_COMPLETED",
        )

    @classmethod
    def notify_workflow_failed(cls, workflow, step, error):
        return cls._queue_template(
            workflow, "workflow_failed", cls._workflow_recipients(workflow),
            event="WORKFLOW_FAILED", step=step, error=error,
        )

    @classmethod
    def notify_workflow_cancelled(cls, workflow, reason):
        return cls._queue_template(
            workflow, "workflow_cancelled", cls._workflow_recipients(workflow),
            event="WORKFLOW_CANCELLED", reason=reason,
        )

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_workflow(workflow_id):
        return (
            WorkflowNotification.query
            .filter_by(workflow_id=workflow_id)
            .order_by(WorkflowNotification.id)
            .all()
        )

    @staticmethod
    def has_pending_for_step(step_id, event):
        return (
            WorkflowNotification.query
            .filter_by(step_id=step_id, event=event)
            .count() > 0
        )

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def _get(notification_id):
        notif = db.session.get(WorkflowNotification, notification_id)
        if notif is None:
            raise NotFoundError(resource="WorkflowNotification", resource_id=notification_id)
        return notif

    @classmethod
    def mark_sent(cls, notification_id):
        notif = cls._get(notification_id)
        notif.status = "SENT"
        notif.sent_at = datetime.now(timezone.utc)
        notif.error_message = None
        db.session.commit()
        return notif

    @classmethod
    def mark_failed(cls, notification_id, error):
        notif = cls._get(notification_id)
        notif.status = "FAILED"
        notif.error_message = str(error)[:1000]
        db.session.commit()
        return notif

    @staticmethod
    def dispatch_pending(limit=100):
        """
        Deliver PENDING notifications oldest first.

        Returns:
            {"sent": int, "failed": int}
        """
        pending = (
            WorkflowNotification.query
            .filter_by(status="PENDING")
            .order_by(WorkflowNotification.id)
            .limit(limit)
            .all()
        )
        sent = failed = 0
        for notif in pending:
            try:
                EmailService.send(
                    to_email=notif.email_to,
                    subject=notif.email_subject,
                    body=notif.email_body or "",
                )
            except (OSError, ValueError) as exc:
                # smtplib errors subclass OSError
                notif.status = "FAILED"
                notif.error_message = str(exc)[:1000]
                failed += 1
                logger.error("Notification %d failed: %s", notif.id, exc,
                             extra={"workflow_id": notif.workflow_id})
            else:
                notif.status = "SENT"
                notif.sent_at = datetime.now(timezone.utc)
                sent += 1
        db.session.commit()
        logger.info("Dispatched notifications: sent=%d failed=%d", sent, failed)
        return {"sent": sent, "failed": failed}
