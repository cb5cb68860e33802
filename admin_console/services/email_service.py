"""
Accounting Admin Console
Email Service — workflow email templates and SMTP delivery.

When SMTP is not configured, emails are logged but not sent (dev/test mode).

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_TEMPLATES: dict[str, dict[str, str]] = {
    "approval_request": {
        "subject": "Approval requested: {step_name}",
        "body": "Please approve step {step_number}: {step_name}\n\n"
                "Workflow: {workflow_type} for {user_email}",
    },
    "workflow_completed": {
        "subject": "Workflow completed: {workflow_type} for {user_email}",
        "body": "The {workflow_type} workflow for {user_email} finished all {total_steps} steps.",
    },
    "workflow_failed": {
        "subject": "Workflow failed: {workflow_type} for {user_email}",
        "body": "Step {step_number} ({step_name}) failed: {error}",
    },
    "workflow_cancelled": {
        "subject": "Workflow cancelled: {workflow_type} for {user_email}",
        "body": "The {workflow_type} workflow for {user_email} was cancelled.\n\nReason: {reason}",
    },
}


class EmailService:
    """
    Template rendering plus delivery.

    In development/test mode (no MAIL_SERVER configured), ``send`` only
    logs the message.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def render(template_name: str, context: dict[str, Any]) -> tuple[str, str]:
        """Render (subject, body) for a named template.

        Template variables are interpolated from the context dict; missing
        keys are left as ``{key}``.
        """
        template = _TEMPLATES.get(template_name)
        if template is None:
            raise KeyError(f"Email template not found: {template_name}")
        safe = _SafeDict(context)
        return template["subject"].format_map(safe), template["body"].format_map(safe)

    @classmethod
    def send(cls, *, to_email: str, subject: str, body: str) -> None:
        """Deliver one email. SMTP errors propagate to the caller."""
        if not cls.is_configured():
            logger.info("Email (dev mode): to=%s subject='%s'", to_email, subject)
            return
        cls._send_smtp(to_email=to_email, subject=subject, body=body)
        logger.info("Email sent: to=%s subject='%s'", to_email, subject)

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
