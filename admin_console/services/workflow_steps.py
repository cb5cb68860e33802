"""
Workflow step handlers, one per action type.

Every handler has the signature ``handler(step, workflow, user) -> dict``
and must be idempotent: resuming a workflow re-enters only incomplete
steps, but a step that failed after a partial side effect is retried
from the start. Handlers mutate the ORM objects and flush; the executor
commits. A handler signals failure by raising; the message becomes the
step's ``error_message``.
"""

import logging
from datetime import datetime, timezone

from admin_console.core.exceptions import ValidationError
from admin_console.models import db
from admin_console.models.auth import USER_ROLES, Team
from admin_console.services import approval_manager
from admin_console.services import permission_engine
from admin_console.services.bulk_operations import active_admin_ids, loses_admin
from admin_console.services.notification_manager import NotificationManager

logger = logging.getLogger(__name__)


def _config(step):
    return step.config or {}


def _keep_one_admin(user, operation_type, target):
    if loses_admin(user, operation_type, target) and active_admin_ids(user.tenant_id) <= {user.id}:
        raise ValidationError("Cannot remove the last active admin",
                              details={"user_id": user.id, "type": "LAST_ADMIN"})


# ── Handlers ─────────────────────────────────────────────────────────────────

def create_account(step, workflow, user):
    """Activate an invited or inactive account."""
    if user.status == "ACTIVE":
        return {"changed": False, "status": user.status}
    if user.status == "ARCHIVED":
        raise ValidationError("Cannot create account for an archived user")
    previous = user.status
    user.status = "ACTIVE"
    db.session.flush()
    return {"changed": True, "status": "ACTIVE", "previous_status": previous}


def provision_access(step, workflow, user):
    """Grant ``config.permissions`` (with dependencies) and optional ``config.team_id``."""
    cfg = _config(step)
    requested = cfg.get("permissions") or []
    result = {"granted": []}

    if requested:
        unknown = [p for p in requested if p not in permission_engine.PERMISSION_METADATA]
        if unknown:
            raise ValidationError(f"Unknown permissions: {', '.join(unknown)}")
        current = set(user.permissions or [])
        desired = current | set(permission_engine.expand_with_dependencies(requested))
        effective = permission_engine.get_effective_permissions(user.role, desired)
        check = permission_engine.validate(effective)
        conflicts = [e for e in check["errors"] if e["type"] == "conflict"]
        if conflicts:
            raise ValidationError(conflicts[0]["message"], details={"conflicts": conflicts})
        granted = sorted(desired - current)
        if granted:
            user.permissions = sorted(desired)
        result["granted"] = granted

    team_id = cfg.get("team_id")
    if team_id is not None and user.team_id != team_id:
        team = Team.get_for_tenant(team_id, workflow.tenant_id)
        if team is None:
            raise ValidationError(f"Team {team_id} not found")
        user.team_id = team.id
        result["team_id"] = team.id

    db.session.flush()
    return result


def send_email(step, workflow, user):
    """Queue the step's email once."""
    if NotificationManager.has_pending_for_step(step.id, "STEP_EMAIL"):
        return {"queued": False}
    cfg = _config(step)
    NotificationManager.queue_email(
        workflow_id=workflow.id,
        step_id=step.id,
        to=cfg.get("to") or user.email,
        subject=cfg.get("subject") or step.name,
        body=cfg.get("body") or "",
        event="STEP_EMAIL",
    )
    return {"queued": True}


def assign_role(step, workflow, user):
    role = _config(step).get("role")
    if not role:
        raise ValidationError("Role not specified in step configuration")
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role: {role}")
    _keep_one_admin(user, "ROLE_CHANGE", role)
    previous = user.role
    user.role = role
    db.session.flush()
    return {"role": role, "previous_role": previous}


def disable_account(step, workflow, user):
    if user.status in ("INACTIVE", "ARCHIVED"):
        return {"changed": False, "status": user.status}
    _keep_one_admin(user, "STATUS_CHANGE", "INACTIVE")
    user.status = "INACTIVE"
    db.session.flush()
    return {"changed": True, "status": "INACTIVE"}


def archive_data(step, workflow, user):
    _keep_one_admin(user, "STATUS_CHANGE", "ARCHIVED")
    if user.archived_at is None:
        user.archived_at = datetime.now(timezone.utc)
    user.status = "ARCHIVED"
    db.session.flush()
    return {"status": "ARCHIVED"}


def request_approval(step, workflow, user):
    """Ask ``config.approvers`` (or the firm admins) to sign off."""
    if step.approval_requested_at is not None or step.approved_at is not None:
        return {"requested": 0}
    count = approval_manager.request_approval(step, _config(step).get("approvers"))
    return {"requested": count}


def sync_permissions(step, workflow, user):
    """Reset explicit grants so the user holds exactly the role defaults."""
    removed = sorted(user.permissions or [])
    user.permissions = []
    db.session.flush()
    return {"removed": removed, "role_permissions": permission_engine.get_common_permissions_for_role(user.role)}


STEP_HANDLERS = {
    "CREATE_ACCOUNT": create_account,
    "PROVISION_ACCESS": provision_access,
    "SEND_EMAIL": send_email,
    "ASSIGN_ROLE": assign_role,
    "DISABLE_ACCOUNT": disable_account,
    "ARCHIVE_DATA": archive_data,
    "REQUEST_APPROVAL": request_approval,
    "SYNC_PERMISSIONS": sync_permissions,
}


def get_step_handler(action_type):
    return STEP_HANDLERS.get(action_type)
