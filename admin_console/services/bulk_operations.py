"""
Bulk Operations Service — batched role / status / team / permission changes.

Lifecycle:
    DRAFT ──────────────────────────────┐
    PENDING_APPROVAL ─approve→ APPROVED ─┴─execute→ IN_PROGRESS → COMPLETED | FAILED
          └─reject→ CANCELLED                                        └─rollback→ ROLLED_BACK
    DRAFT / PENDING_APPROVAL / APPROVED ─cancel→ CANCELLED

Execution applies each user's change inside its own savepoint and writes
one changelog row per applied change; rollback replays the changelog in
reverse. With ``operation_config.atomic`` any per-user failure undoes the
whole batch.

Per-user planning (shared by preview and execute):
    SUCCESS  change applies: {field, old_value, new_value}
    WARNING  nothing to do (already has the role/status/team/permission)
    FAILED   change refused (last active admin, permission conflict)
"""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from flask import current_app

from admin_console.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    ValidationError,
)
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.auth import ADMIN_ROLES, USER_ROLES, USER_STATUSES, Team, User
from admin_console.models.bulk_operation import (
    OPERATION_STATUSES,
    OPERATION_TYPES,
    BulkOperation,
    BulkOperationChange,
    BulkOperationResult,
)
from admin_console.services import permission_engine
from admin_console.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED")

HIGH_VOLUME_THRESHOLD = 50
HIGH_WORKFLOW_THRESHOLD = 100
WORKFLOWS_PER_USER = 1.5
NOTIFICATIONS_PER_USER = 2       # email + in-app
COST_PER_USER = 5
USERS_PER_MINUTE = 10

_FILTER_KEYS = ("user_ids", "role", "status", "team_id", "search")


def _now():
    return datetime.now(timezone.utc)


def _log_extra(op):
    return {"tenant_id": op.tenant_id, "operation_id": op.id}


# ═════════════════════════════════════════════════════════════════════════
# Input validation
# ═════════════════════════════════════════════════════════════════════════

def _validate_target(tenant_id, operation_type, target_value):
    """Return the normalised target value or raise ValidationError."""
    if target_value in (None, ""):
        raise ValidationError(
            "operation_config.target_value is required",
            details={"operation_config.target_value": "required"},
        )
    if operation_type == "ROLE_CHANGE":
        if target_value not in USER_ROLES:
            raise ValidationError(f"Unknown role: {target_value}",
                                  details={"valid_roles": list(USER_ROLES)})
        return target_value
    if operation_type == "STATUS_CHANGE":
        if target_value not in ASSIGNABLE_STATUSES:
            raise ValidationError(f"Invalid status: {target_value}",
                                  details={"valid_statuses": list(ASSIGNABLE_STATUSES)})
        return target_value
    if operation_type == "TEAM_ASSIGNMENT":
        try:
            team_id = int(target_value)
        except (TypeError, ValueError):
            raise ValidationError("target_value must be a team id") from None
        if Team.get_for_tenant(team_id, tenant_id) is None:
            raise NotFoundError(resource="Team", resource_id=team_id, tenant_id=tenant_id)
        return team_id
    if target_value not in permission_engine.PERMISSION_METADATA:
        raise ValidationError(f"Unknown permission: {target_value}")
    return target_value


def _validate_filter(user_filter):
    if not isinstance(user_filter, dict):
        raise ValidationError("user_filter must be an object")
    if not any(user_filter.get(k) not in (None, "", []) for k in _FILTER_KEYS):
        raise ValidationError(
            "user_filter must select users",
            details={"user_filter": f"one of {', '.join(_FILTER_KEYS)} is required"},
        )
    ids = user_filter.get("user_ids")
    if ids is not None and (not isinstance(ids, list) or not all(isinstance(i, int) for i in ids)):
        raise ValidationError("user_filter.user_ids must be a list of integers")
    if user_filter.get("role") and user_filter["role"] not in USER_ROLES:
        raise ValidationError(f"Unknown role in user_filter: {user_filter['role']}")
    if user_filter.get("status") and user_filter["status"] not in USER_STATUSES:
        raise ValidationError(f"Unknown status in user_filter: {user_filter['status']}")


def resolve_users(tenant_id, user_filter):
    """Users of *tenant_id* matching *user_filter* (criteria are ANDed)."""
    _validate_filter(user_filter)
    q = User.query_for_tenant(tenant_id)
    if user_filter.get("user_ids"):
        q = q.filter(User.id.in_(user_filter["user_ids"]))
    if user_filter.get("role"):
        q = q.filter(User.role == user_filter["role"])
    if user_filter.get("status"):
        q = q.filter(User.status == user_filter["status"])
    if user_filter.get("team_id") is not None and user_filter.get("team_id") != "":
        q = q.filter(User.team_id == user_filter["team_id"])
    if user_filter.get("search"):
        pattern = f"%{user_filter['search']}%"
        q = q.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    max_users = current_app.config.get("BULK_OPERATION_MAX_USERS", 1000)
    total = q.count()
    if total > max_users:
        raise ValidationError(
            f"Operation selects {total} users; the limit is {max_users}",
            details={"selected": total, "limit": max_users},
        )
    return q.order_by(User.id).all()


# ═════════════════════════════════════════════════════════════════════════
# Per-user planning
# ═════════════════════════════════════════════════════════════════════════

def active_admin_ids(tenant_id):
    rows = (
        db.session.query(User.id)
        .filter(User.tenant_id == tenant_id, User.role.in_(ADMIN_ROLES), User.status == "ACTIVE")
        .all()
    )
    return {r[0] for r in rows}


def loses_admin(user, operation_type, target):
    """True when applying *target* would take an active admin out of the admin set."""
    if user.role not in ADMIN_ROLES or user.status != "ACTIVE":
        return False
    if operation_type == "ROLE_CHANGE":
        return target not in ADMIN_ROLES
    if operation_type == "STATUS_CHANGE":
        return target != "ACTIVE"
    return False


def _plan_permission_grant(user, permission):
    if permission_engine.has_permission(user.role, permission, user.permissions):
        return "WARNING", f"User already has permission {permission}", None
    current = list(user.permissions or [])
    desired = sorted(set(current) | set(permission_engine.expand_with_dependencies([permission])))
    effective = permission_engine.get_effective_permissions(user.role, desired)
    conflicts = [e for e in permission_engine.validate(effective)["errors"] if e["type"] == "conflict"]
    if conflicts:
        return "FAILED", conflicts[0]["message"], None
    return "SUCCESS", f"Will grant {permission}", {
        "field": "permissions", "old_value": sorted(current), "new_value": desired,
    }


def _plan_permission_revoke(user, permission):
    current = set(user.permissions or [])
    if permission not in current:
        if permission in permission_engine.get_common_permissions_for_role(user.role):
            return "WARNING", f"Permission {permission} comes from role {user.role}", None
        return "WARNING", f"User does not have permission {permission}", None
    remaining = current - {permission}
    # drop grants whose dependencies are no longer satisfied
    changed = True
    while changed:
        effective = permission_engine.get_effective_permissions(user.role, remaining)
        orphans = {
            p for p in remaining
            if any(dep not in effective
                   for dep in permission_engine.PERMISSION_METADATA.get(p, {}).get("dependencies", []))
        }
        remaining -= orphans
        changed = bool(orphans)
    return "SUCCESS", f"Will revoke {permission}", {
        "field": "permissions", "old_value": sorted(current), "new_value": sorted(remaining),
    }


def plan_change(user, operation_type, target, remaining_admins):
    """
    Decide what happens to *user*; never writes.

    ``remaining_admins`` is the set of active admin ids still holding
    admin after the users planned so far; it is updated in place.

    Returns (status, message, change | None).
    """
    if loses_admin(user, operation_type, target):
        if remaining_admins <= {user.id}:
            return "FAILED", "Cannot remove the last active admin", None

    if operation_type == "ROLE_CHANGE":
        if user.role == target:
            return "WARNING", f"User already has role {target}", None
        outcome = ("SUCCESS", f"Will change role to {target}",
                   {"field": "role", "old_value": user.role, "new_value": target})
    elif operation_type == "STATUS_CHANGE":
        if user.status == target:
            return "WARNING", f"User already has status {target}", None
        outcome = ("SUCCESS", f"Will change status to {target}",
                   {"field": "status", "old_value": user.status, "new_value": target})
    elif operation_type == "TEAM_ASSIGNMENT":
        if user.team_id == target:
            return "WARNING", "User is already in this team", None
        outcome = ("SUCCESS", f"Will assign to team {target}",
                   {"field": "team_id", "old_value": user.team_id, "new_value": target})
    elif operation_type == "PERMISSION_GRANT":
        outcome = _plan_permission_grant(user, target)
    elif operation_type == "PERMISSION_REVOKE":
        outcome = _plan_permission_revoke(user, target)
    else:
        return "FAILED", f"Unsupported operation type {operation_type}", None

    if outcome[0] == "SUCCESS" and loses_admin(user, operation_type, target):
        remaining_admins.discard(user.id)
    return outcome


def simulate_change(user, operation_type, target):
    """The {field, old_value, new_value} a single change would produce."""
    _, _, change = plan_change(user, operation_type, target, remaining_admins={-1, user.id})
    return change


# ═════════════════════════════════════════════════════════════════════════
# Impact analysis
# ═════════════════════════════════════════════════════════════════════════

def analyze_impact(tenant_id, operation_type, target_value, user_filter) -> dict:
    """Coarse estimate of an operation's blast radius and risks."""
    if operation_type not in OPERATION_TYPES:
        raise ValidationError(f"Invalid operation type {operation_type!r}",
                              details={"valid_types": list(OPERATION_TYPES)})
    target = _validate_target(tenant_id, operation_type, target_value)
    users = resolve_users(tenant_id, user_filter or {})
    count = len(users)

    risks = []
    if count > HIGH_VOLUME_THRESHOLD:
        risks.append({
            "type": "HIGH_VOLUME",
            "severity": "warning",
            "description": f"Operation affects {count} users. Consider gradual rollout.",
            "mitigation": "Test with a smaller subset first",
        })
    if (operation_type == "ROLE_CHANGE" and target in ADMIN_ROLES) or (
        operation_type == "PERMISSION_GRANT"
        and permission_engine.PERMISSION_METADATA[target]["risk"] == "critical"
    ):
        risks.append({
            "type": "PERMISSION_ESCALATION",
            "severity": "critical",
            "description": f"Granting {target} to {count} users. Review carefully.",
            "mitigation": "Verify each user individually before granting",
        })
    workflows = math.ceil(count * WORKFLOWS_PER_USER)
    if workflows > HIGH_WORKFLOW_THRESHOLD:
        risks.append({
            "type": "HIGH_WORKFLOW_LOAD",
            "severity": "warning",
            "description": f"Operation will trigger ~{workflows} workflows. May impact system performance.",
            "mitigation": "Execute during off-peak hours",
        })
    active_admins = active_admin_ids(tenant_id)
    demoted = {u.id for u in users if loses_admin(u, operation_type, target)}
    if active_admins and active_admins <= demoted:
        risks.append({
            "type": "LAST_ADMIN",
            "severity": "critical",
            "description": "Operation would leave the firm without an active admin.",
            "mitigation": "Exclude at least one admin from the selection",
        })

    return {
        "affected_users": count,
        "affected_teams": len({u.team_id for u in users if u.team_id}),
        "affected_roles": len({u.role for u in users}),
        "workflows_triggered": workflows,
        "notifications_sent": count * NOTIFICATIONS_PER_USER,
        "estimated_cost": count * COST_PER_USER,
        "estimated_duration_minutes": math.ceil(count / USERS_PER_MINUTE),
        "rollback_capability": True,
        "risks": risks,
    }


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════

def get_bulk_operation(operation_id, tenant_id) -> BulkOperation:
    op = BulkOperation.get_for_tenant(operation_id, tenant_id)
    if op is None:
        raise NotFoundError(resource="BulkOperation", resource_id=operation_id, tenant_id=tenant_id)
    return op


def list_bulk_operations(tenant_id, *, status=None, limit=50, offset=0):
    """Return (operations, total) newest first."""
    q = BulkOperation.query_for_tenant(tenant_id)
    if status in OPERATION_STATUSES:
        q = q.filter(BulkOperation.status == status)
    total = q.count()
    items = (
        q.order_by(BulkOperation.created_at.desc(), BulkOperation.id.desc())
        .offset(offset).limit(limit).all()
    )
    return items, total


def create_bulk_operation(tenant_id, created_by, data, actor_role=None) -> BulkOperation:
    name = (data.get("name") or "").strip()
    operation_type = data.get("operation_type") or data.get("type")
    config = data.get("operation_config")
    errors = {}
    if not name:
        errors["name"] = "required"
    if operation_type not in OPERATION_TYPES:
        errors["type"] = f"must be one of {', '.join(OPERATION_TYPES)}"
    if not isinstance(config, dict):
        errors["operation_config"] = "required object"
    if errors:
        raise ValidationError("Invalid bulk operation", details=errors)

    target = _validate_target(tenant_id, operation_type, config.get("target_value"))
    if operation_type == "ROLE_CHANGE" and target == "SUPER_ADMIN" and actor_role != "SUPER_ADMIN":
        raise PermissionDeniedError("Only a SUPER_ADMIN can grant SUPER_ADMIN", required="SUPER_ADMIN")
    user_filter = data.get("user_filter") or {}
    _validate_filter(user_filter)

    scheduled_for = None
    if data.get("scheduled_for"):
        scheduled_for = parse_datetime(data["scheduled_for"])
        if scheduled_for is None:
            raise ValidationError("scheduled_for must be an ISO-8601 date or datetime")

    approval_required = bool(data.get("approval_required"))
    op = BulkOperation(
        tenant_id=tenant_id,
        name=name[:200],
        description=data.get("description"),
        operation_type=operation_type,
        user_filter=user_filter,
        operation_config={**config, "target_value": target},
        approval_required=approval_required,
        notify_users=bool(data.get("notify_users", True)),
        status="PENDING_APPROVAL" if approval_required else "DRAFT",
        created_by=created_by,
        scheduled_for=scheduled_for,
    )
    db.session.add(op)
    db.session.flush()
    write_audit(
        action="bulk_operation.create", resource="bulk_operation", resource_id=op.id,
        tenant_id=tenant_id, user_id=created_by,
        details={"type": operation_type, "target_value": target, "status": op.status},
    )
    db.session.commit()
    logger.info("Bulk operation %d created (%s → %s)", op.id, operation_type, target,
                extra=_log_extra(op))
    return op


def delete_bulk_operation(operation_id, tenant_id, actor_id=None):
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status != "DRAFT":
        raise StateTransitionError("BulkOperation", op.status, "delete")
    write_audit(action="bulk_operation.delete", resource="bulk_operation", resource_id=op.id,
                tenant_id=tenant_id, user_id=actor_id, details={"name": op.name})
    db.session.delete(op)
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════
# Approval lifecycle
# ═════════════════════════════════════════════════════════════════════════

def approve_bulk_operation(operation_id, tenant_id, approver_id) -> BulkOperation:
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status != "PENDING_APPROVAL":
        raise StateTransitionError("BulkOperation", op.status, "approve")
    if op.created_by is not None and op.created_by == approver_id:
        raise ValidationError("Self-approval is not permitted")
    op.status = "APPROVED"
    op.approved_by = approver_id
    op.approved_at = _now()
    write_audit(action="bulk_operation.approve", resource="bulk_operation", resource_id=op.id,
                tenant_id=tenant_id, user_id=approver_id)
    db.session.commit()
    logger.info("Bulk operation %d approved by %d", op.id, approver_id, extra=_log_extra(op))
    return op


def reject_bulk_operation(operation_id, tenant_id, approver_id, reason=None) -> BulkOperation:
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status != "PENDING_APPROVAL":
        raise StateTransitionError("BulkOperation", op.status, "reject")
    op.status = "CANCELLED"
    op.rejection_reason = reason or "Rejected"
    write_audit(action="bulk_operation.reject", resource="bulk_operation", resource_id=op.id,
                tenant_id=tenant_id, user_id=approver_id, details={"reason": op.rejection_reason})
    db.session.commit()
    logger.info("Bulk operation %d rejected by %d", op.id, approver_id, extra=_log_extra(op))
    return op


def cancel_bulk_operation(operation_id, tenant_id, actor_id=None) -> BulkOperation:
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status not in ("DRAFT", "PENDING_APPROVAL", "APPROVED"):
        raise StateTransitionError("BulkOperation", op.status, "cancel")
    op.status = "CANCELLED"
    write_audit(action="bulk_operation.cancel", resource="bulk_operation", resource_id=op.id,
                tenant_id=tenant_id, user_id=actor_id)
    db.session.commit()
    return op


# ═════════════════════════════════════════════════════════════════════════
# Preview / execute / rollback
# ═════════════════════════════════════════════════════════════════════════

def _summary(op, results, *, dry_run):
    return {
        "operation_id": op.id,
        "dry_run": dry_run,
        "status": op.status,
        "total": len(results),
        "succeeded": sum(1 for r in results if r["status"] == "SUCCESS"),
        "warnings": sum(1 for r in results if r["status"] == "WARNING"),
        "failed": sum(1 for r in results if r["status"] == "FAILED"),
        "results": results,
    }


def preview_bulk_operation(operation_id, tenant_id, user_filter=None) -> dict:
    """Dry run: validate and simulate every user's change without writing."""
    op = get_bulk_operation(operation_id, tenant_id)
    users = resolve_users(tenant_id, user_filter or op.user_filter or {})
    remaining_admins = active_admin_ids(tenant_id)
    results = []
    for user in users:
        status, message, change = plan_change(user, op.operation_type, op.target_value, remaining_admins)
        results.append({
            "user_id": user.id,
            "email": user.email,
            "status": status,
            "message": message,
            "changes": change,
        })
    summary = _summary(op, results, dry_run=True)
    summary["impact"] = analyze_impact(tenant_id, op.operation_type, op.target_value,
                                       user_filter or op.user_filter or {})
    return summary


def _apply(user, change):
    value = change["new_value"]
    setattr(user, change["field"], list(value) if isinstance(value, list) else value)


def execute_bulk_operation(operation_id, tenant_id, executed_by) -> dict:
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status not in ("DRAFT", "APPROVED"):
        raise StateTransitionError("BulkOperation", op.status, "execute")
    if op.approval_required and op.status != "APPROVED":
        raise StateTransitionError("BulkOperation", op.status, "execute unapproved")

    users = resolve_users(tenant_id, op.user_filter or {})
    op.status = "IN_PROGRESS"
    op.started_at = _now()
    op.total_users = len(users)
    db.session.flush()
    logger.info("Executing bulk operation %d on %d users", op.id, len(users), extra=_log_extra(op))

    remaining_admins = active_admin_ids(tenant_id)
    results = []
    batch = db.session.begin_nested() if op.is_atomic else None

    for user in users:
        status, message, change = plan_change(user, op.operation_type, op.target_value, remaining_admins)
        if status == "SUCCESS":
            try:
                with db.session.begin_nested():
                    _apply(user, change)
                    db.session.add(BulkOperationChange(
                        operation_id=op.id,
                        user_id=user.id,
                        field=change["field"],
                        old_value=change["old_value"],
                        new_value=change["new_value"],
                        executed_by=executed_by,
                    ))
                    db.session.flush()
                message = f"Successfully updated {user.email}"
            except SQLAlchemyError as exc:
                status, message, change = "FAILED", f"Failed to update user: {exc.__class__.__name__}", None
                logger.warning("Bulk operation %d: user %d failed: %s", op.id, user.id, exc,
                               extra=_log_extra(op))
        results.append({
            "user_id": user.id,
            "email": user.email,
            "status": status,
            "message": message,
            "changes": change,
        })

    failed = sum(1 for r in results if r["status"] == "FAILED")
    if batch is not None:
        if failed:
            batch.rollback()
            for r in results:
                if r["status"] == "SUCCESS":
                    r["status"] = "FAILED"
                    r["message"] = "Rolled back: another user in the batch failed"
                    r["changes"] = None
            logger.warning("Bulk operation %d: atomic batch rolled back (%d failures)",
                           op.id, failed, extra=_log_extra(op))
        else:
            batch.commit()

    for r in results:
        db.session.add(BulkOperationResult(
            operation_id=op.id,
            user_id=r["user_id"],
            status=r["status"],
            message=r["message"],
            changes=r["changes"] or {},
        ))

    op.succeeded_count = sum(1 for r in results if r["status"] == "SUCCESS")
    op.warning_count = sum(1 for r in results if r["status"] == "WARNING")
    op.failed_count = sum(1 for r in results if r["status"] == "FAILED")
    if op.is_atomic and failed:
        op.status = "FAILED"
    elif op.failed_count and not op.succeeded_count:
        op.status = "FAILED"
    else:
        op.status = "COMPLETED"
    op.completed_at = _now()

    write_audit(
        action="bulk_operation.execute", resource="bulk_operation", resource_id=op.id,
        tenant_id=tenant_id, user_id=executed_by,
        details={
            "status": op.status,
            "succeeded": op.succeeded_count,
            "warnings": op.warning_count,
            "failed": op.failed_count,
            "users_notified": op.succeeded_count if op.notify_users else 0,
        },
    )
    db.session.commit()
    logger.info("Bulk operation %d %s: %d succeeded, %d warnings, %d failed",
                op.id, op.status, op.succeeded_count, op.warning_count, op.failed_count,
                extra=_log_extra(op))
    return _summary(op, results, dry_run=False)


def rollback_bulk_operation(operation_id, tenant_id, executed_by) -> dict:
    """
    Restore every changed field to its recorded ``old_value``.

    A field that was modified again after the operation is left alone
    and reported under ``skipped``.
    """
    op = get_bulk_operation(operation_id, tenant_id)
    if op.status not in ("COMPLETED", "FAILED"):
        raise StateTransitionError("BulkOperation", op.status, "roll back")
    pending = [c for c in op.changes if c.rolled_back_at is None]
    if not pending:
        raise ValidationError("Operation has no applied changes to roll back")

    now = _now()
    restored, skipped = 0, []
    for change in reversed(pending):
        user = User.get_for_tenant(change.user_id, tenant_id)
        if user is None:
            skipped.append({"user_id": change.user_id, "field": change.field, "reason": "user not found"})
            continue
        current = getattr(user, change.field)
        if isinstance(current, list):
            current = sorted(current)
        expected = sorted(change.new_value) if isinstance(change.new_value, list) else change.new_value
        if current != expected:
            skipped.append({"user_id": user.id, "field": change.field, "reason": "modified since operation"})
            continue
        old = change.old_value
        setattr(user, change.field, list(old) if isinstance(old, list) else old)
        change.rolled_back_at = now
        restored += 1

    op.status = "ROLLED_BACK"
    op.rolled_back_at = now
    write_audit(
        action="bulk_operation.rollback", resource="bulk_operation", resource_id=op.id,
        tenant_id=tenant_id, user_id=executed_by,
        details={"restored": restored, "skipped": len(skipped)},
    )
    db.session.commit()
    logger.info("Bulk operation %d rolled back: %d restored, %d skipped",
                op.id, restored, len(skipped), extra=_log_extra(op))
    return {"operation_id": op.id, "status": op.status, "restored": restored, "skipped": skipped}


def get_progress(operation_id, tenant_id) -> dict:
    op = get_bulk_operation(operation_id, tenant_id)
    processed = op.succeeded_count + op.warning_count + op.failed_count
    if op.total_users:
        percent = round(processed / op.total_users * 100)
    else:
        percent = 100 if op.status in ("COMPLETED", "FAILED", "ROLLED_BACK") else 0
    return {
        "operation_id": op.id,
        "status": op.status,
        "total": op.total_users,
        "processed": processed,
        "percent": percent,
        "succeeded": op.succeeded_count,
        "warnings": op.warning_count,
        "failed": op.failed_count,
    }
