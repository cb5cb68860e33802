"""
Bulk operations blueprint.

Endpoints:
    GET    /api/v1/admin/bulk-operations          — list (?status, limit, offset)
    POST   /api/v1/admin/bulk-operations          — create
    POST   /api/v1/admin/bulk-operations/impact   — impact analysis without creating
    GET    /api/v1/admin/bulk-operations/<id>     — detail with per-user results
    PATCH  /api/v1/admin/bulk-operations/<id>     — action: preview | execute | approve |
                                                    reject | cancel | rollback | progress
    DELETE /api/v1/admin/bulk-operations/<id>     — delete a DRAFT operation
"""

import logging

from flask import Blueprint, g, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX, json_body, limit_offset_args, pick
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_permission,
)
from admin_console.services import bulk_operations
from admin_console.utils.errors import E, api_error

logger = logging.getLogger(__name__)

bulk_operations_bp = Blueprint("bulk_operations", __name__, url_prefix=ADMIN_PREFIX)

BULK_ACTIONS = ("preview", "execute", "approve", "reject", "cancel", "rollback", "progress")


def _create_payload(data):
    config = pick(data, "operationConfig", "operation_config")
    if isinstance(config, dict) and "targetValue" in config:
        config = {**config, "target_value": config.get("target_value", config["targetValue"])}
        config.pop("targetValue")
    return {
        "name": data.get("name"),
        "description": data.get("description"),
        "operation_type": pick(data, "type", "operation_type"),
        "user_filter": pick(data, "userFilter", "user_filter", {}),
        "operation_config": config,
        "approval_required": pick(data, "approvalRequired", "approval_required", False),
        "notify_users": pick(data, "notifyUsers", "notify_users", True),
        "scheduled_for": pick(data, "scheduledFor", "scheduled_for"),
    }


@bulk_operations_bp.route("/bulk-operations", methods=["GET"])
@require_permission("users.bulk")
def list_operations():
    limit, offset = limit_offset_args(default_limit=10, max_limit=100)
    items, total = bulk_operations.list_bulk_operations(
        current_tenant_id(), status=request.args.get("status"), limit=limit, offset=offset,
    )
    return jsonify({
        "operations": [op.to_dict() for op in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@bulk_operations_bp.route("/bulk-operations", methods=["POST"])
@require_permission("users.bulk")
def create_operation():
    """
    Body:
        { name, type, operationConfig: {targetValue | target_value, atomic?}, userFilter?,
          description?, approvalRequired?, notifyUsers?, scheduledFor? }
    """
    data, err = json_body()
    if err:
        return err
    payload = _create_payload(data)
    if not payload["name"] or not payload["operation_type"] or payload["operation_config"] is None:
        return api_error(E.VALIDATION_REQUIRED, "Missing required fields",
                         details={"required": ["name", "type", "operationConfig"]})
    op = bulk_operations.create_bulk_operation(
        current_tenant_id(), current_user_id(), payload, actor_role=g.current_user.role,
    )
    return jsonify(op.to_dict()), 201


@bulk_operations_bp.route("/bulk-operations/impact", methods=["POST"])
@require_permission("users.bulk")
def analyze_impact():
    """Body: { type, operationConfig: {target_value}, userFilter }"""
    data, err = json_body()
    if err:
        return err
    payload = _create_payload(data)
    config = payload["operation_config"] or {}
    if not isinstance(config, dict):
        return api_error(E.VALIDATION_INVALID, "operationConfig must be an object")
    impact = bulk_operations.analyze_impact(
        current_tenant_id(), payload["operation_type"], config.get("target_value"),
        payload["user_filter"],
    )
    return jsonify(impact)


@bulk_operations_bp.route("/bulk-operations/<int:operation_id>", methods=["GET"])
@require_permission("users.bulk")
def get_operation(operation_id):
    op = bulk_operations.get_bulk_operation(operation_id, current_tenant_id())
    return jsonify(op.to_dict(include_results=True))


@bulk_operations_bp.route("/bulk-operations/<int:operation_id>", methods=["PATCH"])
@require_permission("users.bulk")
def update_operation(operation_id):
    """Body: { action, userFilter?, reason? }"""
    data, err = json_body()
    if err:
        return err
    action = str(data.get("action") or "").lower()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    if action not in BULK_ACTIONS:
        return api_error(E.VALIDATION_INVALID, "Invalid action",
                         details={"valid_actions": list(BULK_ACTIONS)})

    tenant_id = current_tenant_id()
    actor_id = current_user_id()

    if action == "preview":
        user_filter = pick(data, "userFilter", "user_filter")
        return jsonify(bulk_operations.preview_bulk_operation(operation_id, tenant_id, user_filter))
    if action == "execute":
        return jsonify(bulk_operations.execute_bulk_operation(operation_id, tenant_id, actor_id))
    if action == "rollback":
        return jsonify(bulk_operations.rollback_bulk_operation(operation_id, tenant_id, actor_id))
    if action == "progress":
        return jsonify(bulk_operations.get_progress(operation_id, tenant_id))

    if action == "approve":
        op = bulk_operations.approve_bulk_operation(operation_id, tenant_id, actor_id)
    elif action == "reject":
        op = bulk_operations.reject_bulk_operation(operation_id, tenant_id, actor_id, data.get("reason"))
    else:
        op = bulk_operations.cancel_bulk_operation(operation_id, tenant_id, actor_id)
    return jsonify(op.to_dict())


@bulk_operations_bp.route("/bulk-operations/<int:operation_id>", methods=["DELETE"])
@require_permission("users.bulk")
def delete_operation(operation_id):
    bulk_operations.delete_bulk_operation(operation_id, current_tenant_id(), current_user_id())
    return jsonify({"deleted": True})
