"""
User lifecycle workflow blueprint.

Endpoints:
    GET    /api/v1/admin/workflows                    — list (?status, ?type, page, limit)
    POST   /api/v1/admin/workflows                    — create from template or custom steps
    GET    /api/v1/admin/workflows/templates          — built-in templates
    GET    /api/v1/admin/workflows/approvals/pending  — gated steps awaiting approval
    GET    /api/v1/admin/workflows/<id>               — detail with steps and progress
    PATCH  /api/v1/admin/workflows/<id>               — action: PAUSE | RESUME | CANCEL |
                                                        EXECUTE | APPROVE_STEP | REJECT_STEP
    GET    /api/v1/admin/workflows/<id>/notifications — queued / sent notifications
"""

import logging

from flask import Blueprint, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX, json_body, pick
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_permission,
)
from admin_console.services import approval_manager, workflow_builder, workflow_executor
from admin_console.services.notification_manager import NotificationManager
from admin_console.utils.errors import E, api_error
from admin_console.utils.helpers import parse_int_arg

logger = logging.getLogger(__name__)

workflows_bp = Blueprint("workflows", __name__, url_prefix=ADMIN_PREFIX)

WORKFLOW_ACTIONS = ("PAUSE", "RESUME", "CANCEL", "EXECUTE", "APPROVE_STEP", "REJECT_STEP")


# ═════════════════════════════════════════════════════════════════════════
# Collection
# ═════════════════════════════════════════════════════════════════════════

@workflows_bp.route("/workflows", methods=["GET"])
@require_permission("users.manage")
def list_workflows():
    page = parse_int_arg(request.args.get("page"), 1, minimum=1)
    limit = parse_int_arg(request.args.get("limit"), 20, minimum=1, maximum=100)
    items, total = workflow_executor.list_workflows(
        current_tenant_id(),
        status=request.args.get("status"),
        workflow_type=request.args.get("type"),
        page=page,
        limit=limit,
    )
    return jsonify({
        "workflows": [w.to_dict() for w in items],
        "pagination": {"page": page, "limit": limit, "total": total},
    })


@workflows_bp.route("/workflows", methods=["POST"])
@require_permission("users.manage")
def create_workflow():
    """
    Body:
        { userId, type?, templateId?, scheduledFor?, overrides? }
        or { userId, type, steps: [{name, action_type, requires_approval?, config?}] }
    """
    data, err = json_body()
    if err:
        return err
    user_id = pick(data, "userId", "user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "userId is required")

    workflow_type = pick(data, "type", "workflow_type")
    scheduled_for = pick(data, "scheduledFor", "scheduled_for")
    steps = data.get("steps")
    if steps is not None:
        if not isinstance(steps, list):
            return api_error(E.VALIDATION_INVALID, "steps must be a list")
        workflow = workflow_builder.create_custom_workflow(
            current_tenant_id(), user_id, workflow_type, steps,
            scheduled_for=scheduled_for, triggered_by=current_user_id(),
        )
    else:
        overrides = data.get("overrides")
        if overrides is not None and not isinstance(overrides, dict):
            return api_error(E.VALIDATION_INVALID, "overrides must be an object")
        workflow = workflow_builder.create_workflow_from_template(
            current_tenant_id(), user_id,
            template_id=pick(data, "templateId", "template_id"),
            workflow_type=workflow_type,
            scheduled_for=scheduled_for,
            triggered_by=current_user_id(),
            overrides=overrides,
        )
    return jsonify({"workflow": workflow.to_dict(include_steps=True)}), 201


@workflows_bp.route("/workflows/templates", methods=["GET"])
@require_permission("users.manage")
def list_templates():
    return jsonify({"templates": workflow_builder.list_templates()})


@workflows_bp.route("/workflows/approvals/pending", methods=["GET"])
@require_permission("users.manage")
def pending_approvals():
    items = approval_manager.list_pending_approvals(current_tenant_id())
    return jsonify({"approvals": items, "total": len(items)})


# ═════════════════════════════════════════════════════════════════════════
# Item
# ═════════════════════════════════════════════════════════════════════════

@workflows_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
@require_permission("users.manage")
def get_workflow(workflow_id):
    tenant_id = current_tenant_id()
    workflow = workflow_executor.get_workflow(workflow_id, tenant_id)
    return jsonify({
        "workflow": workflow.to_dict(include_steps=True),
        "progress": workflow_executor.get_workflow_progress(workflow_id, tenant_id),
    })


@workflows_bp.route("/workflows/<int:workflow_id>", methods=["PATCH"])
@require_permission("users.manage")
def update_workflow(workflow_id):
    """Body: { action, stepId?, reason? }"""
    data, err = json_body()
    if err:
        return err
    action = str(data.get("action") or "").upper()
    if action not in WORKFLOW_ACTIONS:
        return api_error(E.VALIDATION_INVALID, "Invalid action",
                         details={"valid_actions": list(WORKFLOW_ACTIONS)})

    tenant_id = current_tenant_id()
    actor_id = current_user_id()

    if action == "PAUSE":
        workflow = workflow_executor.pause_workflow(workflow_id, tenant_id, actor_id)
        return jsonify({"success": True, "status": workflow.status})
    if action == "CANCEL":
        workflow = workflow_executor.cancel_workflow(workflow_id, tenant_id, data.get("reason"), actor_id)
        return jsonify({"success": True, "status": workflow.status})
    if action in ("RESUME", "EXECUTE"):
        runner = workflow_executor.resume_workflow if action == "RESUME" else workflow_executor.execute_workflow
        result = runner(workflow_id, tenant_id, actor_id)
        return jsonify({"success": result["success"], "status": result["status"], "result": result})

    step_id = pick(data, "stepId", "step_id")
    if not isinstance(step_id, int) or isinstance(step_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "stepId required")
    # the step must belong to this workflow
    workflow = workflow_executor.get_workflow(workflow_id, tenant_id)
    if step_id not in {s.id for s in workflow.steps}:
        return api_error(E.NOT_FOUND, "Step not found")

    if action == "APPROVE_STEP":
        step = workflow_executor.approve_step(step_id, tenant_id, actor_id)
    else:
        step = workflow_executor.reject_step(step_id, tenant_id, actor_id, data.get("reason"))
    return jsonify({"success": step.status != "FAILED", "status": step.status, "step": step.to_dict()})


@workflows_bp.route("/workflows/<int:workflow_id>/notifications", methods=["GET"])
@require_permission("users.manage")
def list_notifications(workflow_id):
    workflow = workflow_executor.get_workflow(workflow_id, current_tenant_id())
    notifications = NotificationManager.list_for_workflow(workflow.id)
    return jsonify({"notifications": [n.to_dict() for n in notifications]})
