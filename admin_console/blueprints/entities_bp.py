"""
Entity relationship blueprint.

Endpoints:
    GET /api/v1/admin/entities/relationships              — nodes, edges and analysis
    GET /api/v1/admin/entities/analysis                   — findings only
    GET /api/v1/admin/entities/users/<id>/permission-gaps — ?required=a,b
    PUT /api/v1/admin/entities/teams/<id>/parent          — body {parentId: int | null}
"""

from flask import Blueprint, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX, json_body, pick
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_permission,
)
from admin_console.services import entity_analysis
from admin_console.utils.errors import E, api_error

entities_bp = Blueprint("entities", __name__, url_prefix=ADMIN_PREFIX)


@entities_bp.route("/entities/relationships", methods=["GET"])
@require_permission("users.view")
def relationships():
    return jsonify(entity_analysis.build_relationship_map(current_tenant_id()))


@entities_bp.route("/entities/analysis", methods=["GET"])
@require_permission("users.view")
def analysis():
    return jsonify(entity_analysis.analyze(current_tenant_id()))


@entities_bp.route("/entities/users/<int:user_id>/permission-gaps", methods=["GET"])
@require_permission("users.view")
def permission_gaps(user_id):
    raw = request.args.get("required", "")
    required = [p.strip() for p in raw.split(",") if p.strip()]
    if not required:
        return api_error(E.VALIDATION_REQUIRED, "required is required")
    return jsonify(entity_analysis.find_permission_gaps(current_tenant_id(), user_id, required))


@entities_bp.route("/entities/teams/<int:team_id>/parent", methods=["PUT"])
@require_permission("users.manage")
def set_team_parent(team_id):
    data, err = json_body()
    if err:
        return err
    parent_id = pick(data, "parentId", "parent_id")
    if parent_id is not None and (not isinstance(parent_id, int) or isinstance(parent_id, bool)):
        return api_error(E.VALIDATION_INVALID, "parentId must be an integer or null")
    team = entity_analysis.set_team_parent(current_tenant_id(), team_id, parent_id, current_user_id())
    return jsonify(team.to_dict())
