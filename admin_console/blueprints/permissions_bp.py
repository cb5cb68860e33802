"""
Permission catalogue blueprint (read-only metadata + checks).

Endpoints:
    GET  /api/v1/admin/permissions               — catalogue by category (?search=)
    GET  /api/v1/admin/permissions/roles/<role>  — default permissions of a role
    POST /api/v1/admin/permissions/validate      — dependency / conflict check + suggestions
    POST /api/v1/admin/permissions/diff          — added / removed / risk level
"""

from flask import Blueprint, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX, json_body
from admin_console.middleware.permission_required import require_permission
from admin_console.models.auth import USER_ROLES
from admin_console.services import permission_engine
from admin_console.utils.errors import E, api_error

permissions_bp = Blueprint("permissions", __name__, url_prefix=ADMIN_PREFIX)


def _permission_list(data, key):
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        return None
    return value


@permissions_bp.route("/permissions", methods=["GET"])
@require_permission("roles.manage")
def list_permissions():
    search = request.args.get("search")
    if search:
        return jsonify({"permissions": permission_engine.search_permissions(search)})
    return jsonify({
        "categories": permission_engine.list_permissions_by_category(),
        "roles": {role: permission_engine.get_common_permissions_for_role(role) for role in USER_ROLES},
    })


@permissions_bp.route("/permissions/roles/<role>", methods=["GET"])
@require_permission("roles.manage")
def role_permissions(role):
    role = role.upper()
    if role not in USER_ROLES:
        return api_error(E.NOT_FOUND, "Role not found")
    permissions = permission_engine.get_common_permissions_for_role(role)
    return jsonify({
        "role": role,
        "permissions": permissions,
        "risk_level": permission_engine.highest_risk(permissions),
    })


@permissions_bp.route("/permissions/validate", methods=["POST"])
@require_permission("roles.manage")
def validate_permissions():
    """Body: { permissions: [...], role? }"""
    data, err = json_body()
    if err:
        return err
    permissions = _permission_list(data, "permissions")
    if permissions is None:
        return api_error(E.VALIDATION_INVALID, "permissions must be a list of strings")
    role = data.get("role")
    if role is not None and role not in USER_ROLES:
        return api_error(E.VALIDATION_INVALID, f"Unknown role: {role}")
    result = permission_engine.validate(permissions)
    result["suggestions"] = permission_engine.get_suggestions(role, permissions)
    return jsonify(result)


@permissions_bp.route("/permissions/diff", methods=["POST"])
@require_permission("roles.manage")
def diff_permissions():
    """Body: { current: [...], desired: [...] }"""
    data, err = json_body()
    if err:
        return err
    current = _permission_list(data, "current")
    desired = _permission_list(data, "desired")
    if current is None or desired is None:
        return api_error(E.VALIDATION_INVALID, "current and desired must be lists of strings")
    return jsonify(permission_engine.calculate_diff(current, desired))
