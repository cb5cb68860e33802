"""
Menu customization blueprint (behind MENU_CUSTOMIZATION_ENABLED).

Endpoints:
    GET    /api/v1/admin/menu-customization   — stored layout or the default
    PUT    /api/v1/admin/menu-customization   — save (partial) layout
    DELETE /api/v1/admin/menu-customization   — reset to the default
"""

from flask import Blueprint, jsonify

from admin_console.blueprints import ADMIN_PREFIX, json_body
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_auth,
)
from admin_console.services import menu_service
from admin_console.utils.errors import E, api_error

menu_bp = Blueprint("menu", __name__, url_prefix=ADMIN_PREFIX)


@menu_bp.before_request
def _feature_flag():
    if not menu_service.is_enabled():
        return api_error(E.NOT_FOUND, "Not found")
    return None


@menu_bp.route("/menu-customization", methods=["GET"])
@require_auth
def get_menu():
    return jsonify(menu_service.get_menu_customization(current_user_id()))


@menu_bp.route("/menu-customization", methods=["PUT"])
@require_auth
def save_menu():
    data, err = json_body()
    if err:
        return err
    return jsonify(menu_service.save_menu_customization(current_user_id(), current_tenant_id(), data))


@menu_bp.route("/menu-customization", methods=["DELETE"])
@require_auth
def reset_menu():
    return jsonify(menu_service.reset_menu_customization(current_user_id(), current_tenant_id()))
