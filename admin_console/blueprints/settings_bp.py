"""
Settings blueprint.

Endpoints:
    GET  /api/v1/admin/settings/user-management   — current settings (defaults on first read)
    PUT  /api/v1/admin/settings/user-management   — replace the sections present in the body
"""

from flask import Blueprint, jsonify

from admin_console.blueprints import ADMIN_PREFIX, json_body
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_permission,
)
from admin_console.services import settings_service

settings_bp = Blueprint("settings", __name__, url_prefix=ADMIN_PREFIX)


@settings_bp.route("/settings/user-management", methods=["GET"])
@require_permission("settings.manage")
def get_user_management_settings():
    return jsonify(settings_service.get_settings(current_tenant_id()).to_dict())


@settings_bp.route("/settings/user-management", methods=["PUT"])
@require_permission("settings.manage")
def update_user_management_settings():
    data, err = json_body()
    if err:
        return err
    settings = settings_service.update_settings(current_tenant_id(), current_user_id(), data)
    return jsonify(settings.to_dict())
