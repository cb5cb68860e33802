"""
User administration blueprint.

Endpoints:
    GET  /api/v1/admin/users         — paginated user list (ETag / 304)
    GET  /api/v1/admin/stats/users   — user statistics (?range=7d|30d|90d|1y)
    GET  /api/v1/admin/search?q=     — global search (users, teams)
"""

import logging

from flask import Blueprint, g, jsonify, make_response, request

from admin_console.blueprints import ADMIN_PREFIX
from admin_console.middleware.permission_required import (
    current_tenant_id,
    require_auth,
    require_permission,
)
from admin_console.services import user_service
from admin_console.utils.helpers import parse_int_arg

logger = logging.getLogger(__name__)

admin_users_bp = Blueprint("admin_users", __name__, url_prefix=ADMIN_PREFIX)


@admin_users_bp.route("/users", methods=["GET"])
@require_permission("users.manage")
def list_users():
    """
    Query params:
        page, limit (≤ 100), role, status, search
    """
    page = parse_int_arg(request.args.get("page"), 1, minimum=1)
    limit = parse_int_arg(request.args.get("limit"), 50, minimum=1, maximum=100)
    payload, etag = user_service.list_users(
        current_tenant_id(),
        page=page,
        limit=limit,
        role=request.args.get("role"),
        status=request.args.get("status"),
        search=request.args.get("search"),
    )

    if request.headers.get("If-None-Match") == etag:
        resp = make_response("", 304)
        resp.headers["ETag"] = etag
        return resp

    resp = make_response(jsonify(payload), 200)
    resp.headers["ETag"] = etag
    resp.headers["Cache-Control"] = "private, max-age=30, stale-while-revalidate=60"
    return resp


@admin_users_bp.route("/stats/users", methods=["GET"])
@require_permission("analytics.view")
def user_stats():
    stats = user_service.get_user_stats(current_tenant_id(), request.args.get("range"))
    resp = make_response(jsonify(stats), 200)
    resp.headers["Cache-Control"] = "private, max-age=120"
    return resp


@admin_users_bp.route("/search", methods=["GET"])
@require_auth
def search():
    user = g.current_user
    limit = parse_int_arg(request.args.get("limit"), 10, minimum=1, maximum=10)
    results = user_service.search(
        current_tenant_id(), user.role, request.args.get("q", ""), limit, grants=user.permissions,
    )
    return jsonify({"results": results})
