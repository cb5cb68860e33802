"""
Admin dashboard blueprint.

Endpoints:
    GET /api/v1/admin/dashboard/metrics          — KPI cards
    GET /api/v1/admin/dashboard/analytics        — growth / distribution / efficiency (?days=90)
    GET /api/v1/admin/dashboard/recommendations  — actionable findings by impact
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX
from admin_console.middleware.permission_required import current_tenant_id, require_permission
from admin_console.services import dashboard_service
from admin_console.utils.helpers import parse_int_arg

dashboard_bp = Blueprint("dashboard", __name__, url_prefix=ADMIN_PREFIX)


@dashboard_bp.route("/dashboard/metrics", methods=["GET"])
@require_permission("analytics.view")
def metrics():
    return jsonify(dashboard_service.get_metrics(current_tenant_id()))


@dashboard_bp.route("/dashboard/analytics", methods=["GET"])
@require_permission("analytics.view")
def analytics():
    days = parse_int_arg(request.args.get("days"), 90, minimum=7, maximum=365)
    return jsonify(dashboard_service.get_analytics(current_tenant_id(), days))


@dashboard_bp.route("/dashboard/recommendations", methods=["GET"])
@require_permission("analytics.view")
def recommendations():
    items = dashboard_service.get_recommendations(current_tenant_id())
    return jsonify({
        "recommendations": items,
        "count": len(items),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
