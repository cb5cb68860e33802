"""
Audit log blueprint.

Endpoints:
    GET  /api/v1/admin/audit-logs            — list / filter audit entries
    GET  /api/v1/admin/audit-logs/metadata   — ?type=actions | stats (&days=30)
    POST /api/v1/admin/audit-logs/export     — CSV download of the filtered entries
"""

import logging

from flask import Blueprint, Response, jsonify, request

from admin_console.blueprints import ADMIN_PREFIX, json_body, limit_offset_args, pick
from admin_console.middleware.permission_required import (
    current_tenant_id,
    current_user_id,
    require_permission,
)
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.services import audit_service
from admin_console.utils.errors import E, api_error
from admin_console.utils.helpers import parse_datetime, parse_int_arg

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__, url_prefix=ADMIN_PREFIX)


def _filters(source):
    """Translate request fields into audit_service filter kwargs."""
    user_id = pick(source, "userId", "user_id")
    try:
        user_id = int(user_id) if user_id not in (None, "") else None
    except (TypeError, ValueError):
        user_id = -1  # matches nothing
    return {
        "action": pick(source, "action") or None,
        "user_id": user_id,
        "resource": pick(source, "resource") or None,
        "start_date": parse_datetime(pick(source, "startDate", "start_date")),
        "end_date": parse_datetime(pick(source, "endDate", "end_date"), end_of_day=True),
        "search": pick(source, "search") or None,
    }


@audit_bp.route("/audit-logs", methods=["GET"])
@require_permission("audit.view")
def list_audit_logs():
    """
    Query params:
        action, userId, resource, startDate, endDate, search,
        limit (default 50, max 1000), offset
    """
    limit, offset = limit_offset_args(default_limit=50, max_limit=audit_service.MAX_LIMIT)
    result = audit_service.fetch_audit_logs(
        current_tenant_id(), limit=limit, offset=offset, **_filters(request.args),
    )
    return jsonify(result)


@audit_bp.route("/audit-logs/metadata", methods=["GET"])
@require_permission("audit.view")
def audit_metadata():
    kind = request.args.get("type", "actions")
    tenant_id = current_tenant_id()
    if kind == "actions":
        return jsonify({"actions": audit_service.get_distinct_actions(tenant_id)})
    if kind == "stats":
        days = parse_int_arg(request.args.get("days"), 30, minimum=1, maximum=365)
        return jsonify(audit_service.get_audit_stats(tenant_id, days))
    return api_error(E.VALIDATION_INVALID, "Invalid type parameter",
                     details={"valid_types": ["actions", "stats"]})


@audit_bp.route("/audit-logs/export", methods=["POST"])
@require_permission("audit.export")
def export_audit_logs():
    """Body: the same filters as the list endpoint (all optional)."""
    data, err = json_body()
    if err:
        return err
    tenant_id = current_tenant_id()
    filters = _filters(data)
    content = audit_service.export_audit_logs(tenant_id, **filters)

    write_audit(
        action="audit.export", resource="audit_log", tenant_id=tenant_id, user_id=current_user_id(),
        details={k: str(v) for k, v in filters.items() if v is not None},
    )
    db.session.commit()

    return Response(
        content,
        mimetype="text/csv",
        headers={
            "Content-Type": "text/csv; charset=utf-8",
            "Content-Disposition": f'attachment; filename="{audit_service.export_filename()}"',
        },
    )
