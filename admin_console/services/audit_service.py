"""
Audit log queries: filtered listing, metadata and CSV export.

Writes go through ``models.audit.write_audit``; this module only reads.
Every query is scoped to one tenant.
"""

import csv
import io
import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_

from admin_console.models import db
from admin_console.models.audit import AuditLog
from admin_console.models.auth import User
from admin_console.utils.helpers import isoformat

logger = logging.getLogger(__name__)

MAX_LIMIT = 1000
DEFAULT_LIMIT = 50

CSV_COLUMNS = ["Timestamp", "User", "Action", "Resource", "Resource ID", "IP Address", "Details"]


def _filtered_query(tenant_id, *, action=None, user_id=None, resource=None,
                    start_date=None, end_date=None, search=None):
    q = AuditLog.query.filter(AuditLog.tenant_id == tenant_id)
    if action:
        q = q.filter(AuditLog.action == action)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)
    if resource:
        q = q.filter(AuditLog.resource == resource)
    if start_date is not None:
        q = q.filter(AuditLog.created_at >= start_date)
    if end_date is not None:
        q = q.filter(AuditLog.created_at <= end_date)
    if search:
        pattern = f"%{search}%"
        q = q.outerjoin(User, AuditLog.user_id == User.id).filter(or_(
            AuditLog.action.ilike(pattern),
            AuditLog.resource.ilike(pattern),
            AuditLog.resource_id.ilike(pattern),
            User.email.ilike(pattern),
            User.name.ilike(pattern),
        ))
    return q


def fetch_audit_logs(tenant_id, *, limit=DEFAULT_LIMIT, offset=0, **filters) -> dict:
    """
    Newest-first page of audit entries.

    Filters: action, user_id, resource, start_date, end_date, search.

    Returns:
        {"logs": [...], "total": int, "limit": int, "offset": int, "has_more": bool}
    """
    limit = max(1, min(int(limit), MAX_LIMIT))
    offset = max(0, int(offset))
    q = _filtered_query(tenant_id, **filters)
    total = q.count()
    rows = (
        q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset).limit(limit).all()
    )
    return {
        "logs": [r.to_dict() for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(rows) < total,
    }


def get_distinct_actions(tenant_id) -> list[str]:
    rows = (
        db.session.query(AuditLog.action)
        .filter(AuditLog.tenant_id == tenant_id)
        .distinct()
        .order_by(AuditLog.action)
        .all()
    )
    return [r[0] for r in rows]


def get_audit_stats(tenant_id, days=30) -> dict:
    """Counts over the last *days* days: total, per action, per day, distinct actors."""
    days = max(1, min(int(days), 365))
    since = datetime.now(timezone.utc) - timedelta(days=days)
    base = db.session.query(AuditLog).filter(
        AuditLog.tenant_id == tenant_id, AuditLog.created_at >= since,
    )

    total = base.count()
    unique_users = (
        base.with_entities(func.count(func.distinct(AuditLog.user_id))).scalar() or 0
    )
    by_action = (
        base.with_entities(AuditLog.action, func.count(AuditLog.id))
        .group_by(AuditLog.action)
        .order_by(func.count(AuditLog.id).desc(), AuditLog.action)
        .all()
    )
    day = func.date(AuditLog.created_at)
    by_day = (
        base.with_entities(day, func.count(AuditLog.id))
        .group_by(day)
        .order_by(day)
        .all()
    )
    return {
        "days": days,
        "total": total,
        "unique_users": unique_users,
        "by_action": [{"action": a, "count": c} for a, c in by_action],
        "by_day": [{"date": str(d), "count": c} for d, c in by_day],
    }


def export_audit_logs(tenant_id, **filters) -> str:
    """All matching entries as CSV text, newest first (no paging)."""
    rows = (
        _filtered_query(tenant_id, **filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .all()
    )
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)
    for log in rows:
        writer.writerow([
            isoformat(log.created_at),
            log.user.email if log.user else "system",
            log.action,
            log.resource,
            log.resource_id or "",
            log.ip_address or "",
            json.dumps(log.details or {}, sort_keys=True, default=str),
        ])
    logger.info("Exported %d audit entries", len(rows), extra={"tenant_id": tenant_id})
    return buf.getvalue()


def export_filename(now=None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"audit-logs-{now.date().isoformat()}.csv"
