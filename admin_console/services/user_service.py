"""
User administration reads: paginated list, statistics, global search.

The list payload carries a strong ETag (sha256 of the serialized page) so
the blueprint can answer ``If-None-Match`` with 304.
"""

import calendar
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_

from admin_console.models import db
from admin_console.models.auth import STAFF_ROLES, USER_ROLES, USER_STATUSES, Team, User
from admin_console.services import permission_engine
from admin_console.utils.helpers import isoformat

logger = logging.getLogger(__name__)

STATS_RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
ACTIVE_WINDOW_DAYS = 30
TREND_MONTHS = 6
TOP_USERS = 5
SEARCH_MIN_LENGTH = 2
SEARCH_MAX_LIMIT = 10


def _now():
    return datetime.now(timezone.utc)


def _growth(current, previous):
    if previous <= 0:
        return 0
    return round((current - previous) / previous * 100, 2)


def _month_start(year, month):
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════════
# List
# ═════════════════════════════════════════════════════════════════════════

def list_users(tenant_id, *, page=1, limit=50, role=None, status=None, search=None):
    """
    Newest-first page of the tenant's users.

    Returns:
        (payload, etag) where payload is {"users": [...], "pagination": {...}}.
    """
    q = User.query_for_tenant(tenant_id)
    if role in USER_ROLES:
        q = q.filter(User.role == role)
    if status in USER_STATUSES:
        q = q.filter(User.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    total = q.count()
    users = (
        q.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit).limit(limit).all()
    )
    items = [u.to_dict() for u in users]
    payload = {
        "users": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
    digest = hashlib.sha256(json.dumps(items, sort_keys=True, default=str).encode()).hexdigest()
    return payload, f'"{digest}"'


# ═════════════════════════════════════════════════════════════════════════
# Stats
# ═════════════════════════════════════════════════════════════════════════

def get_user_stats(tenant_id, range_key=None, now=None) -> dict:
    now = now or _now()
    base = User.query_for_tenant(tenant_id)

    def count_where(*criteria):
        return base.filter(*criteria).count()

    by_role = dict(
        db.session.query(User.role, func.count(User.id))
        .filter(User.tenant_id == tenant_id)
        .group_by(User.role)
        .all()
    )
    this_month = _month_start(now.year, now.month)
    last_month = _month_start(now.year, now.month - 1)
    new_this_month = count_where(User.created_at >= this_month)
    new_last_month = count_where(User.created_at >= last_month, User.created_at < this_month)
    active_users = count_where(User.last_login_at >= now - timedelta(days=ACTIVE_WINDOW_DAYS))

    trends = []
    for offset in range(TREND_MONTHS - 1, -1, -1):
        start = _month_start(now.year, now.month - offset)
        end = _month_start(start.year, start.month + 1)
        trends.append({
            "month": f"{calendar.month_abbr[start.month]} {start.year}",
            "count": count_where(User.created_at >= start, User.created_at < end),
        })

    top_users = (
        base.filter(User.last_login_at.isnot(None))
        .order_by(User.last_login_at.desc())
        .limit(TOP_USERS).all()
    )

    ranged = {}
    days = STATS_RANGES.get((range_key or "").lower())
    if days:
        start = now - timedelta(days=days)
        prev_start = start - timedelta(days=days)
        in_range = count_where(User.created_at >= start)
        prev_range = count_where(User.created_at >= prev_start, User.created_at < start)
        ranged = {"range": range_key.lower(), "newUsers": in_range, "growth": _growth(in_range, prev_range)}

    return {
        "total": sum(by_role.values()),
        "clients": by_role.get("CLIENT", 0),
        "staff": sum(by_role.get(r, 0) for r in STAFF_ROLES),
        "admins": by_role.get("ADMIN", 0) + by_role.get("SUPER_ADMIN", 0),
        "newThisMonth": new_this_month,
        "newLastMonth": new_last_month,
        "growth": _growth(new_this_month, new_last_month),
        "activeUsers": active_users,
        "registrationTrends": trends,
        "topUsers": [
            {"id": u.id, "name": u.name, "email": u.email, "role": u.role,
             "lastLoginAt": isoformat(u.last_login_at)}
            for u in top_users
        ],
        "range": ranged,
    }


# ═════════════════════════════════════════════════════════════════════════
# Search
# ═════════════════════════════════════════════════════════════════════════

def search(tenant_id, role, query, limit=SEARCH_MAX_LIMIT, grants=None) -> list[dict]:
    """Users (by name/email) then teams (by name) visible to *role*."""
    query = (query or "").strip()
    if len(query) < SEARCH_MIN_LENGTH:
        return []
    limit = max(1, min(int(limit), SEARCH_MAX_LIMIT))
    if not permission_engine.has_permission(role, "users.view", grants):
        return []
    pattern = f"%{query}%"

    users = (
        User.query_for_tenant(tenant_id)
        .filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
        .order_by(User.name, User.id)
        .limit(limit).all()
    )
    results = [
        {"id": u.id, "type": "user", "name": u.name or u.email,
         "description": u.email, "email": u.email}
        for u in users
    ]
    if len(results) < limit:
        teams = (
            Team.query_for_tenant(tenant_id)
            .filter(Team.name.ilike(pattern))
            .order_by(Team.name)
            .limit(limit - len(results)).all()
        )
        results.extend(
            {"id": t.id, "type": "team", "name": t.name, "description": t.department}
            for t in teams
        )
    return results
