"""
Admin dashboard: KPI cards, analytics series and recommendations.

All numbers come from live, tenant-scoped counts. Trends compare the
current window against the preceding window of the same length.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_

from admin_console.models import db
from admin_console.models.auth import ADMIN_ROLES, STAFF_ROLES, Team, User
from admin_console.models.bulk_operation import BulkOperation
from admin_console.models.workflow import UserWorkflow, WorkflowStep
from admin_console.services import entity_analysis

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 7
VELOCITY_WINDOW_DAYS = 30
INACTIVE_ADMIN_DAYS = 90
STALLED_APPROVAL_DAYS = 3


def _now():
    return datetime.now(timezone.utc)


def _trend(previous, current):
    """(percentage, direction) of the change from *previous* to *current*."""
    percentage = round((current - previous) / previous * 100) if previous > 0 else 0
    direction = "up" if percentage > 0 else "down" if percentage < 0 else "neutral"
    return abs(percentage), direction


def _card(card_id, label, value, previous=None, comparison=""):
    if previous is None:
        percentage, direction = 0, "neutral"
    else:
        percentage, direction = _trend(previous, value)
    arrow = {"up": "↑ ", "down": "↓ "}.get(direction, "")
    return {
        "id": card_id,
        "label": label,
        "value": value,
        "trend": percentage,
        "trendDirection": direction,
        "change": f"{arrow}{percentage}%",
        "comparison": comparison,
    }


def _pending_gated_steps(tenant_id):
    return (
        WorkflowStep.query
        .join(UserWorkflow, WorkflowStep.workflow_id == UserWorkflow.id)
        .filter(
            UserWorkflow.tenant_id == tenant_id,
            UserWorkflow.status.in_(("DRAFT", "PENDING", "IN_PROGRESS", "PAUSED")),
            WorkflowStep.requires_approval.is_(True),
            WorkflowStep.approved_at.is_(None),
            WorkflowStep.status == "PENDING",
        )
    )


# ═════════════════════════════════════════════════════════════════════════
# Metrics
# ═════════════════════════════════════════════════════════════════════════

def get_metrics(tenant_id, now=None) -> dict:
    now = now or _now()
    users = User.query_for_tenant(tenant_id)
    workflows = UserWorkflow.query_for_tenant(tenant_id)

    total_users = users.count()
    total_before = users.filter(User.created_at < now - timedelta(days=VELOCITY_WINDOW_DAYS)).count()

    active_since = now - timedelta(days=ACTIVE_WINDOW_DAYS)
    active_users = users.filter(User.last_login_at >= active_since).count()
    active_previous = users.filter(
        User.last_login_at >= active_since - timedelta(days=ACTIVE_WINDOW_DAYS),
        User.last_login_at < active_since,
    ).count()

    pending_bulk = BulkOperation.query_for_tenant(tenant_id).filter(
        BulkOperation.status == "PENDING_APPROVAL"
    ).count()
    pending_steps = _pending_gated_steps(tenant_id).count()

    velocity_since = now - timedelta(days=VELOCITY_WINDOW_DAYS)
    completed_recent = workflows.filter(
        UserWorkflow.status == "COMPLETED", UserWorkflow.completed_at >= velocity_since,
    ).count()
    completed_previous = workflows.filter(
        UserWorkflow.status == "COMPLETED",
        UserWorkflow.completed_at >= velocity_since - timedelta(days=VELOCITY_WINDOW_DAYS),
        UserWorkflow.completed_at < velocity_since,
    ).count()
    failed = workflows.filter(UserWorkflow.status == "FAILED").count()

    active_share = f"{active_users / total_users * 100:.1f}% of total" if total_users else "0.0% of total"
    return {
        "totalUsers": _card("total-users", "Total Users", total_users, total_before,
                            f"from {total_before}"),
        "activeUsers": _card("active-users", "Active Users", active_users, active_previous,
                             active_share),
        "pendingApprovals": _card("pending-approvals", "Pending Approvals",
                                  pending_bulk + pending_steps,
                                  comparison=f"{pending_bulk} bulk operations, {pending_steps} workflow steps"),
        "workflowVelocity": _card("workflow-velocity", "Workflow Velocity", completed_recent,
                                  completed_previous, f"completed in {VELOCITY_WINDOW_DAYS} days"),
        "failedWorkflows": _card("failed-workflows", "Failed Workflows", failed,
                                 comparison="need attention"),
        "lastUpdated": now.isoformat(),
    }


# ═════════════════════════════════════════════════════════════════════════
# Analytics
# ═════════════════════════════════════════════════════════════════════════

def get_user_growth_trend(tenant_id, days=90, now=None) -> list[dict]:
    """Cumulative user count at the end of each of the last *days* days."""
    now = now or _now()
    start = (now - timedelta(days=days - 1)).date()
    start_dt = datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc)

    baseline = User.query_for_tenant(tenant_id).filter(User.created_at < start_dt).count()
    day = func.date(User.created_at)
    per_day = dict(
        (str(d), c)
        for d, c in db.session.query(day, func.count(User.id))
        .filter(User.tenant_id == tenant_id, User.created_at >= start_dt)
        .group_by(day)
        .all()
    )
    series = []
    running = baseline
    for offset in range(days):
        current = (start + timedelta(days=offset)).isoformat()
        running += per_day.get(current, 0)
        series.append({"date": current, "value": running})
    return series


def get_team_distribution(tenant_id) -> list[dict]:
    rows = (
        db.session.query(Team.name, func.count(User.id))
        .join(User, User.team_id == Team.id)
        .filter(Team.tenant_id == tenant_id)
        .group_by(Team.name)
        .order_by(func.count(User.id).desc(), Team.name)
        .all()
    )
    return [{"name": name, "value": count} for name, count in rows]


def get_role_distribution(tenant_id) -> list[dict]:
    rows = (
        db.session.query(User.role, func.count(User.id))
        .filter(User.tenant_id == tenant_id)
        .group_by(User.role)
        .order_by(User.role)
        .all()
    )
    return [{"name": role, "value": count} for role, count in rows]


def get_workflow_efficiency(tenant_id, now=None) -> int:
    """Completed share of workflows finished in the last 30 days; 100 when none."""
    since = (now or _now()) - timedelta(days=VELOCITY_WINDOW_DAYS)
    workflows = UserWorkflow.query_for_tenant(tenant_id)
    completed = workflows.filter(
        UserWorkflow.status == "COMPLETED", UserWorkflow.completed_at >= since,
    ).count()
    failed = workflows.filter(
        UserWorkflow.status == "FAILED", UserWorkflow.last_error_at >= since,
    ).count()
    total = completed + failed
    return round(completed / total * 100) if total else 100


def get_compliance_score(tenant_id) -> int:
    users = User.query_for_tenant(tenant_id)
    total = users.count()
    with_mfa = users.filter(User.mfa_enabled.is_(True)).count()
    mfa_score = with_mfa / total * 0.5 if total else 0
    # audit trail and security checks contribute fixed 0.4 and 0.1
    return min(100, round((mfa_score + 0.4 + 0.1) * 100))


def get_analytics(tenant_id, days=90) -> dict:
    return {
        "userGrowthTrend": get_user_growth_trend(tenant_id, days),
        "teamDistribution": get_team_distribution(tenant_id),
        "roleDistribution": get_role_distribution(tenant_id),
        "workflowEfficiency": get_workflow_efficiency(tenant_id),
        "complianceScore": get_compliance_score(tenant_id),
    }


# ═════════════════════════════════════════════════════════════════════════
# Recommendations
# ═════════════════════════════════════════════════════════════════════════

def get_recommendations(tenant_id, now=None) -> list[dict]:
    """Actionable findings ordered by impact (highest first)."""
    now = now or _now()
    found = []

    cutoff = now - timedelta(days=INACTIVE_ADMIN_DAYS)
    inactive_admins = User.query_for_tenant(tenant_id).filter(
        User.role.in_(ADMIN_ROLES),
        User.status == "ACTIVE",
        User.created_at < cutoff,
        or_(User.last_login_at.is_(None), User.last_login_at < cutoff),
    ).count()
    if inactive_admins:
        found.append({
            "id": "inactive-admins",
            "type": "SECURITY",
            "severity": "critical",
            "impact": 90,
            "count": inactive_admins,
            "title": f"{inactive_admins} admin account(s) inactive for {INACTIVE_ADMIN_DAYS}+ days",
            "action": "Review and deactivate unused admin accounts",
        })

    stalled = _pending_gated_steps(tenant_id).filter(
        WorkflowStep.approval_requested_at < now - timedelta(days=STALLED_APPROVAL_DAYS)
    ).count()
    if stalled:
        found.append({
            "id": "stalled-approvals",
            "type": "WORKFLOW",
            "severity": "high",
            "impact": 70,
            "count": stalled,
            "title": f"{stalled} approval(s) waiting more than {STALLED_APPROVAL_DAYS} days",
            "action": "Follow up with approvers or reassign",
        })

    failed = UserWorkflow.query_for_tenant(tenant_id).filter(UserWorkflow.status == "FAILED").count()
    if failed:
        found.append({
            "id": "failed-workflows",
            "type": "WORKFLOW",
            "severity": "high",
            "impact": 60,
            "count": failed,
            "title": f"{failed} workflow(s) failed",
            "action": "Inspect the failing step and retry",
        })

    pending_bulk = BulkOperation.query_for_tenant(tenant_id).filter(
        BulkOperation.status == "PENDING_APPROVAL"
    ).count()
    if pending_bulk:
        found.append({
            "id": "pending-bulk-approvals",
            "type": "OPERATIONS",
            "severity": "medium",
            "impact": 50,
            "count": pending_bulk,
            "title": f"{pending_bulk} bulk operation(s) awaiting approval",
            "action": "Approve or reject queued bulk operations",
        })

    unassigned = User.query_for_tenant(tenant_id).filter(
        User.role.in_(STAFF_ROLES), User.status == "ACTIVE", User.team_id.is_(None),
    ).count()
    if unassigned:
        found.append({
            "id": "users-without-team",
            "type": "ORGANIZATION",
            "severity": "medium",
            "impact": 40,
            "count": unassigned,
            "title": f"{unassigned} staff member(s) without a team",
            "action": "Assign staff to teams",
        })

    held = [row[0] for row in db.session.query(User.role).filter(
        User.tenant_id == tenant_id, User.status == "ACTIVE",
    ).distinct()]
    overlaps = entity_analysis.detect_role_conflicts(held)
    if overlaps:
        top = overlaps[0]
        found.append({
            "id": "overlapping-roles",
            "type": "ORGANIZATION",
            "severity": "low",
            "impact": 30,
            "count": len(overlaps),
            "title": f"Roles {top['role1']} and {top['role2']} share {top['overlapPercentage']}% of their permissions",
            "action": "Review whether both roles are needed",
        })

    found.sort(key=lambda r: r["impact"], reverse=True)
    return found
