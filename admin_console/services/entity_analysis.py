"""
Entity relationship analysis: users, teams, roles and granted permissions
of one firm as a graph, plus the structural problems found in it.

Findings:
    orphanedUsers    staff with no team, or a team outside the firm
    permissionGaps   explicit grants whose dependencies the user lacks
    roleConflicts    role pairs whose permission sets overlap heavily
    hierarchyIssues  team parent chains that loop or leave the firm

Read functions never write. ``set_team_parent`` is the only mutation and
refuses any parent that would close a loop.
"""

import logging
from itertools import combinations

from admin_console.core.exceptions import NotFoundError, ValidationError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.auth import STAFF_ROLES, USER_ROLES, Team, User
from admin_console.services import permission_engine

logger = logging.getLogger(__name__)

ROLE_OVERLAP_THRESHOLD = 80


# ═════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════

def role_overlap(role_a: str, role_b: str) -> dict:
    """Shared permissions of two roles, as a share of the larger set."""
    perms_a = permission_engine.get_effective_permissions(role_a)
    perms_b = permission_engine.get_effective_permissions(role_b)
    shared = sorted(perms_a & perms_b)
    larger = max(len(perms_a), len(perms_b))
    return {
        "role1": role_a,
        "role2": role_b,
        "overlappingPermissions": shared,
        "overlapPercentage": round(len(shared) / larger * 100) if larger else 0,
    }


def detect_role_conflicts(roles=None, threshold: int = ROLE_OVERLAP_THRESHOLD) -> list[dict]:
    """Role pairs overlapping by more than *threshold* percent, highest first."""
    wanted = set(roles if roles is not None else USER_ROLES)
    ordered = [r for r in USER_ROLES if r in wanted]
    found = [
        overlap for overlap in (role_overlap(a, b) for a, b in combinations(ordered, 2))
        if overlap["overlapPercentage"] > threshold
    ]
    found.sort(key=lambda o: o["overlapPercentage"], reverse=True)
    return found


# ═════════════════════════════════════════════════════════════════════════
# Users
# ═════════════════════════════════════════════════════════════════════════

def _tenant_users(tenant_id):
    return (
        User.query_for_tenant(tenant_id)
        .filter(User.status != "ARCHIVED")
        .order_by(User.id)
        .all()
    )


def _team_ids(tenant_id) -> set[int]:
    return {row[0] for row in db.session.query(Team.id).filter(Team.tenant_id == tenant_id)}


def find_orphaned_users(tenant_id, users=None, team_ids=None) -> list[dict]:
    users = users if users is not None else _tenant_users(tenant_id)
    team_ids = team_ids if team_ids is not None else _team_ids(tenant_id)
    orphans = []
    for user in users:
        if user.team_id is None:
            if user.role in STAFF_ROLES:
                orphans.append({"userId": user.id, "email": user.email, "reason": "no_team"})
        elif user.team_id not in team_ids:
            orphans.append({"userId": user.id, "email": user.email, "reason": "foreign_team"})
    return orphans


def find_permission_gaps(tenant_id, user_id, required) -> dict:
    """Which of *required* the user does not hold (role defaults + grants)."""
    user = User.get_for_tenant(user_id, tenant_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id, tenant_id=tenant_id)
    required = list(dict.fromkeys(required or []))
    unknown = [p for p in required if p not in permission_engine.PERMISSION_METADATA]
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(unknown)}",
                              details={"required": unknown})
    effective = permission_engine.get_effective_permissions(user.role, user.permissions)
    return {
        "userId": user.id,
        "requiredPermissions": required,
        "missingPermissions": [p for p in required if p not in effective],
    }


def find_dependency_gaps(users) -> list[dict]:
    """Users whose explicit grants depend on permissions they do not hold."""
    gaps = []
    for user in users:
        grants = set(user.permissions or [])
        if not grants:
            continue
        effective = permission_engine.get_effective_permissions(user.role, grants)
        missing = sorted({
            e["requires"] for e in permission_engine.validate(effective)["errors"]
            if e["type"] == "missing_dependency" and e["permission"] in grants
        })
        if missing:
            gaps.append({
                "userId": user.id,
                "requiredPermissions": sorted(grants),
                "missingPermissions": missing,
            })
    return gaps


# ═════════════════════════════════════════════════════════════════════════
# Team hierarchy
# ═════════════════════════════════════════════════════════════════════════

def detect_hierarchy_issues(tenant_id, teams=None) -> list[dict]:
    """Loops in parent chains (one issue per loop) and parents outside the firm."""
    teams = teams if teams is not None else Team.query_for_tenant(tenant_id).order_by(Team.id).all()
    parents = {t.id: t.parent_id for t in teams}
    names = {t.id: t.name for t in teams}
    issues = []

    for team in teams:
        if team.parent_id is not None and team.parent_id not in parents:
            issues.append({
                "id": team.id,
                "type": "missing_parent",
                "severity": "warning",
                "teams": [team.id],
                "description": f"Team {team.name} has a parent outside this firm",
            })

    visited: set[int] = set()
    for team in teams:
        path = []
        current = team.id
        while current in parents and current not in visited and current not in path:
            path.append(current)
            current = parents[current]
        if current in path:
            loop = path[path.index(current):]
            issues.append({
                "id": loop[0],
                "type": "circular_dependency",
                "severity": "critical",
                "teams": loop,
                "description": "Circular team hierarchy: "
                               + " -> ".join(names[i] for i in loop + [loop[0]]),
            })
        visited.update(path)
    return issues


def _ancestor_ids(team, tenant_id) -> list[int]:
    chain = []
    current = team.parent_id
    while current is not None and current not in chain:
        chain.append(current)
        parent = Team.get_for_tenant(current, tenant_id)
        current = parent.parent_id if parent else None
    return chain


def set_team_parent(tenant_id, team_id, parent_id, actor_id=None) -> Team:
    """Attach *team_id* under *parent_id* (None detaches it)."""
    team = Team.get_for_tenant(team_id, tenant_id)
    if team is None:
        raise NotFoundError(resource="Team", resource_id=team_id, tenant_id=tenant_id)
    if parent_id is not None:
        parent = Team.get_for_tenant(parent_id, tenant_id)
        if parent is None:
            raise NotFoundError(resource="Team", resource_id=parent_id, tenant_id=tenant_id)
        if parent.id == team.id or team.id in _ancestor_ids(parent, tenant_id):
            raise ValidationError("Team hierarchy cannot contain a cycle",
                                  details={"parent_id": parent_id})

    previous = team.parent_id
    if previous == parent_id:
        return team
    team.parent_id = parent_id
    write_audit(
        action="team.set_parent",
        resource="team",
        resource_id=team.id,
        tenant_id=tenant_id,
        user_id=actor_id,
        details={"before": previous, "after": parent_id},
    )
    db.session.commit()
    logger.info("Team %d moved under %s", team.id, parent_id, extra={"tenant_id": tenant_id})
    return team


# ═════════════════════════════════════════════════════════════════════════
# Map
# ═════════════════════════════════════════════════════════════════════════

def roles_in_use(users) -> list[str]:
    held = {u.role for u in users if u.status == "ACTIVE"}
    return [r for r in USER_ROLES if r in held]


def analyze(tenant_id, users=None, teams=None) -> dict:
    users = users if users is not None else _tenant_users(tenant_id)
    teams = teams if teams is not None else Team.query_for_tenant(tenant_id).order_by(Team.id).all()
    team_ids = {t.id for t in teams}

    orphans = find_orphaned_users(tenant_id, users, team_ids)
    hierarchy = detect_hierarchy_issues(tenant_id, teams)
    in_use = roles_in_use(users)
    conflicts = detect_role_conflicts(in_use)
    population = max(len(users), 1)
    return {
        "orphanedUsers": orphans,
        "permissionGaps": find_dependency_gaps(users),
        "roleConflicts": conflicts,
        "hierarchyIssues": hierarchy,
        "densityScore": min(100, round(len(in_use) / population * 100)),
        "complexityScore": min(100, round((len(orphans) + len(hierarchy) + len(conflicts)) / population * 100)),
    }


def build_relationship_map(tenant_id) -> dict:
    """Nodes and edges of the firm's users, teams, roles and granted permissions."""
    users = _tenant_users(tenant_id)
    teams = Team.query_for_tenant(tenant_id).order_by(Team.id).all()
    team_ids = {t.id for t in teams}
    member_counts: dict[int, int] = {}
    for user in users:
        if user.team_id in team_ids:
            member_counts[user.team_id] = member_counts.get(user.team_id, 0) + 1

    nodes, edges = [], []
    for role in sorted({u.role for u in users}, key=USER_ROLES.index):
        nodes.append({
            "id": f"role-{role}",
            "type": "ROLE",
            "label": role,
            "metadata": {"permissionCount": len(permission_engine.get_effective_permissions(role))},
        })

    for team in teams:
        nodes.append({
            "id": f"team-{team.id}",
            "type": "TEAM",
            "label": team.name,
            "metadata": {"memberCount": member_counts.get(team.id, 0), "parentId": team.parent_id},
        })
        if team.parent_id in team_ids:
            edges.append({"id": f"team-parent-{team.id}", "fromId": f"team-{team.id}",
                          "toId": f"team-{team.parent_id}", "type": "CHILD_OF"})

    granted: set[str] = set()
    for user in users:
        nodes.append({
            "id": f"user-{user.id}",
            "type": "USER",
            "label": user.email,
            "metadata": {"role": user.role, "status": user.status, "teamId": user.team_id},
        })
        edges.append({"id": f"user-role-{user.id}", "fromId": f"user-{user.id}",
                      "toId": f"role-{user.role}", "type": "HAS_ROLE"})
        if user.team_id in team_ids:
            edges.append({"id": f"user-team-{user.id}", "fromId": f"user-{user.id}",
                          "toId": f"team-{user.team_id}", "type": "BELONGS_TO"})
        for perm in sorted(user.permissions or []):
            granted.add(perm)
            edges.append({"id": f"user-perm-{user.id}-{perm}", "fromId": f"user-{user.id}",
                          "toId": f"perm-{perm}", "type": "GRANTED"})

    for perm in sorted(granted):
        meta = permission_engine.PERMISSION_METADATA.get(perm, {})
        nodes.append({
            "id": f"perm-{perm}",
            "type": "PERMISSION",
            "label": meta.get("label", perm),
            "metadata": {"category": meta.get("category"), "risk": meta.get("risk")},
        })

    return {"nodes": nodes, "edges": edges, "analysis": analyze(tenant_id, users, teams)}
