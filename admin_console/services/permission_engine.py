"""
Permission Engine — static permission metadata and in-memory validation.

Nothing here touches the database. Every function works on plain
permission codenames so it can be used by the RBAC decorator, the bulk
operation validator, the workflow step handlers and the permissions API.

Permission metadata:
    PERMISSION_METADATA[codename] = {
        "label":        human label for the permission tree,
        "category":     grouping in the UI,
        "risk":         low | medium | high | critical,
        "description":  one sentence,
        "dependencies": codenames that must also be granted,
        "conflicts":    codenames that must NOT be granted together
                        (segregation of duties),
    }

Usage:
    from admin_console.services.permission_engine import has_permission, validate

    has_permission("ADMIN", "users.manage")          # True
    validate(["invoices.create", "invoices.approve"])  # conflict error
"""

from __future__ import annotations

RISK_LEVELS = ("low", "medium", "high", "critical")
_RISK_RANK = {level: idx for idx, level in enumerate(RISK_LEVELS)}


def _meta(label, category, risk, description, dependencies=(), conflicts=()):
    return {
        "label": label,
        "category": category,
        "risk": risk,
        "description": description,
        "dependencies": list(dependencies),
        "conflicts": list(conflicts),
    }


# ═══════════════════════════════════════════════════════════════
# Metadata
# ═══════════════════════════════════════════════════════════════
PERMISSION_METADATA: dict[str, dict] = {
    # Dashboard & analytics
    "dashboard.view": _meta("View dashboard", "dashboard", "low",
                            "Open the admin dashboard."),
    "analytics.view": _meta("View analytics", "dashboard", "low",
                            "See user statistics, trends and recommendations.",
                            dependencies=["dashboard.view"]),

    # Users
    "users.view": _meta("View users", "users", "low",
                        "List and search firm users."),
    "users.manage": _meta("Manage users", "users", "high",
                          "Create, edit and run lifecycle workflows for users.",
                          dependencies=["users.view"]),
    "users.bulk": _meta("Bulk user operations", "users", "critical",
                        "Apply role, status, team or permission changes to many users at once.",
                        dependencies=["users.manage"]),
    "users.delete": _meta("Delete users", "users", "critical",
                          "Permanently remove users and their data.",
                          dependencies=["users.manage"]),

    # Roles & permissions
    "roles.view": _meta("View roles", "roles", "low",
                        "See roles and their permission sets."),
    "roles.manage": _meta("Manage roles", "roles", "critical",
                          "Change role definitions and permission grants.",
                          dependencies=["roles.view", "users.view"]),

    # Workflows
    "workflows.view": _meta("View workflows", "workflows", "low",
                            "See onboarding, offboarding and role-change workflows."),
    "workflows.approve": _meta("Approve workflow steps", "workflows", "high",
                               "Approve or reject gated workflow steps.",
                               dependencies=["workflows.view"]),

    # Audit
    "audit.view": _meta("View audit log", "audit", "medium",
                        "Read the administrative audit trail."),
    "audit.export": _meta("Export audit log", "audit", "high",
                          "Download the audit trail as CSV.",
                          dependencies=["audit.view"]),

    # Settings
    "settings.view": _meta("View settings", "settings", "low",
                           "Read firm-wide user management settings."),
    "settings.manage": _meta("Manage settings", "settings", "critical",
                             "Change policies, sessions, invitations and rate limits.",
                             dependencies=["settings.view"]),

    # Clients & bookings
    "clients.view": _meta("View clients", "clients", "low",
                          "See client records."),
    "clients.manage": _meta("Manage clients", "clients", "medium",
                            "Create and edit client records.",
                            dependencies=["clients.view"]),
    "bookings.view": _meta("View bookings", "bookings", "low",
                           "See appointment bookings."),
    "bookings.manage": _meta("Manage bookings", "bookings", "medium",
                             "Create, reschedule and cancel bookings.",
                             dependencies=["bookings.view"]),

    # Billing: segregation of duties between preparing and approving
    "invoices.view": _meta("View invoices", "billing", "low",
                           "See invoices and their status."),
    "invoices.create": _meta("Prepare invoices", "billing", "medium",
                             "Draft and edit invoices.",
                             dependencies=["invoices.view"],
                             conflicts=["invoices.approve"]),
    "invoices.approve": _meta("Approve invoices", "billing", "high",
                              "Approve invoices for sending.",
                              dependencies=["invoices.view"],
                              conflicts=["invoices.create"]),
    "payments.initiate": _meta("Initiate payments", "billing", "high",
                               "Create outgoing payment runs.",
                               dependencies=["invoices.view"],
                               conflicts=["payments.approve"]),
    "payments.approve": _meta("Approve payments", "billing", "critical",
                              "Release outgoing payment runs.",
                              dependencies=["invoices.view"],
                              conflicts=["payments.initiate"]),
    "currencies.view": _meta("View currencies", "billing", "low",
                             "See exchange rates."),
    "currencies.manage": _meta("Manage currencies", "billing", "medium",
                               "Edit exchange rates and price overrides.",
                               dependencies=["currencies.view"]),

    # Reports
    "reports.view": _meta("View reports", "reports", "low",
                          "Open financial and operational reports."),
    "reports.export": _meta("Export reports", "reports", "medium",
                            "Download reports.",
                            dependencies=["reports.view"]),
}

ALL_PERMISSIONS = tuple(PERMISSION_METADATA)

_ADMIN_PERMISSIONS = [
    p for p in ALL_PERMISSIONS if p not in ("invoices.create", "payments.initiate")
]

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "SUPER_ADMIN": list(ALL_PERMISSIONS),
    "ADMIN": _ADMIN_PERMISSIONS,
    "TEAM_LEAD": [
        "dashboard.view", "analytics.view", "users.view",
        "workflows.view", "workflows.approve",
        "clients.view", "clients.manage", "bookings.view", "bookings.manage",
        "invoices.view", "invoices.approve", "reports.view", "reports.export",
    ],
    "TEAM_MEMBER": [
        "dashboard.view", "users.view", "clients.view",
        "bookings.view", "bookings.manage", "invoices.view", "invoices.create",
        "reports.view",
    ],
    "STAFF": [
        "dashboard.view", "analytics.view", "clients.view",
        "bookings.view", "bookings.manage", "invoices.view", "invoices.create",
        "currencies.view", "reports.view",
    ],
    "CLIENT": ["dashboard.view"],
}


# ═══════════════════════════════════════════════════════════════
# Role checks
# ═══════════════════════════════════════════════════════════════
def get_common_permissions_for_role(role: str | None) -> list[str]:
    """Default permission set for *role* (empty for unknown roles)."""
    return list(ROLE_PERMISSIONS.get(role or "", []))


def get_effective_permissions(role: str | None, grants=None) -> set[str]:
    """Role defaults plus explicit per-user grants."""
    if role == "SUPER_ADMIN":
        return set(ALL_PERMISSIONS)
    return set(get_common_permissions_for_role(role)) | set(grants or [])


def has_permission(role: str | None, permission: str, grants=None) -> bool:
    """True when *role* (plus explicit *grants*) carries *permission*.

    SUPER_ADMIN bypasses every check, including unknown codenames.
    """
    if not role:
        return False
    if role == "SUPER_ADMIN":
        return True
    return permission in get_effective_permissions(role, grants)


# ═══════════════════════════════════════════════════════════════
# Set arithmetic & validation
# ═══════════════════════════════════════════════════════════════
def highest_risk(permissions) -> str:
    level = "low"
    for perm in permissions:
        risk = PERMISSION_METADATA.get(perm, {}).get("risk", "low")
        if _RISK_RANK[risk] > _RISK_RANK[level]:
            level = risk
    return level


def calculate_diff(current, desired) -> dict:
    """Compare two permission sets.

    Returns added / removed / unchanged (sorted) and the highest risk
    level among the added permissions.
    """
    current_set = set(current or [])
    desired_set = set(desired or [])
    added = sorted(desired_set - current_set)
    removed = sorted(current_set - desired_set)
    return {
        "added": added,
        "removed": removed,
        "unchanged": sorted(current_set & desired_set),
        "risk_level": highest_risk(added),
    }


def validate(permissions) -> dict:
    """Check a permission set against dependency and conflict metadata.

    Errors: unknown codename, missing dependency, conflicting pair
    (reported once per pair). Warnings: critical-risk grants.
    """
    perm_set = set(permissions or [])
    errors: list[dict] = []
    warnings: list[dict] = []
    seen_conflicts: set[frozenset] = set()

    for perm in sorted(perm_set):
        meta = PERMISSION_METADATA.get(perm)
        if meta is None:
            errors.append({
                "type": "unknown_permission",
                "permission": perm,
                "message": f"Unknown permission: {perm}",
            })
            continue

        for dep in meta["dependencies"]:
            if dep not in perm_set:
                errors.append({
                    "type": "missing_dependency",
                    "permission": perm,
                    "requires": dep,
                    "message": f"{meta['label']} requires {PERMISSION_METADATA[dep]['label']}",
                })

        for other in meta["conflicts"]:
            pair = frozenset((perm, other))
            if other in perm_set and pair not in seen_conflicts:
                seen_conflicts.add(pair)
                errors.append({
                    "type": "conflict",
                    "permission": perm,
                    "conflicts_with": other,
                    "message": f"{meta['label']} conflicts with {PERMISSION_METADATA[other]['label']}",
                })

        if meta["risk"] == "critical":
            warnings.append({
                "type": "critical_permission",
                "permission": perm,
                "message": f"{meta['label']} is a critical permission",
            })

    return {"is_valid": not errors, "errors": errors, "warnings": warnings}


def can_grant_permission(permission: str, current) -> bool:
    """True when *permission* is known, its dependencies are present and
    it conflicts with nothing already granted."""
    meta = PERMISSION_METADATA.get(permission)
    if meta is None:
        return False
    current_set = set(current or [])
    if any(dep not in current_set for dep in meta["dependencies"]):
        return False
    return not any(c in current_set for c in meta["conflicts"])


def expand_with_dependencies(permissions) -> list[str]:
    """Transitive closure of *permissions* over their dependencies."""
    result: set[str] = set()
    stack = list(permissions or [])
    while stack:
        perm = stack.pop()
        if perm in result:
            continue
        result.add(perm)
        stack.extend(PERMISSION_METADATA.get(perm, {}).get("dependencies", []))
    return sorted(result)


def get_suggestions(role: str | None, permissions) -> list[dict]:
    """Suggest fixes for *permissions*: add missing dependencies, drop
    conflicting grants, and offer role defaults not yet selected."""
    perm_set = set(permissions or [])
    suggestions: list[dict] = []
    proposed: set[str] = set()

    for perm in sorted(perm_set):
        meta = PERMISSION_METADATA.get(perm)
        if meta is None:
            suggestions.append({"action": "remove", "permission": perm,
                                "reason": "Unknown permission"})
            continue
        for dep in meta["dependencies"]:
            if dep not in perm_set and dep not in proposed:
                proposed.add(dep)
                suggestions.append({"action": "add", "permission": dep,
                                    "reason": f"Required by {perm}"})

    reported: set[frozenset] = set()
    for perm in sorted(perm_set):
        for other in PERMISSION_METADATA.get(perm, {}).get("conflicts", []):
            pair = frozenset((perm, other))
            if other in perm_set and pair not in reported:
                reported.add(pair)
                # keep the lower-risk side of the pair
                drop = max((perm, other), key=lambda p: (_RISK_RANK[PERMISSION_METADATA[p]["risk"]], p))
                suggestions.append({"action": "remove", "permission": drop,
                                    "reason": f"Conflicts with {other if drop == perm else perm}"})

    for perm in get_common_permissions_for_role(role):
        if perm not in perm_set and perm not in proposed:
            suggestions.append({"action": "add", "permission": perm,
                                "reason": f"Default for role {role}"})
    return suggestions


def search_permissions(query: str | None) -> list[dict]:
    """Case-insensitive match on codename, label, description or category."""
    needle = (query or "").strip().lower()
    results = []
    for codename, meta in PERMISSION_METADATA.items():
        haystack = " ".join((codename, meta["label"], meta["description"], meta["category"])).lower()
        if not needle or needle in haystack:
            results.append({"codename": codename, **meta})
    return results


def list_permissions_by_category() -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for codename, meta in PERMISSION_METADATA.items():
        grouped.setdefault(meta["category"], []).append({"codename": codename, **meta})
    return grouped
