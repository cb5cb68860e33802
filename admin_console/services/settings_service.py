"""
User Management Settings — per-tenant JSON sections with defaults.

Sections (request key → column):
    roles, permissions, onboarding, policies, rateLimits → rate_limits,
    sessions, invitations, entities.clients → client_settings,
    entities.teams → team_settings

A PUT replaces only the sections present in the body; every update writes
a ``settings.update`` audit entry with the before/after of the changed
sections.
"""

import copy
import logging

from admin_console.core.exceptions import ValidationError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.auth import USER_ROLES
from admin_console.models.settings import UserManagementSettings

logger = logging.getLogger(__name__)


# ── Defaults ─────────────────────────────────────────────────────────────────

_ROLE_DESCRIPTIONS = {
    "SUPER_ADMIN": ("Super Administrator", "Full system access", True, False),
    "ADMIN": ("Administrator", "Admin access to organization", True, False),
    "TEAM_LEAD": ("Team Lead", "Manage team members", False, True),
    "TEAM_MEMBER": ("Team Member", "Regular team member", False, True),
    "STAFF": ("Staff", "Staff member", False, True),
    "CLIENT": ("Client", "External client", False, False),
}


def default_roles():
    system_roles = {}
    for role in USER_ROLES:
        display, description, can_delegate, editable = _ROLE_DESCRIPTIONS[role]
        system_roles[role] = {
            "name": role,
            "displayName": display,
            "description": description,
            "permissions": [],
            "canDelegate": can_delegate,
            "maxInstances": None,
            "isEditable": editable,
        }
    return {
        "systemRoles": system_roles,
        "customRoles": [],
        "hierarchy": {"canDelegate": {}, "inheritPermissions": {}},
        "defaultRoleOnSignup": "CLIENT",
        "defaultRoleOnInvite": "TEAM_MEMBER",
    }


def default_permissions():
    return []


def default_onboarding():
    return {
        "workflows": [],
        "defaultWorkflow": None,
        "welcomeEmail": {"enabled": True, "subject": "Welcome to our platform",
                         "templateId": "default-welcome"},
        "autoAssignment": {"enabled": False, "assignToManager": False,
                           "permissionTemplate": None, "departmentFromInviter": False},
        "firstLogin": {
            "forcePasswordChange": False,
            "passwordExpiryDays": 90,
            "requireProfileCompletion": False,
            "requiredProfileFields": [],
            "showTutorial": False,
            "tutorialModules": [],
        },
        "checklist": {"enabled": False, "items": []},
        "notificationOnInvite": {"toAdmin": True, "toManager": False, "toNewUser": True},
    }


def default_policies():
    return {
        "dataRetention": {
            "inactiveUserDays": 90,
            "archiveInactiveAfterDays": 365,
            "deleteArchivedAfterDays": None,
            "archiveNotificationDays": 30,
            "keepAuditLogs": True,
            "auditLogRetentionYears": 7,
        },
        "activityMonitoring": {
            "trackLoginAttempts": True,
            "trackDataAccess": False,
            "trackPermissionChanges": True,
            "trackBulkActions": True,
            "retentionDays": 90,
            "alertOnSuspiciousActivity": True,
        },
        "accessControl": {
            "requireMFAForRole": {role: role in ("SUPER_ADMIN", "ADMIN") for role in USER_ROLES},
            "minPasswordAgeDays": 0,
            "maxPasswordAgeDays": 90,
            "preventPreviousPasswords": 3,
            "lockoutAfterFailedAttempts": 5,
            "lockoutDurationMinutes": 30,
        },
        "ipLocation": {
            "restrictByIP": False,
            "allowedIPRanges": [],
            "warnOnNewLocation": False,
            "requireMFAOnNewLocation": False,
            "geofenceCountries": None,
        },
        "deviceManagement": {
            "trackDevices": False,
            "requireDeviceApproval": False,
            "maxDevicesPerUser": 5,
            "warnBeforeNewDevice": False,
        },
    }


# role: (per minute, per day, bulk limit, reports/day, export GB, sessions, upload MB)
_ROLE_RATE_LIMITS = {
    "SUPER_ADMIN": (1000, 100000, 10000, 100, 100, 10, 1000),
    "ADMIN": (500, 50000, 5000, 50, 50, 5, 500),
    "TEAM_LEAD": (100, 10000, 1000, 10, 10, 2, 100),
    "TEAM_MEMBER": (50, 5000, 500, 5, 5, 2, 50),
    "STAFF": (30, 3000, 100, 2, 2, 1, 25),
    "CLIENT": (10, 1000, 0, 0, 1, 1, 10),
}


def default_rate_limits():
    keys = ("apiCallsPerMinute", "apiCallsPerDay", "bulkOperationLimit",
            "reportGenerationPerDay", "exportSizeGB", "concurrentSessions", "fileUploadSizeMB")
    return {
        "roles": {role: dict(zip(keys, values)) for role, values in _ROLE_RATE_LIMITS.items()},
        "global": {
            "tenantApiCallsPerMinute": 5000,
            "tenantApiCallsPerDay": 500000,
            "tenantConcurrentUsers": 100,
        },
        "throttling": {"enableAdaptiveThrottling": True, "gracefulDegradation": True},
    }


# role: (absolute max, inactivity, allow extend, max extensions)
_ROLE_SESSION_TIMEOUTS = {
    "SUPER_ADMIN": (1440, 60, True, 5),
    "ADMIN": (1440, 60, True, 3),
    "TEAM_LEAD": (720, 30, True, 3),
    "TEAM_MEMBER": (480, 30, False, 0),
    "STAFF": (480, 20, False, 0),
    "CLIENT": (1440, 120, False, 0),
}


def default_sessions():
    return {
        "sessionTimeout": {
            "byRole": {
                role: {
                    "absoluteMaxMinutes": absolute,
                    "inactivityMinutes": inactivity,
                    "warningBeforeLogoutMinutes": 5,
                    "allowExtend": extend,
                    "maxExtensions": extensions,
                }
                for role, (absolute, inactivity, extend, extensions) in _ROLE_SESSION_TIMEOUTS.items()
            },
            "global": {"absoluteMaxDays": 90, "forceLogoutTime": "02:00"},
        },
        "concurrentSessions": {
            "byRole": {"SUPER_ADMIN": 10, "ADMIN": 5, "TEAM_LEAD": 2,
                       "TEAM_MEMBER": 2, "STAFF": 1, "CLIENT": 1},
            "allowMultipleDevices": True,
            "requireMFAForMultipleSessions": False,
            "kickOldestSession": False,
        },
        "security": {
            "requireSSL": True,
            "httpOnlyTokens": True,
            "sameSiteCookies": "Strict",
            "resetTokensOnPasswordChange": True,
            "invalidateOnPermissionChange": True,
            "regenerateSessionIdOnLogin": True,
        },
        "devices": {
            "requireDeviceId": False,
            "trackUserAgent": True,
            "warnOnBrowserChange": False,
            "warnOnIPChange": False,
        },
    }


def default_invitations():
    return {
        "invitations": {
            "defaultRole": "TEAM_MEMBER",
            "expiryDays": 7,
            "resendLimit": 3,
            "requireEmail": True,
            "allowMultipleInvites": False,
            "notificationEmail": True,
        },
        "signUp": {
            "enabled": True,
            "defaultRole": "CLIENT",
            "requireApproval": False,
            "approvalNotification": {"toAdmins": True, "toManager": False},
            "requiredFields": ["email", "name"],
            "prohibitedDomains": [],
            "allowedDomains": None,
        },
        "verification": {"required": True, "expiryHours": 24, "resendLimit": 3},
        "domainAutoAssign": {"enabled": False, "rules": []},
    }


DEFAULT_GENERATORS = {
    "roles": default_roles,
    "permissions": default_permissions,
    "onboarding": default_onboarding,
    "policies": default_policies,
    "rate_limits": default_rate_limits,
    "sessions": default_sessions,
    "invitations": default_invitations,
}

# request key → (column, expected type)
_SECTION_FIELDS = {
    "roles": ("roles", dict),
    "permissions": ("permissions", list),
    "onboarding": ("onboarding", dict),
    "policies": ("policies", dict),
    "rateLimits": ("rate_limits", dict),
    "sessions": ("sessions", dict),
    "invitations": ("invitations", dict),
}
_ENTITY_FIELDS = {"clients": "client_settings", "teams": "team_settings"}


# ── Operations ───────────────────────────────────────────────────────────────

def get_settings(tenant_id) -> UserManagementSettings:
    """Return the tenant's settings row, creating it with defaults."""
    settings = UserManagementSettings.query_for_tenant(tenant_id).first()
    if settings is None:
        settings = UserManagementSettings(
            tenant_id=tenant_id,
            **{column: factory() for column, factory in DEFAULT_GENERATORS.items()},
        )
        db.session.add(settings)
        db.session.commit()
        logger.info("Created default user-management settings", extra={"tenant_id": tenant_id})
    return settings


def _collect_changes(body):
    changes = {}
    errors = {}
    for key, (column, expected) in _SECTION_FIELDS.items():
        if key not in body:
            continue
        value = body[key]
        if not isinstance(value, expected):
            errors[key] = f"must be {'an object' if expected is dict else 'a list'}"
        else:
            changes[column] = value

    entities = body.get("entities")
    if entities is not None:
        if not isinstance(entities, dict):
            errors["entities"] = "must be an object"
        else:
            for key, column in _ENTITY_FIELDS.items():
                if key not in entities:
                    continue
                if entities[key] is not None and not isinstance(entities[key], dict):
                    errors[f"entities.{key}"] = "must be an object or null"
                else:
                    changes[column] = entities[key]
    if errors:
        raise ValidationError("Invalid settings", details=errors)
    return changes


def update_settings(tenant_id, user_id, body) -> UserManagementSettings:
    if not isinstance(body, dict):
        raise ValidationError("Settings body must be an object")
    changes = _collect_changes(body)
    settings = get_settings(tenant_id)

    before, after = {}, {}
    for column, value in changes.items():
        current = getattr(settings, column)
        if current == value:
            continue
        before[column] = copy.deepcopy(current)
        after[column] = copy.deepcopy(value)
        setattr(settings, column, copy.deepcopy(value))

    settings.last_updated_by = user_id
    write_audit(
        action="settings.update",
        resource="user_management_settings",
        resource_id=settings.id,
        tenant_id=tenant_id,
        user_id=user_id,
        details={"changed": sorted(after), "before": before, "after": after},
    )
    db.session.commit()
    logger.info("User-management settings updated (%s)", ", ".join(sorted(after)) or "no changes",
                extra={"tenant_id": tenant_id, "user_id": user_id})
    return settings
