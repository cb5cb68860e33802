"""
Permission Decorators — JWT-aware RBAC decorators for route protection.

Provides decorators that check the JWT-authenticated user's permissions
before allowing access to an endpoint.

Usage:
    @bp.route("/workflows", methods=["GET"])
    @require_permission("users.manage")
    def list_workflows():
        ...

    @bp.route("/search", methods=["GET"])
    @require_auth
    def search():
        ...

The user's role and explicit grants are read from the database on every
request, so a demotion takes effect before the token expires. On success
``g.current_user`` holds the acting User.
"""

import functools
import logging

from flask import g

from admin_console.models.auth import User
from admin_console.services.permission_engine import has_permission
from admin_console.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _load_current_user():
    """Return (user, error_response) for the JWT identity on this request."""
    user_id = getattr(g, "jwt_user_id", None)
    tenant = getattr(g, "tenant", None)
    if user_id is None or tenant is None:
        return None, api_error(E.UNAUTHORIZED, "Authentication required")

    user = User.get_for_tenant(user_id, tenant.id)
    if user is None:
        logger.warning("JWT user %s not found in tenant %s", user_id, tenant.id,
                       extra={"tenant_id": tenant.id, "user_id": user_id})
        return None, api_error(E.UNAUTHORIZED, "Authentication required")
    if user.status != "ACTIVE":
        return None, api_error(E.FORBIDDEN, "Account is not active")

    g.current_user = user
    return user, None


def current_tenant_id() -> int:
    return g.tenant.id


def current_user_id() -> int:
    return g.current_user.id


def require_auth(f):
    """Decorator: require any authenticated, active user of the tenant."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _, err = _load_current_user()
        if err:
            return err
        return f(*args, **kwargs)
    return decorated


def require_permission(codename: str):
    """
    Decorator: require the JWT user to have a specific permission.

    SUPER_ADMIN bypasses all checks.

    Args:
        codename: Permission codename, e.g. "users.bulk"
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user, err = _load_current_user()
            if err:
                return err

            if not has_permission(user.role, codename, user.permissions):
                logger.warning(
                    "User %d denied: missing permission '%s' on %s",
                    user.id, codename, f.__name__,
                    extra={"tenant_id": user.tenant_id, "user_id": user.id},
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied", details={"required": codename},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator
