"""
Tenant Context Middleware — Enforces tenant isolation on API requests.

When a JWT-authenticated user makes a request:
  1. g.jwt_tenant_id is already set by jwt_auth middleware
  2. This middleware verifies the tenant exists and is active
  3. Sets g.tenant for easy access to the Tenant model instance
  4. All downstream service calls take tenant_id from g.tenant

Requests without a JWT pass through unchanged; the permission
decorators reject them.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, jsonify, request

from admin_console.models import db
from admin_console.models.auth import Tenant, User

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None

        if not request.path.startswith("/api/v1/"):
            return None

        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        tenant_id = getattr(g, "jwt_tenant_id", None)
        if tenant_id is None:
            return None

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("JWT tenant_id %s not found in DB", tenant_id,
                           extra={"tenant_id": tenant_id})
            return jsonify({"error": "Tenant not found"}), 403

        if not tenant.is_active:
            # SUPER_ADMIN can still operate a frozen firm; the role is read from
            # the user row, never from the token
            user = User.get_for_tenant(getattr(g, "jwt_user_id", None), tenant.id)
            if user is None or user.role != "SUPER_ADMIN" or user.status != "ACTIVE":
                logger.warning("JWT tenant_id %s is deactivated", tenant_id,
                               extra={"tenant_id": tenant_id})
                return jsonify({"error": "Tenant account is deactivated"}), 403
            logger.info("Frozen tenant %s: allowing SUPER_ADMIN bypass", tenant_id)

        g.tenant = tenant
        return None

    logger.info("Tenant context middleware installed")
