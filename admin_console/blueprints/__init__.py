"""
Accounting Admin Console
Blueprint registry and shared request helpers.
"""

from flask import request

from admin_console.utils.errors import E, api_error

ADMIN_PREFIX = "/api/v1/admin"


def limit_offset_args(default_limit=50, max_limit=100):
    """Read limit/offset query params.

    Query params:
        limit  — max items (default *default_limit*, capped at *max_limit*)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = max(1, min(int(request.args.get("limit", default_limit)), max_limit))
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def json_body():
    """Return (dict, None) or (None, 400 response) for the request JSON body."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def pick(data, camel, snake=None, default=None):
    """Read a body field sent either camelCase or snake_case."""
    if camel in data:
        return data[camel]
    if snake and snake in data:
        return data[snake]
    return default
