"""
Console-wide exception hierarchy.

Services raise these types and never build HTTP responses themselves.
The application factory registers one handler per type, so every
blueprint gets the same status codes and error body shape.

Usage:
    from admin_console.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="UserWorkflow", resource_id=42)
    raise ValidationError("name is required", details={"name": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access
    attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "BulkOperation").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (unknown role, missing step configuration, last active admin).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateTransitionError(Exception):
    """Raised when a lifecycle action is not allowed from the current status.

    Maps to HTTP 409 with the current status and the attempted action.
    """

    def __init__(self, resource: str, current_status: str, action: str) -> None:
        self.resource = resource
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} {resource} in status {current_status}"
        )


class PermissionDeniedError(Exception):
    """Raised by services when the acting user may not perform an operation.

    Maps to HTTP 403.
    """

    def __init__(self, message: str = "Permission denied", required: str | None = None) -> None:
        self.required = required
        super().__init__(message)
