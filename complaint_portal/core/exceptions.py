"""
Portal-wide exception hierarchy.

Services raise these types; ``register_error_handlers`` maps each one to a
single HTTP status so every blueprint answers the same way.

Usage:
    from complaint_portal.core.exceptions import NotFoundError, InvalidTransition

    raise NotFoundError(resource="Complaint", resource_id=complaint_id)
    raise InvalidTransition(complaint_id, "resolved", "opened")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a 404 never confirms that a row exists in another institution.

    Args:
        resource: Human-readable model name (e.g. "Complaint", "Vote").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional scope that was enforced. For debug logging only.
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
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422. Malformed payloads are rejected with 400 in the
    blueprint before a service is ever called.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown (field name -> message).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidRule(ValidationError):
    """An escalation rule failed validation and was not stored."""

    def __init__(self, details: dict[str, str]) -> None:
        fields = ", ".join(sorted(details))
        super().__init__(f"Invalid escalation rule ({fields})", details=details)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidTransition(Exception):
    """Raised when a status change is not in the allowed edge set.

    The complaint is left untouched. Maps to HTTP 409.
    """

    def __init__(self, complaint_id: str, current: str, target: str) -> None:
        self.complaint_id = complaint_id
        self.current_status = current
        self.target_status = target
        super().__init__(
            f"Cannot move complaint {complaint_id} from '{current}' to '{target}'"
        )


class ConcurrentModification(Exception):
    """The complaint changed since it was read; re-read and retry."""

    def __init__(self, complaint_id: str, expected_version: int | None = None) -> None:
        self.complaint_id = complaint_id
        self.expected_version = expected_version
        msg = f"Complaint {complaint_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version})"
        super().__init__(msg)


class StoreUnavailable(Exception):
    """Transient failure talking to the database. Maps to HTTP 503."""

    def __init__(self, operation: str, reason: str = "") -> None:
        self.operation = operation
        self.reason = reason
        msg = f"Store unavailable during {operation}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PermissionDenied(Exception):
    """Raised when the acting user's role does not allow an action."""

    def __init__(self, user_id: int | str | None, action: str) -> None:
        super().__init__(f"User {user_id} does not have permission for '{action}'")
        self.user_id = user_id
        self.action = action
