"""
Engine-wide exception hierarchy.

Every service raises one of these types; the blueprints register a
handler per type once and get consistent HTTP status codes everywhere.

Usage:
    from esign.core.exceptions import NotFoundError, StateViolationError

    raise NotFoundError(resource="Envelope", resource_id=envelope_id)
    raise StateViolationError("Executed envelopes cannot be voided", current_status="executed")
"""


class NotFoundError(Exception):
    """Raised when a requested envelope, request or document does not exist.

    Surfaced verbatim to the caller, never retried.

    Args:
        resource: Human-readable entity name (e.g. "Envelope", "SigningRequest").
        resource_id: The PK that was looked up. Included in logs and the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but fails a field-level rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StateViolationError(Exception):
    """Raised when an operation is not allowed from the entity's current status.

    Examples: voiding an executed envelope, reminding a signer who is not
    in the active batch, sending without signers.  Maps to HTTP 409.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised by the authorization interceptor before any read or write."""

    def __init__(self, permission: str, actor_id: str | int | None = None) -> None:
        self.permission = permission
        self.actor_id = actor_id
        super().__init__(f"Permission denied: {permission}")


class ConfigurationError(Exception):
    """Raised when a required secret or setting is not provisioned.

    Fatal and not retried. Raised before any mutation takes place.
    """

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Missing {setting} configuration")


class InvalidTokenError(Exception):
    """Raised when a presented signing or executed-file token is rejected.

    ``reason`` is one of: not_found, inactive, expired, used, wrong_type.
    The token value itself is never part of the message.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Invalid token ({reason})")


class AuthenticationRequiredError(Exception):
    """Raised when an HTTP call carries no actor while a permission checker is registered.

    Maps to HTTP 401.  In-process callers that pass no ``actor_id`` are not
    affected; only the blueprints raise it.
    """

    def __init__(self, message: str = "Actor identity is required") -> None:
        super().__init__(message)
