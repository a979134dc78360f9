"""
Platform-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against ``PlatformError`` once and get consistent HTTP status codes and
response bodies everywhere.  Each error carries a machine-readable
``error_code`` and a ``details`` dict so callers can render remediation UI
rather than just a string.

Usage:
    from orderflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Order", resource_id=order_id)
    raise ValidationError("notes are required", details={"field": "notes"})
"""


class PlatformError(Exception):
    """Base class: ``error_code`` + ``http_status`` + structured ``details``."""

    error_code = "ERR_INTERNAL"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(PlatformError):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access
    attempts, so a caller cannot probe for another tenant's ids.

    Args:
        resource: Human-readable model/entity name (e.g. "Order", "Issue").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional: the scope that was enforced. For debug logging only.
    """

    error_code = "ERR_NOT_FOUND"
    http_status = 404

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

    def to_dict(self) -> dict:
        return {"error": f"{self.resource} not found", "code": self.error_code}


class ValidationError(PlatformError):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, e.g. ``{"field": "notes"}``.
    """

    error_code = "ERR_VALIDATION"
    http_status = 400


class PermissionDenied(PlatformError):
    """Raised when the actor lacks a required permission.

    Args:
        actor_id: Who asked.
        required: The permission code(s) that were checked.
        missing: The subset of ``required`` the actor does not hold.
    """

    error_code = "ERR_FORBIDDEN"
    http_status = 403

    def __init__(self, actor_id, required, missing=None) -> None:
        required = [required] if isinstance(required, str) else list(required)
        missing = list(missing) if missing is not None else list(required)
        self.actor_id = actor_id
        self.required = required
        self.missing = missing
        super().__init__(
            f"Actor {actor_id} is missing permission(s): {', '.join(missing)}",
            details={"required": required, "missing": missing},
        )


class InvalidTransitionError(PlatformError):
    """Raised when an edge is not legal for the order's status and tenant."""

    error_code = "ERR_INVALID_TRANSITION"
    http_status = 422

    def __init__(self, from_status: str, to_status: str, reason: str | None = None,
                 allowed: list[str] | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Cannot transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        details = {"from_status": from_status, "to_status": to_status}
        if reason:
            details["reason"] = reason
        if allowed is not None:
            details["allowed_transitions"] = allowed
        super().__init__(msg, details=details)


class BlockedError(PlatformError):
    """Raised when one or more blockers prevent an otherwise legal transition.

    ``blockers`` holds every active blocker, never just the first.
    """

    error_code = "ERR_BLOCKED"
    http_status = 422

    def __init__(self, blockers: list, message: str | None = None) -> None:
        self.blockers = list(blockers)
        super().__init__(
            message or f"Transition blocked by {len(self.blockers)} blocker(s)",
            details={"blockers": [b.to_dict() for b in self.blockers]},
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["blockers"] = self.details["blockers"]
        return body


class ConflictError(PlatformError):
    """Raised when the stored state changed under the caller (lost race).

    Callers should re-fetch and decide whether to retry; the engine never
    retries on its own.
    """

    error_code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(self, resource: str, resource_id, expected: str | None = None,
                 actual: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected status '{expected}'"
            msg += f", found '{actual}')" if actual is not None else ")"
        super().__init__(msg, details={"expected": expected, "actual": actual})


class ConfigurationError(PlatformError):
    """Raised when tenant workflow configuration is missing or contradictory."""

    error_code = "ERR_CONFIGURATION"
    http_status = 500


class LimitExceededError(PlatformError):
    """Raised when a plan or quota ceiling would be exceeded."""

    error_code = "ERR_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, limit_type: str, current: int, limit: int) -> None:
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
        super().__init__(
            f"Plan limit reached for {limit_type}: {current}/{limit}",
            details={"limit_type": limit_type, "current": current, "limit": limit},
        )


class InternalError(PlatformError):
    """Raised when a collaborator fails unexpectedly (store, oracle, evaluator)."""

    error_code = "ERR_INTERNAL"
    http_status = 500
