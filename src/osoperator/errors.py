"""Error taxonomy for cloud calls and task reconciliation.

Every error raised by the facade or a task carries enough context (resource
kind, name or ID, attempted operation) to be actionable by the driver.

NotFound is not a failure for Find: facade lookups raise NotFoundError and
tasks turn it into "must create".
"""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for all errors raised by the operator."""

    pass


class CloudAPIError(OperatorError):
    """Raised when the cloud control plane rejects or fails a call."""

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        name: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.name = name
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(CloudAPIError):
    """Raised when a lookup returns zero results."""

    pass


class ConflictError(CloudAPIError):
    """Raised when a mutation conflicts with the resource state (HTTP 409)."""

    pass


class TransportError(CloudAPIError):
    """Raised for transient remote failures; retried per backoff policy."""

    pass


class AmbiguousResourceError(OperatorError):
    """Raised when more than one resource matches a name or tag filter."""

    pass


class ConvergenceTimeout(OperatorError):
    """Raised when a backoff schedule is exhausted without success.

    Distinct from CloudAPIError: the cloud did not reject anything, it just
    never reported the expected state.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class TaskValidationError(OperatorError):
    """Raised when a proposed change set is not legal for a task."""

    pass


class ImmutableFieldError(TaskValidationError):
    """Raised when a change targets a field that cannot change after creation."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"Field cannot be changed: {field_name}")


class RequiredFieldError(TaskValidationError):
    """Raised when a field required for creation is not set."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"Field is required: {field_name}")
