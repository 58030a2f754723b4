"""Exceptions raised by the cross-environment binding guard."""

from typing import Optional


class CrossingGuardError(Exception):
    """Base class for all crossing guard errors."""

    pass


class DecodeError(CrossingGuardError, ValueError):
    """Raised when an inbound policy-change notification cannot be decoded.

    Nothing can be acted on, so callers log the failure and end the run.
    """

    def __init__(self, message: str, raw_event: Optional[str] = None):
        super().__init__(message)
        self.raw_event = raw_event[:500] if raw_event else None


class ResourceLookupError(CrossingGuardError, LookupError):
    """Raised when a collaborator lookup fails or returns incomplete data.

    A lookup failure means "undetermined": it is never evidence that a
    principal is legitimate or anomalous.
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        resource: str = "",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.resource = resource
        self.original_error = original_error

    @classmethod
    def wrap(cls, operation: str, resource: str, error: Exception) -> "ResourceLookupError":
        """Build a lookup error around an arbitrary collaborator exception."""
        if isinstance(error, ResourceLookupError):
            return error
        return cls(
            f"{operation} failed for {resource}: {type(error).__name__}: {error}",
            operation=operation,
            resource=resource,
            original_error=error,
        )


class DeadlineExceeded(ResourceLookupError):
    """Raised when the invocation time budget runs out mid-walk or mid-lookup."""

    pass


class ValidationFailure(CrossingGuardError):
    """Raised when implicated projects do not carry identical classification tags."""

    def __init__(self, message: str, resources: Optional[list] = None):
        super().__init__(message)
        self.resources = resources or []


class ApplyError(CrossingGuardError):
    """Raised when writing the patched policy fails.

    Attributes:
        resource: Resource name the write targeted
        status_code: HTTP status returned by the API, if any
        conflict: True when the write lost an optimistic-concurrency race
    """

    def __init__(
        self,
        message: str,
        resource: str = "",
        status_code: Optional[int] = None,
        conflict: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.resource = resource
        self.status_code = status_code
        self.conflict = conflict
        self.original_error = original_error

    @classmethod
    def wrap(cls, resource: str, error: Exception) -> "ApplyError":
        """Build an apply error around a failure that carries no HTTP status."""
        if isinstance(error, ApplyError):
            return error
        return cls(
            f"apply_policy failed for {resource}: {type(error).__name__}: {error}",
            resource=resource,
            original_error=error,
        )
