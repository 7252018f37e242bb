"""
Structured error types for hatimer.

Every failure the dispatcher can surface carries a category, a retry hint,
structured context and an optional chained cause, so callers and the poll
loop's error callback can log and route them without string matching.

Manifesto:
    - **Typed hierarchy:** one subclass per failure the caller must tell apart
    - **Explicit retry semantics:** store outages are retryable, bad input is not
    - **Rich context:** queue, shard, event id travel with the error
    - **Error chaining:** the redis exception is kept as ``cause``

Architecture:
    ::

        HATimerError (category, retryable, context, cause)
        ├── InvalidDelayError        VALIDATION
        ├── SerializationError       VALIDATION
        ├── NotInstalledError        CONFIG
        ├── StoreError               STORE
        │   ├── StoreUnavailableError   (retryable)
        │   └── ScriptNotCachedError    (internal, recovered)
        └── HandlerError             DISPATCH

Examples:
    >>> err = InvalidDelayError("not-a-duration")
    >>> err.retryable
    False
    >>> err.to_dict()["category"]
    'VALIDATION'

Tags:
    error-handling, exception-hierarchy, retry-logic, hatimer

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"  # Bad delay, unserializable payload
    CONFIG = "CONFIG"          # Used before install, bad settings
    STORE = "STORE"            # Redis connection, timeout, script cache
    DISPATCH = "DISPATCH"      # Handler raised
    INTERNAL = "INTERNAL"      # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    queue: str | None = None
    shard_key: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting unset fields."""
        result: dict[str, Any] = {}
        for key in ("queue", "shard_key", "event_id", "event_type"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class HATimerError(Exception):
    """
    Base exception for all hatimer errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.

    Examples:
        >>> error = HATimerError("boom")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(queue="jobs").context.queue
        'jobs'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> HATimerError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StoreUnavailableError("down").with_context(queue="jobs")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS (never retryable)
# =============================================================================


class InvalidDelayError(HATimerError):
    """Delay could not be resolved to a finite, non-negative millisecond count."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, delay: Any, message: str | None = None, **kwargs: Any):
        self.delay = delay
        super().__init__(message or f"Delay is invalid: {delay!r}", **kwargs)


class SerializationError(HATimerError):
    """Event payload could not be encoded to (or decoded from) JSON."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


# =============================================================================
# CONFIG ERRORS
# =============================================================================


class NotInstalledError(HATimerError):
    """Operation needs a store connection but ``install()`` was never called."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False

    def __init__(self, operation: str):
        super().__init__(f"HATimer is not installed; call install() before {operation}()")


# =============================================================================
# STORE ERRORS
# =============================================================================


class StoreError(HATimerError):
    """Backing store rejected or failed an operation."""

    default_category = ErrorCategory.STORE
    default_retryable = False


class StoreUnavailableError(StoreError):
    """Backing store could not be reached (connection refused, timeout)."""

    default_retryable = True


class ScriptNotCachedError(StoreError):
    """Server does not know the script hash (NOSCRIPT).

    Raised and recovered inside the slice executor only.
    """

    def __init__(self, sha: str, **kwargs: Any):
        self.sha = sha
        super().__init__(f"Script {sha} is not cached on the server", **kwargs)


# =============================================================================
# DISPATCH ERRORS
# =============================================================================


class HandlerError(HATimerError):
    """A registered handler raised while processing a delivered event."""

    default_category = ErrorCategory.DISPATCH
    default_retryable = False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "HATimerError",
    "InvalidDelayError",
    "SerializationError",
    "NotInstalledError",
    "StoreError",
    "StoreUnavailableError",
    "ScriptNotCachedError",
    "HandlerError",
]
