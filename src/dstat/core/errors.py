"""
Structured error types for dstat.

Every failure the status engine can surface is a ``DstatError`` subclass
carrying a category, an explicit retry flag, and the context needed to
diagnose it (which provider, which job, which backend operation).

Manifesto:
    - **Typed taxonomy:** Callers branch on the error class, never on text
    - **Explicit retry semantics:** Each error knows if it's retryable
    - **Rich context:** Provider and job identity travel with the error
    - **Error chaining:** The transport exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                         DstatError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  InvalidCriteria     BackendUnavailable     BackendAuthError    │
        │  (VALIDATION)        (NETWORK, retryable)   (AUTH)              │
        │                                                                 │
        │  BackendRejected     NormalizationError     UnknownProvider     │
        │  (BACKEND)           (PARSE)                (CONFIG)            │
        └─────────────────────────────────────────────────────────────────┘

    Propagation policy:

        InvalidCriteria     → raised before any backend call
        BackendUnavailable  → retried inside the adapter, then reported as a
                              per-provider failure in the QueryResult
        BackendAuthError    → never retried, propagates out of the engine
        BackendRejected     → never retried, propagates out of the engine
        NormalizationError  → caught per task, task marked UNKNOWN

Examples:
    >>> error = BackendUnavailable("503 from operations endpoint")
    >>> error.retryable
    True
    >>> error.with_context(provider="google-v2").context.provider
    'google-v2'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, dstat

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing, exit codes and retry decisions."""

    VALIDATION = "VALIDATION"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    BACKEND = "BACKEND"
    PARSE = "PARSE"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Diagnostic metadata attached to a ``DstatError``.

    Attributes:
        provider: Name of the provider that raised or was being queried.
        job_id: Job identifier, when the error concerns one job.
        task_id: Task identifier within the job, when known.
        operation: Backend operation (``list``, ``describe``, a URL, ...).
        metadata: Anything else worth logging.
    """

    provider: str | None = None
    job_id: str | None = None
    task_id: str | None = None
    operation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-empty fields."""
        result: dict[str, Any] = {}
        if self.provider:
            result["provider"] = self.provider
        if self.job_id:
            result["job_id"] = self.job_id
        if self.task_id:
            result["task_id"] = self.task_id
        if self.operation:
            result["operation"] = self.operation
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


class DstatError(Exception):
    """
    Base exception for all dstat errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers may
    override either per instance.

    Examples:
        >>> error = DstatError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> try:
        ...     raise ConnectionError("DNS lookup failed")
        ... except ConnectionError as e:
        ...     error = BackendUnavailable("Network error", cause=e)
        >>> error.cause
        ConnectionError('DNS lookup failed')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DstatError:
        """
        Add context to this error (fluent API).

        Only fills fields that are still empty, so context set closest to the
        failure wins over context added further up the stack.

        Usage:
            raise BackendRejected("bad filter").with_context(
                provider="google-v2", operation="list"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        if self.context.provider:
            return f"[{self.context.provider}] {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# QUERY INPUT
# =============================================================================


class InvalidCriteria(DstatError):
    """Malformed or contradictory filter input.

    Raised while building a ``JobFilter``; no backend is contacted.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendUnavailable(DstatError):
    """Transient backend failure: network error, 5xx, throttling, timeout."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class BackendAuthError(DstatError):
    """Credentials missing, expired or lacking permission. Never retried."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class BackendRejected(DstatError):
    """The backend refused the request as malformed. Never retried."""

    default_category = ErrorCategory.BACKEND
    default_retryable = False


# =============================================================================
# NORMALIZATION / CONFIGURATION
# =============================================================================


class NormalizationError(DstatError):
    """A provider event could be neither mapped nor passed through.

    Attributes:
        partial: Events normalized before the malformed entry was hit.
    """

    default_category = ErrorCategory.PARSE
    default_retryable = False

    def __init__(self, message: str, *, partial: tuple[Any, ...] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.partial = partial


class UnknownProvider(DstatError):
    """Requested provider name is not registered."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check whether an error should be retried by an adapter.

    Only ``DstatError`` instances flagged retryable qualify; anything else is
    treated as a programming error and surfaced as-is.
    """
    if isinstance(error, DstatError):
        return error.retryable
    return False


__all__ = [
    "BackendAuthError",
    "BackendRejected",
    "BackendUnavailable",
    "DstatError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidCriteria",
    "NormalizationError",
    "UnknownProvider",
    "is_retryable",
]
