"""dstat core primitives: errors, logging, settings, timestamps."""

from dstat.core.errors import (
    BackendAuthError,
    BackendRejected,
    BackendUnavailable,
    DstatError,
    ErrorCategory,
    ErrorContext,
    InvalidCriteria,
    NormalizationError,
    UnknownProvider,
    is_retryable,
)
from dstat.core.timestamps import age_to_create_time, parse_timestamp, to_iso8601, utc_now

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
    "age_to_create_time",
    "is_retryable",
    "parse_timestamp",
    "to_iso8601",
    "utc_now",
]
