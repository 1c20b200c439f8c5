"""Execution helpers shared by provider adapters."""

from dstat.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    NoRetry,
    RetryContext,
    RetryStrategy,
)

__all__ = [
    "ConstantBackoff",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
]
