"""Provider adapters: where job records come from.

Every backend implements the ``ProviderAdapter`` protocol and is
registered in a ``ProviderRouter``. Adapters normalize native data into
``JobRecord``/``TaskRecord``/``Event`` values; everything downstream
(filtering, merging, sorting, rendering) is backend-agnostic.

Modules:
    _types          Record model, criteria, capability protocol
    _base           BaseProviderAdapter and StubProvider
    events          Event Timeline Normalizer
    local           LocalProvider (on-disk job tree)
    transport       OperationsClient over httpx
    google          GoogleV1Provider, GoogleV2Provider
    router          ProviderRouter, build_provider
    mock_providers  Failing, slow, flakey and scripted test doubles
"""

from dstat.providers._base import BaseProviderAdapter, StubProvider
from dstat.providers._types import (
    Event,
    JobFilter,
    JobRecord,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderHealth,
    TaskRecord,
    TaskStatus,
    derive_job_status,
    derive_task_status,
    latest_attempts,
)
from dstat.providers.google import GoogleV1Provider, GoogleV2Provider
from dstat.providers.local import LocalProvider
from dstat.providers.router import ProviderRouter, build_provider
from dstat.providers.transport import HttpOperationsClient, OperationsClient, OperationsPage

__all__ = [
    "BaseProviderAdapter",
    "Event",
    "GoogleV1Provider",
    "GoogleV2Provider",
    "HttpOperationsClient",
    "JobFilter",
    "JobRecord",
    "LocalProvider",
    "OperationsClient",
    "OperationsPage",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderHealth",
    "ProviderRouter",
    "StubProvider",
    "TaskRecord",
    "TaskStatus",
    "build_provider",
    "derive_job_status",
    "derive_task_status",
    "latest_attempts",
]
