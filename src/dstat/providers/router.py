"""Provider router: the registry of configured backends.

The ``ProviderRouter`` maintains the named provider adapters a process can
query and resolves the names a caller asks for into adapters. Providers
are selected by configuration; nothing about a backend is hard-wired into
the engine.

Architecture:

    .. code-block:: text

        ProviderRouter: Provider Registry
        ┌──────────────────────────────────────────────────────────────┐
        │                                                              │
        │  Registry                                                    │
        │  ────────                                                    │
        │  register(provider)     → stores by provider.provider_name   │
        │  unregister(name)       → removes provider                   │
        │  get(name)              → exact lookup by name               │
        │  list_providers()       → all registered names               │
        │                                                              │
        │  Selection                                                   │
        │  ─────────                                                   │
        │  select(names)          → adapters for a query               │
        │    ├── names given      → exact match each, in order         │
        │    └── names None       → the default provider               │
        │                                                              │
        │  Construction                                                │
        │  ────────────                                                │
        │  from_settings(settings) → build_provider(name) per name     │
        │    local          → LocalProvider(local_root)                │
        │    google         → GoogleV1Provider(v1 endpoint)            │
        │    google-v2      → GoogleV2Provider(v2 endpoint)            │
        │    google-cls-v2  → GoogleV2Provider(cls v2 endpoint)        │
        │    stub           → StubProvider()                           │
        │                                                              │
        └──────────────────────────────────────────────────────────────┘

Example:
    >>> router = ProviderRouter.from_settings(DstatSettings(provider="local"))
    >>> router.select(None)
    [LocalProvider(provider='local')]

Tags:
    dstat, providers, router, registry, configuration

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx

from dstat.core.errors import DstatError, ErrorCategory, UnknownProvider
from dstat.core.logging import get_logger
from dstat.core.settings import DstatSettings
from dstat.execution.retry import ExponentialBackoff
from dstat.providers._base import StubProvider
from dstat.providers._types import ProviderAdapter, ProviderHealth
from dstat.providers.google import GoogleV1Provider, GoogleV2Provider
from dstat.providers.local import LocalProvider
from dstat.providers.transport import HttpOperationsClient, Token

logger = get_logger(__name__)

KNOWN_PROVIDERS = ("local", "google", "google-v2", "google-cls-v2", "stub")


class ProviderRouter:
    """Registry of named provider adapters.

    Example:
        >>> router = ProviderRouter()
        >>> router.register(LocalProvider("/tmp/dsub-local"))
        >>> router.register(StubProvider(name="stub"))
        >>> [p.provider_name for p in router.select(["stub", "local"])]
        ['stub', 'local']
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderAdapter] = {}
        self._default_name: str | None = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, provider: ProviderAdapter) -> None:
        """Register a provider under its ``provider_name``.

        A provider with the same name is replaced (with a warning). The
        first provider registered becomes the default.
        """
        name = provider.provider_name
        if name in self._providers:
            logger.warning("provider_replaced", provider=name)
        self._providers[name] = provider
        logger.debug("provider_registered", provider=name)

        if self._default_name is None:
            self._default_name = name

    def unregister(self, name: str) -> bool:
        """Remove a provider by name. Returns False if it was not registered."""
        if name not in self._providers:
            return False
        del self._providers[name]
        if self._default_name == name:
            self._default_name = None
            logger.warning("default_provider_unregistered", provider=name)
        return True

    def get(self, name: str) -> ProviderAdapter | None:
        return self._providers.get(name)

    def set_default(self, name: str) -> None:
        """Set the provider used when a query names none.

        Raises:
            UnknownProvider: If no provider with that name is registered.
        """
        if name not in self._providers:
            raise UnknownProvider(f"Cannot set default: no provider registered as '{name}'")
        self._default_name = name

    def list_providers(self) -> list[str]:
        """Sorted registered provider names."""
        return sorted(self._providers)

    @property
    def default_name(self) -> str | None:
        return self._default_name

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, names: Iterable[str] | None = None) -> list[ProviderAdapter]:
        """Resolve provider names into adapters, without repeats.

        Raises:
            UnknownProvider: If a name is not registered, or no names were
                given and there is no default.
        """
        wanted = list(dict.fromkeys(names or []))
        if not wanted:
            if self._default_name is None:
                raise UnknownProvider("No provider selected and no default provider registered")
            wanted = [self._default_name]

        selected = []
        for name in wanted:
            provider = self._providers.get(name)
            if provider is None:
                available = ", ".join(self.list_providers()) or "(none)"
                raise UnknownProvider(
                    f"No provider registered as '{name}'. Available: {available}"
                )
            selected.append(provider)
        return selected

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    async def health_all(self) -> dict[str, ProviderHealth]:
        """Health of every registered provider."""
        results: dict[str, ProviderHealth] = {}
        for name, provider in self._providers.items():
            try:
                results[name] = await provider.health()
            except Exception as exc:
                results[name] = ProviderHealth(
                    healthy=False,
                    provider=name,
                    message=f"Health check error: {exc}",
                )
        return results

    async def aclose(self) -> None:
        """Close every provider's connections."""
        for provider in self._providers.values():
            await provider.aclose()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: DstatSettings,
        *,
        names: Iterable[str] | None = None,
        token: Token = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> ProviderRouter:
        """Build and register providers from settings.

        Args:
            settings: Process settings.
            names: Providers to build; defaults to ``settings.provider_names()``.
                The first becomes the default.
            token: Bearer token (or callable) for the cloud providers;
                defaults to ``settings.access_token``.
            http_client: Client shared by every cloud provider; by default
                each cloud provider owns its own pool.
        """
        router = cls()
        for name in list(dict.fromkeys(names or settings.provider_names())):
            router.register(
                build_provider(name, settings, token=token, http_client=http_client)
            )
        return router

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __repr__(self) -> str:
        names = ", ".join(self.list_providers())
        default = f", default={self._default_name}" if self._default_name else ""
        return f"ProviderRouter([{names}]{default})"


def build_provider(
    name: str,
    settings: DstatSettings,
    *,
    token: Token = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Construct one provider adapter from settings.

    Raises:
        UnknownProvider: For a name outside ``KNOWN_PROVIDERS``.
        DstatError: (CONFIG) When a cloud provider has no project.
    """
    retry = ExponentialBackoff(
        max_retries=settings.max_retries,
        base_delay=settings.retry_base_delay,
    )
    if name == "local":
        return LocalProvider(settings.local_root, retry=retry)
    if name == "stub":
        return StubProvider(retry=retry)
    if name not in KNOWN_PROVIDERS:
        raise UnknownProvider(
            f"Unknown provider '{name}'. Expected one of: {', '.join(KNOWN_PROVIDERS)}"
        )

    client_options: dict[str, Any] = {
        "token": token if token is not None else settings.access_token,
        "client": http_client,
        "timeout": settings.query_timeout_seconds,
        "provider": name,
    }
    if name == "google":
        client = HttpOperationsClient(settings.google_v1_endpoint, operations_path="operations", **client_options)
        return GoogleV1Provider(client, project=settings.project, page_size=settings.page_size, retry=retry)

    if not settings.project:
        raise DstatError(
            f"Provider '{name}' requires a project (--project or DSTAT_PROJECT)",
            category=ErrorCategory.CONFIG,
        )
    if name == "google-v2":
        client = HttpOperationsClient(
            settings.google_v2_endpoint,
            operations_path=f"projects/{settings.project}/operations",
            **client_options,
        )
    else:
        client = HttpOperationsClient(
            settings.google_cls_v2_endpoint,
            operations_path=f"projects/{settings.project}/locations/{settings.location}/operations",
            **client_options,
        )
    return GoogleV2Provider(
        client,
        project=settings.project,
        page_size=settings.page_size,
        retry=retry,
        name=name,
    )


__all__ = ["KNOWN_PROVIDERS", "ProviderRouter", "build_provider"]
