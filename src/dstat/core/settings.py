"""Settings for the dstat status engine.

Read-only configuration shared by every query: which providers to ask,
where the local provider's job tree lives, cloud project/location and
endpoints, timeouts and retry bounds.  Nothing else is shared between
queries.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not mid-query
    - **Environment-driven:** Reads ``DSTAT_*`` env vars and a .env file
    - **CLI wins:** Command-line flags override these values per invocation

Examples:
    >>> from dstat.core.settings import DstatSettings
    >>> settings = DstatSettings(provider="google-v2", project="my-project")
    >>> settings.provider_names()
    ['google-v2']

Tags:
    settings, configuration, pydantic, environment, dstat

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DstatSettings(BaseSettings):
    """Settings for provider selection, transport and query bounds.

    Fields
    ──────
    provider              : Default provider name
    providers             : Extra providers queried alongside ``provider``
    local_root            : Root of the local provider's job tree
    project / location    : Cloud project and region for v2 operations
    *_endpoint            : REST base URLs of the cloud operations APIs
    access_token          : Bearer token for the cloud APIs
    query_timeout_seconds : Bound on one provider call (including retries)
    max_retries           : Retries for transient backend errors
    retry_base_delay      : First backoff delay in seconds
    page_size             : Operations requested per backend page
    all_or_nothing        : Fail the query if any provider fails
    poll_interval_seconds : Poll interval for ``--wait``
    log_level / log_json  : Logging configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="DSTAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Providers ────────────────────────────────────────────────
    provider: str = "local"
    providers: Annotated[list[str], NoDecode] = Field(default_factory=list)

    local_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "dsub-local",
        description="Directory holding <job-id>/task/<task-id>/ trees",
    )

    # ── Cloud transport ──────────────────────────────────────────
    project: str | None = None
    location: str = "us-central1"
    google_v1_endpoint: str = "https://genomics.googleapis.com/v1alpha2"
    google_v2_endpoint: str = "https://genomics.googleapis.com/v2alpha1"
    google_cls_v2_endpoint: str = "https://lifesciences.googleapis.com/v2beta"
    access_token: SecretStr | None = None

    # ── Query bounds ─────────────────────────────────────────────
    query_timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    page_size: int = Field(default=128, ge=1, le=256)
    all_or_nothing: bool = False
    poll_interval_seconds: float = Field(default=10.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "WARNING"
    log_json: bool | None = None

    @field_validator("providers", mode="before")
    @classmethod
    def _split_providers(cls, value: object) -> object:
        # DSTAT_PROVIDERS=local,google-v2
        if isinstance(value, str):
            return [name.strip() for name in value.split(",") if name.strip()]
        return value

    def provider_names(self) -> list[str]:
        """Providers to query, default first, without repeats."""
        names: list[str] = []
        for name in [self.provider, *self.providers]:
            if name and name not in names:
                names.append(name)
        return names


__all__ = ["DstatSettings"]
