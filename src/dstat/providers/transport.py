"""Operations transport for the cloud pipeline providers.

The v1 and v2 providers both read long-running *operations* from a REST
API. This module hides HTTP behind a two-method protocol so providers can
be tested with canned payloads, and maps HTTP failures onto the error
taxonomy.

Manifesto:
    - **One pool per backend:** A single ``httpx.AsyncClient`` is shared by
      every concurrent query against the same endpoint
    - **Typed failures:** Status codes become ``BackendAuthError``,
      ``BackendRejected`` or ``BackendUnavailable``; retry policy lives in
      the provider, not here
    - **Credentials are supplied:** A token string or callable is handed
      in; this module never acquires credentials

Architecture:

    .. code-block:: text

        GoogleV1Provider / GoogleV2Provider
                 │ list_operations(filter, page_size, page_token)
                 ▼
        OperationsClient (Protocol)
                 │
                 ▼
        HttpOperationsClient ──► httpx.AsyncClient (shared pool)
                 │
                 ├── 401 / 403           → BackendAuthError
                 ├── 400 / 404 / 4xx     → BackendRejected
                 ├── 408 / 429 / 5xx     → BackendUnavailable (Retry-After)
                 └── connect / read fail → BackendUnavailable

Example:
    >>> client = HttpOperationsClient(
    ...     "https://lifesciences.googleapis.com/v2beta",
    ...     operations_path="projects/my-project/locations/us-central1/operations",
    ...     token=lambda: os.environ["ACCESS_TOKEN"],
    ... )
    >>> page = await client.list_operations('labels."job-id" = "j-1"', page_size=128)
    >>> [op["name"] for op in page.operations]

Tags:
    dstat, transport, httpx, rest, operations

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import SecretStr

from dstat.core.errors import (
    BackendAuthError,
    BackendRejected,
    BackendUnavailable,
    DstatError,
    ErrorContext,
)
from dstat.core.logging import get_logger

logger = get_logger(__name__)

Token = str | SecretStr | Callable[[], str | None] | None

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class OperationsPage:
    """One page of a list-operations response."""

    operations: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


@runtime_checkable
class OperationsClient(Protocol):
    """Read-only, paged access to a backend's operations collection."""

    async def list_operations(
        self,
        filter: str,
        page_size: int,
        page_token: str | None = None,
    ) -> OperationsPage:
        """Fetch one page of operations matching a backend filter string."""
        ...

    async def aclose(self) -> None:
        ...


class HttpOperationsClient:
    """``OperationsClient`` over REST using a shared ``httpx.AsyncClient``.

    Args:
        base_url: API root, e.g. ``https://genomics.googleapis.com/v2alpha1``.
        operations_path: Collection path relative to ``base_url``.
        token: Bearer token, or a callable returning one per request.
        client: Existing client to share; when omitted one is created and
            owned (closed by ``aclose``).
        timeout: Per-request timeout in seconds for an owned client.
        provider: Provider name attached to raised errors.
    """

    def __init__(
        self,
        base_url: str,
        *,
        operations_path: str = "operations",
        token: Token = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        provider: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.operations_path = operations_path.strip("/")
        self.provider = provider
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def __repr__(self) -> str:
        return f"HttpOperationsClient({self.base_url!r}, operations_path={self.operations_path!r})"

    async def list_operations(
        self,
        filter: str,
        page_size: int,
        page_token: str | None = None,
    ) -> OperationsPage:
        params: dict[str, Any] = {"pageSize": page_size}
        if filter:
            params["filter"] = filter
        if page_token:
            params["pageToken"] = page_token
        data = await self._get(self._url(self.operations_path), params=params)
        return OperationsPage(
            operations=list(data.get("operations") or []),
            next_page_token=data.get("nextPageToken") or None,
        )

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        # Absolute, so a shared client needs no base_url of its own.
        return f"{self.base_url}/{path}"

    def _headers(self) -> dict[str, str]:
        token = self._token
        if callable(token):
            token = token()
        if isinstance(token, SecretStr):
            token = token.get_secret_value()
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        context = ErrorContext(provider=self.provider, operation=f"GET {url}")
        try:
            response = await self._client.get(url, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise BackendUnavailable(f"Timed out calling {url}", context=context, cause=exc) from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(
                f"Cannot reach {url}: {exc.__class__.__name__}: {exc}",
                context=context,
                cause=exc,
            ) from exc

        logger.debug(
            "operations_http_response",
            provider=self.provider,
            url=str(response.url),
            status_code=response.status_code,
        )
        if response.is_error:
            raise _status_error(response, context)
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendUnavailable(
                f"Invalid JSON from {url}", retryable=False, context=context, cause=exc
            ) from exc
        if not isinstance(data, dict):
            raise BackendUnavailable(f"Unexpected payload from {url}", retryable=False, context=context)
        return data


def _status_error(response: httpx.Response, context: ErrorContext) -> DstatError:
    """Translate an HTTP error response into the error taxonomy."""
    status = response.status_code
    message = f"HTTP {status} from {response.request.url}: {_error_message(response)}"
    context.metadata["status_code"] = status

    if status in (401, 403):
        return BackendAuthError(message, context=context)
    if status in _RETRYABLE_STATUS or status >= 500:
        return BackendUnavailable(
            message,
            retry_after=_retry_after(response),
            context=context,
        )
    return BackendRejected(message, context=context)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.reason_phrase


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


__all__ = ["HttpOperationsClient", "OperationsClient", "OperationsPage", "Token"]
