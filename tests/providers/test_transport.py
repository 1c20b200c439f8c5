"""Tests for HttpOperationsClient using httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest
from pydantic import SecretStr

from dstat.core.errors import BackendAuthError, BackendRejected, BackendUnavailable
from dstat.providers.transport import HttpOperationsClient, OperationsClient

BASE = "https://genomics.example.com/v2alpha1"


def _client(handler, **kwargs) -> HttpOperationsClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpOperationsClient(
        BASE,
        operations_path="projects/p/operations",
        client=http,
        provider="google-v2",
        **kwargs,
    )


class TestListOperations:
    @pytest.mark.asyncio
    async def test_query_parameters_and_auth_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"operations": [{"name": "op-1"}], "nextPageToken": "tok-2"})

        client = _client(handler, token="ya29.abc")
        page = await client.list_operations('labels."job-id" = "a"', 50, page_token="tok-1")

        assert seen["url"].path == "/v2alpha1/projects/p/operations"
        assert seen["url"].params["pageSize"] == "50"
        assert seen["url"].params["filter"] == 'labels."job-id" = "a"'
        assert seen["url"].params["pageToken"] == "tok-1"
        assert seen["auth"] == "Bearer ya29.abc"
        assert page.operations == [{"name": "op-1"}]
        assert page.next_page_token == "tok-2"

    @pytest.mark.asyncio
    async def test_empty_filter_and_last_page(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={})

        page = await _client(handler).list_operations("", 10)
        assert "filter" not in seen["params"]
        assert seen["auth"] is None
        assert page.operations == []
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_callable_and_secret_tokens(self):
        headers = []

        def handler(request):
            headers.append(request.headers["Authorization"])
            return httpx.Response(200, json={})

        await _client(handler, token=lambda: "fresh").list_operations("", 1)
        await _client(handler, token=SecretStr("hidden")).list_operations("", 1)
        assert headers == ["Bearer fresh", "Bearer hidden"]

    def test_protocol_is_list_and_close(self):
        class PagedOnly:
            async def list_operations(self, filter, page_size, page_token=None):
                return None

            async def aclose(self):
                return None

        assert isinstance(PagedOnly(), OperationsClient)
        assert not hasattr(HttpOperationsClient, "get_operation")


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, status):
        client = _client(lambda r: httpx.Response(status, json={"error": {"message": "denied"}}))
        with pytest.raises(BackendAuthError, match="denied") as exc_info:
            await client.list_operations("", 1)
        assert exc_info.value.context.metadata["status_code"] == status
        assert exc_info.value.context.provider == "google-v2"

    @pytest.mark.asyncio
    async def test_bad_request_is_rejected(self):
        client = _client(lambda r: httpx.Response(400, json={"error": {"message": "bad filter"}}))
        with pytest.raises(BackendRejected, match="bad filter") as exc_info:
            await client.list_operations("nonsense", 1)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_unavailable_with_retry_after(self):
        client = _client(lambda r: httpx.Response(503, headers={"Retry-After": "3"}, text="busy"))
        with pytest.raises(BackendUnavailable) as exc_info:
            await client.list_operations("", 1)
        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_throttling_is_unavailable(self):
        client = _client(lambda r: httpx.Response(429))
        with pytest.raises(BackendUnavailable):
            await client.list_operations("", 1)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BackendUnavailable, match="Cannot reach") as exc_info:
            await _client(handler).list_operations("", 1)
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(BackendUnavailable, match="Timed out"):
            await _client(handler).list_operations("", 1)

    @pytest.mark.asyncio
    async def test_invalid_json_is_not_retryable(self):
        client = _client(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(BackendUnavailable, match="Invalid JSON") as exc_info:
            await client.list_operations("", 1)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_non_object_payload(self):
        client = _client(lambda r: httpx.Response(200, json=[1, 2]))
        with pytest.raises(BackendUnavailable, match="Unexpected payload"):
            await client.list_operations("", 1)


class TestLifecycle:
    def test_satisfies_protocol(self):
        assert isinstance(HttpOperationsClient(BASE), OperationsClient)

    @pytest.mark.asyncio
    async def test_shared_client_is_not_closed(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        client = HttpOperationsClient(BASE, client=http)
        await client.aclose()
        assert http.is_closed is False
        await http.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        client = HttpOperationsClient(BASE)
        await client.aclose()
        assert client._client.is_closed is True
