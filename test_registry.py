#!/usr/bin/env python3
"""Tests for the plugin registry client and the retrying fetch helper."""

import httpx
import pytest

from agenttunnel.auth import AuthBroker
from agenttunnel.config import Config
from agenttunnel.errors import BrowserLaunchError, NetworkFailure, NotAuthenticated, RegistryRejected
from agenttunnel.fetch import request_with_retry
from agenttunnel.registry import RegistryClient, parse_error_body
from agenttunnel.state import MemoryStateStore
from conftest import sign_credential


class RecordingTransport(httpx.AsyncBaseTransport):
    """Answers every request with the given handler and remembers what was sent."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    async def handle_async_request(self, request):
        self.requests.append(request)
        return self.handler(request)


def make_client(store, urls, handler, **kwargs):
    transport = RecordingTransport(handler)
    http_client = httpx.AsyncClient(transport=transport)
    auth = kwargs.pop("auth", None) or AuthBroker(store, urls, open_browser=lambda url: True)
    return RegistryClient(auth, urls.registry_base, http_client=http_client, retry_delay=0, **kwargs), transport


@pytest.mark.asyncio
async def test_update_without_credential_makes_no_request(urls):
    client, transport = make_client(MemoryStateStore(), urls, lambda request: httpx.Response(200))

    result = await client.update("abc.example.test")

    assert not result
    assert isinstance(result.error, NotAuthenticated)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_register_posts_with_credential_header(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    client, transport = make_client(store, urls, lambda request: httpx.Response(201, json={"ok": True}))

    result = await client.register("abc.example.test", account_id="alice.test")

    assert result.ok
    assert result.plugin_id == "abc.example.test"
    assert len(transport.requests) == 1
    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://wallet.bitte.ai/api/ai-plugins/abc.example.test"
    assert request.headers[Config.API_KEY_HEADER] == credential.to_json()


@pytest.mark.asyncio
async def test_update_uses_put(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    client, transport = make_client(store, urls, lambda request: httpx.Response(200))

    result = await client.update("abc.example.test", account_id="alice.test")

    assert result.ok
    assert [r.method for r in transport.requests] == ["PUT"]


@pytest.mark.asyncio
async def test_update_with_other_account_is_unauthenticated(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    client, transport = make_client(store, urls, lambda request: httpx.Response(200))

    result = await client.update("abc.example.test", account_id="bob.test")

    assert isinstance(result.error, NotAuthenticated)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_register_runs_handshake_when_no_credential(urls, signing_key):
    fresh = sign_credential(signing_key, account_id="bob.test")
    store = MemoryStateStore()

    class SigningBroker(AuthBroker):
        async def run_handshake(self, sign_url_base=None, success_url=None):
            return fresh

    auth = SigningBroker(store, urls)
    client, transport = make_client(store, urls, lambda request: httpx.Response(200), auth=auth)

    result = await client.register("abc.example.test", account_id="bob.test")

    assert result.ok
    assert store.get(Config.CREDENTIAL_KEY) == fresh.to_json()
    assert transport.requests[0].headers[Config.API_KEY_HEADER] == fresh.to_json()


@pytest.mark.asyncio
async def test_register_reports_failed_handshake(urls):
    class HeadlessBroker(AuthBroker):
        async def run_handshake(self, sign_url_base=None, success_url=None):
            raise BrowserLaunchError("no display")

    store = MemoryStateStore()
    client, transport = make_client(store, urls, lambda request: httpx.Response(200),
                                    auth=HeadlessBroker(store, urls))

    result = await client.register("abc.example.test")

    assert isinstance(result.error, NotAuthenticated)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_rejection_carries_debug_url(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    body = {"error": "spec invalid", "debugUrl": "https://wallet.bitte.ai/debug/42"}
    client, _ = make_client(store, urls, lambda request: httpx.Response(400, json=body))

    result = await client.register("abc.example.test", account_id="alice.test")

    assert not result.ok
    assert isinstance(result.error, RegistryRejected)
    assert result.error.status_code == 400
    assert result.error.debug_url == "https://wallet.bitte.ai/debug/42"
    assert "spec invalid" in result.error.detail


@pytest.mark.asyncio
async def test_http_errors_are_not_retried(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    client, transport = make_client(store, urls, lambda request: httpx.Response(500, text="boom"))

    result = await client.update("abc.example.test")

    assert result.error.status_code == 500
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_transport_errors_exhaust_retries(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, transport = make_client(store, urls, refuse)

    result = await client.update("abc.example.test")

    assert isinstance(result.error, NetworkFailure)
    assert result.error.attempts == 3
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_delete_uses_cached_credential(urls, credential):
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})
    client, transport = make_client(store, urls, lambda request: httpx.Response(204))

    result = await client.delete("abc.example.test")

    assert result.ok
    assert transport.requests[0].method == "DELETE"
    assert transport.requests[0].url.path == "/api/ai-plugins/abc.example.test"


@pytest.mark.asyncio
async def test_shared_client_is_not_closed(urls):
    http_client = httpx.AsyncClient(transport=RecordingTransport(lambda request: httpx.Response(200)))
    async with RegistryClient(AuthBroker(MemoryStateStore(), urls), urls.registry_base, http_client=http_client):
        pass

    assert not http_client.is_closed
    await http_client.aclose()


def test_parse_error_body_plain_text():
    detail, debug_url = parse_error_body(httpx.Response(502, text="Bad Gateway"))
    assert detail == "Bad Gateway"
    assert debug_url is None


# Retry helper

@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failure():
    calls = []
    sleeps = []

    def flaky(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, text="ok")

    async def fake_sleep(delay):
        sleeps.append(delay)

    async with httpx.AsyncClient(transport=RecordingTransport(flaky)) as client:
        response = await request_with_retry(client, "GET", "https://example.test/", sleep=fake_sleep)

    assert response.text == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_retry_does_not_sleep_after_last_attempt():
    sleeps = []

    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async def fake_sleep(delay):
        sleeps.append(delay)

    async with httpx.AsyncClient(transport=RecordingTransport(refuse)) as client:
        with pytest.raises(NetworkFailure) as exc_info:
            await request_with_retry(client, "DELETE", "https://example.test/x", attempts=2, sleep=fake_sleep)

    assert sleeps == [1.0]
    assert exc_info.value.method == "DELETE"
    assert isinstance(exc_info.value.cause, httpx.ConnectError)
