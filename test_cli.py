#!/usr/bin/env python3
"""Test the command line entry points."""

import httpx
import pytest
from click.testing import CliRunner

from agenttunnel.app import main_delete, main_update
from agenttunnel.cli import cli
from agenttunnel.config import Config
from agenttunnel.state import MemoryStateStore
from agenttunnel.tunnel import ProviderKind
from conftest import sign_credential


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(Config.CREDENTIAL_KEY, raising=False)
    return tmp_path


def test_verify_without_credential_fails(project):
    result = CliRunner().invoke(cli, ["verify"])
    assert result.exit_code == 1


def test_verify_with_cached_credential(project, credential):
    (project / ".env").write_text(f"{Config.CREDENTIAL_KEY}={credential.to_json()}\n")

    assert CliRunner().invoke(cli, ["verify"]).exit_code == 0
    assert CliRunner().invoke(cli, ["verify", "--account-id", "alice.test"]).exit_code == 0
    assert CliRunner().invoke(cli, ["verify", "--account-id", "bob.test"]).exit_code == 1


def test_dev_selects_provider(monkeypatch):
    calls = []
    monkeypatch.setattr("agenttunnel.cli.run_dev", lambda **kwargs: calls.append(kwargs))

    CliRunner().invoke(cli, ["dev", "--port", "3000"])
    CliRunner().invoke(cli, ["dev", "-p", "3000", "--serveo", "--testnet"])

    assert calls[0]["provider_kind"] is ProviderKind.HOSTED
    assert calls[0]["testnet"] is False
    assert calls[1]["provider_kind"] is ProviderKind.SSH_REVERSE
    assert calls[1]["testnet"] is True


def test_dev_requires_port():
    result = CliRunner().invoke(cli, ["dev"], env={"AGENTTUNNEL_PORT": None})
    assert result.exit_code == 2
    assert "--port" in result.output


DEPLOYMENT_SPEC = {
    "openapi": "3.0.0",
    "info": {"title": "Weather Agent", "version": "1.0.0"},
    "x-mb": {"account-id": "alice.test"},
    "paths": {},
}


def deployment_client(sent):
    def handler(request):
        if request.url.path == "/.well-known/ai-plugin.json":
            return httpx.Response(200, json=DEPLOYMENT_SPEC)
        sent.append((request.method, request.url.host, request.url.path))
        return httpx.Response(200, json={})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_update_pushes_deployed_spec(credential):
    sent = []
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})

    ok = await main_update("https://my-agent.example.test", store=store, http_client=deployment_client(sent))

    assert ok is True
    assert sent == [("PUT", "wallet.bitte.ai", "/api/ai-plugins/my-agent.example.test")]


@pytest.mark.asyncio
async def test_update_requires_credential_for_spec_account(signing_key):
    sent = []
    other = sign_credential(signing_key, account_id="bob.test")
    store = MemoryStateStore({Config.CREDENTIAL_KEY: other.to_json()})

    ok = await main_update("https://my-agent.example.test", store=store, http_client=deployment_client(sent))

    assert ok is False
    assert sent == []


@pytest.mark.asyncio
async def test_delete_removes_deployed_plugin(credential):
    sent = []
    store = MemoryStateStore({Config.CREDENTIAL_KEY: credential.to_json()})

    ok = await main_delete("https://my-agent.example.test", store=store, http_client=deployment_client(sent))

    assert ok is True
    assert sent == [("DELETE", "wallet.bitte.ai", "/api/ai-plugins/my-agent.example.test")]


def test_update_command_exit_codes(monkeypatch):
    results = iter([True, False])
    seen = []

    async def fake_update(url, testnet=False):
        seen.append((url, testnet))
        return next(results)

    monkeypatch.setattr("agenttunnel.app.main_update", fake_update)

    assert CliRunner().invoke(cli, ["update", "--url", "https://my-agent.example.test"]).exit_code == 0
    assert CliRunner().invoke(cli, ["update", "-u", "https://my-agent.example.test", "-t"]).exit_code == 1
    assert seen == [("https://my-agent.example.test", False), ("https://my-agent.example.test", True)]
