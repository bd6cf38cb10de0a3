#!/usr/bin/env python3
"""Tests for the credential and session stores."""

import json
import os

import pytest

from agenttunnel.state import EnvFileStore, MemoryStateStore, merge_json


@pytest.fixture
def env_store(tmp_path, monkeypatch):
    for key in ("BITTE_KEY", "BITTE_CONFIG", "OTHER"):
        monkeypatch.delenv(key, raising=False)
    store = EnvFileStore(tmp_path)
    yield store
    # set() mirrors into os.environ; keep tests independent
    for key in ("BITTE_KEY", "BITTE_CONFIG", "OTHER"):
        os.environ.pop(key, None)


def test_merge_json_over_existing():
    assert merge_json('{"url": "https://a", "pluginId": "a"}', {"pluginId": "b"}) == {
        "url": "https://a",
        "pluginId": "b",
    }


def test_merge_json_starts_fresh_on_garbage():
    assert merge_json("{not json", {"url": "https://a"}) == {"url": "https://a"}
    assert merge_json('["list"]', {"url": "https://a"}) == {"url": "https://a"}
    assert merge_json(None, {}) == {}


def test_memory_store_round_trip():
    store = MemoryStateStore()
    store.set("BITTE_KEY", "value")
    assert store.get("BITTE_KEY") == "value"

    store.merge("BITTE_CONFIG", {"url": "https://a"})
    store.merge("BITTE_CONFIG", {"pluginId": "a"})
    assert json.loads(store.get("BITTE_CONFIG")) == {"url": "https://a", "pluginId": "a"}

    store.remove("BITTE_CONFIG")
    store.remove("BITTE_CONFIG")
    assert store.get("BITTE_CONFIG") is None


def test_env_store_creates_dotenv(env_store, tmp_path):
    env_store.set("BITTE_KEY", '{"accountId": "alice.test"}')

    assert (tmp_path / ".env").read_text() == 'BITTE_KEY={"accountId": "alice.test"}\n'
    assert env_store.get("BITTE_KEY") == '{"accountId": "alice.test"}'
    assert os.environ["BITTE_KEY"] == '{"accountId": "alice.test"}'


def test_env_store_appends_to_existing_file(env_store, tmp_path):
    (tmp_path / ".env").write_text("OTHER=1")

    env_store.set("BITTE_KEY", "abc")

    assert (tmp_path / ".env").read_text() == "OTHER=1\nBITTE_KEY=abc\n"


def test_env_store_writes_to_first_existing_file(env_store, tmp_path):
    (tmp_path / ".env.local").write_text("OTHER=1\n")

    env_store.set("BITTE_KEY", "abc")

    assert not (tmp_path / ".env").exists()
    assert "BITTE_KEY=abc" in (tmp_path / ".env.local").read_text()


def test_env_store_replaces_value_on_single_line(env_store, tmp_path):
    env_store.set("BITTE_KEY", "first")
    env_store.set("BITTE_KEY", "second\nline")

    content = (tmp_path / ".env").read_text()
    assert content.count("BITTE_KEY=") == 1
    assert env_store.get("BITTE_KEY") == "secondline"


def test_env_store_merge_and_remove(env_store, tmp_path):
    (tmp_path / ".env").write_text("OTHER=1\n")

    env_store.merge("BITTE_CONFIG", {"url": "https://abc.example.test"})
    merged = env_store.merge("BITTE_CONFIG", {"pluginId": "abc.example.test", "receivedId": ""})

    assert merged == {"url": "https://abc.example.test", "pluginId": "abc.example.test", "receivedId": ""}
    assert json.loads(env_store.get("BITTE_CONFIG")) == merged

    env_store.remove("BITTE_CONFIG")

    assert (tmp_path / ".env").read_text() == "OTHER=1\n"
    assert env_store.get("BITTE_CONFIG") is None
    assert "BITTE_CONFIG" not in os.environ


def test_env_store_falls_back_to_environment(env_store, monkeypatch):
    monkeypatch.setenv("BITTE_KEY", "from-env")
    assert env_store.get("BITTE_KEY") == "from-env"


def test_env_store_later_files_win(env_store, tmp_path):
    (tmp_path / ".env").write_text("BITTE_KEY=base\n")
    (tmp_path / ".env.local").write_text("BITTE_KEY=local\n")

    assert env_store.get("BITTE_KEY") == "local"
