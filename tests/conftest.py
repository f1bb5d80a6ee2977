"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

from typing import Any

import httpx
import pytest

from appauth.auth.credentials_store import SecureCredentialStore
from appauth.auth.storage import MemorySecureStorage
from appauth.config import AuthSettings, clear_settings
from tests.helpers import AUTH_CONFIG, ControllerRecorder, FakeTokenEndpoint


# ── Environment isolation ───────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> Any:
    """Keep user config files and APPAUTH_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("APPAUTH_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


# ── Settings and storage ────────────────────────────────────────────


@pytest.fixture()
def auth_settings() -> AuthSettings:
    """OAuth2 settings pointing at a fake identity provider."""
    return AuthSettings.from_mapping(AUTH_CONFIG)


@pytest.fixture()
def memory_storage() -> MemorySecureStorage:
    """Empty in-memory secure storage."""
    return MemorySecureStorage()


@pytest.fixture()
def credential_store(memory_storage: MemorySecureStorage) -> SecureCredentialStore:
    """Credential store backed by memory storage."""
    return SecureCredentialStore(memory_storage)


@pytest.fixture()
def token_endpoint() -> FakeTokenEndpoint:
    """A fake token endpoint."""
    return FakeTokenEndpoint()


@pytest.fixture()
def http_client(token_endpoint: FakeTokenEndpoint) -> httpx.AsyncClient:
    """An HTTP client routed to the fake token endpoint."""
    return httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))


@pytest.fixture()
def recorder() -> ControllerRecorder:
    """A fresh controller callback recorder."""
    return ControllerRecorder()
