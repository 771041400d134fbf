"""Shared test fixtures: environment isolation for ``RelaySettings``.

Every test starts with no ``RELAY_*`` variables set and a cold settings
cache, so tests never pick up the developer's own configuration.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from threadrelay.bridge.settings import _get_settings_cached


def _set_env(monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
    """Set an env var and invalidate the settings cache."""
    monkeypatch.setenv(key, value)
    _get_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("RELAY_"):
            monkeypatch.delenv(key)
    # Keep pydantic-settings away from a developer's .env file.
    monkeypatch.chdir(tmp_path)
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch):
    """Return a setter for env vars that also clears the settings cache."""

    def _setter(key: str, value: str) -> None:
        _set_env(monkeypatch, key, value)

    return _setter
