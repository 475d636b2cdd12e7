"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys

from pathlib import Path
from typing import TYPE_CHECKING

import pytest


# Make ``tests.helpers`` importable
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from authmanager import log  # noqa: E402
from authmanager.config import clear_settings  # noqa: E402
from authmanager.storage import CredentialStore, MemoryBackend, reset_session_storage  # noqa: E402
from tests.helpers import MockBackend  # noqa: E402


if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep config files, env vars and credential files out of the tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for name in ("AUTHMANAGER_CONFIG_FILE", "AUTHMANAGER_PERSISTENCE", "AUTHMANAGER_PLATFORM"):
        monkeypatch.delenv(name, raising=False)
    clear_settings()
    reset_session_storage()
    yield
    clear_settings()
    reset_session_storage()
    log.configure_logging(enabled=False, level="info")


@pytest.fixture()
def store() -> CredentialStore:
    """In-memory credential store."""
    return CredentialStore(MemoryBackend())


@pytest.fixture()
def http() -> MockBackend:
    """Fake HTTP backend; use ``http.client()`` as the provider's client."""
    return MockBackend()
