"""Pluggable credential persistence.

A CredentialStore namespaces keys under a prefix and JSON-encodes values
on top of a StorageBackend. Backends are in-memory, process session,
local JSON file and Redis.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .exceptions import StorageError


logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "authmanager_"
DEFAULT_FILE_PATH = Path("~/.config/authmanager/credentials.json")


class StorageBackend(ABC):
    """Abstract string key/value backend.

    All methods are async to support both local and network-backed stores.
    Keys arrive already prefixed by the CredentialStore.
    """

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        """Return the raw value stored under ``key``, or None."""

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Delete ``key``. Missing keys are ignored."""

    @abstractmethod
    async def keys(self) -> list[str]:
        """List every key held by the backend."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class MemoryBackend(StorageBackend):
    """Per-instance dict. Lost when the store is dropped."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)


# Shared by every SessionBackend in the process.
_SESSION_DATA: dict[str, str] = {}


class SessionBackend(MemoryBackend):
    """Process-wide dict that outlives manager instances but not the process."""

    def __init__(self) -> None:
        self._data = _SESSION_DATA


def reset_session_storage() -> None:
    """Forget everything held by session backends.

    Useful for tests that need a clean process session between runs.
    """
    _SESSION_DATA.clear()


class FileBackend(StorageBackend):
    """Durable JSON file backend.

    The whole mapping is rewritten atomically (temp file + rename) on every
    mutation. File I/O runs in the default executor.

    Parameters
    ----------
    path : str or Path, optional
        File location (default ``~/.config/authmanager/credentials.json``).
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path or DEFAULT_FILE_PATH).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Location of the backing file."""
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            msg = "Failed to read credential file"
            raise StorageError(msg, path=str(self._path)) from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt credential file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".credentials-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh)
                os.chmod(tmp, 0o600)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            msg = "Failed to write credential file"
            raise StorageError(msg, path=str(self._path)) from exc

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def get_item(self, key: str) -> str | None:
        async with self._lock:
            data = await self._run(self._read)
        return data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            data = await self._run(self._read)
            data[key] = value
            await self._run(self._write, data)

    async def remove_item(self, key: str) -> None:
        async with self._lock:
            data = await self._run(self._read)
            if key in data:
                del data[key]
                await self._run(self._write, data)

    async def keys(self) -> list[str]:
        async with self._lock:
            data = await self._run(self._read)
        return list(data)


class RedisBackend(StorageBackend):
    """Redis-backed store for multi-process deployments.

    Requires the ``redis`` package: ``pip install authmanager[redis]``

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    pool_size : int
        Connection pool size (default 10).
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", pool_size: int = 10) -> None:
        try:
            from redis.asyncio import Redis as RedisClient
        except ImportError:
            msg = "Redis persistence requires the 'redis' package. Install with: pip install authmanager[redis]"
            raise ImportError(msg) from None

        self._redis: Any = RedisClient.from_url(
            redis_url,
            max_connections=pool_size,
            decode_responses=True,
        )

    async def get_item(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set_item(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def remove_item(self, key: str) -> None:
        await self._redis.delete(key)

    async def keys(self) -> list[str]:
        return [key async for key in self._redis.scan_iter(match="*")]

    async def scan_prefix(self, prefix: str) -> list[str]:
        """List keys starting with ``prefix`` using a server-side match."""
        return [key async for key in self._redis.scan_iter(match=f"{prefix}*")]

    async def close(self) -> None:
        await self._redis.aclose()


class CredentialStore:
    """Namespaced JSON store shared by the manager and its providers.

    Parameters
    ----------
    backend : StorageBackend, optional
        Where values live (default: a fresh MemoryBackend).
    prefix : str
        Namespace prepended to every key (default ``"authmanager_"``).
    """

    def __init__(self, backend: StorageBackend | None = None, prefix: str = DEFAULT_PREFIX) -> None:
        self._backend = backend if backend is not None else MemoryBackend()
        self._prefix = prefix

    @property
    def backend(self) -> StorageBackend:
        """The underlying backend."""
        return self._backend

    @property
    def prefix(self) -> str:
        """Key namespace."""
        return self._prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any:
        """Load the value stored under ``key``.

        Returns
        -------
        Any
            The decoded JSON value, the raw string if it is not JSON, or
            None when nothing is stored.
        """
        raw = await self._backend.get_item(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def set(self, key: str, value: Any) -> None:
        """JSON-encode ``value`` and store it under ``key``."""
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as exc:
            msg = "Value is not JSON serializable"
            raise StorageError(msg, key=key) from exc
        await self._backend.set_item(self._key(key), raw)

    async def remove(self, key: str) -> None:
        """Delete ``key``."""
        await self._backend.remove_item(self._key(key))

    async def clear(self) -> None:
        """Delete every key in this store's namespace, and nothing else."""
        if isinstance(self._backend, RedisBackend):
            keys = await self._backend.scan_prefix(self._prefix)
        else:
            keys = [k for k in await self._backend.keys() if k.startswith(self._prefix)]
        for key in keys:
            await self._backend.remove_item(key)

    async def close(self) -> None:
        """Release backend resources."""
        await self._backend.close()


def create_credential_store(
    persistence: str = "local",
    prefix: str = DEFAULT_PREFIX,
    path: str | Path | None = None,
    redis_url: str = "redis://localhost:6379/0",
) -> CredentialStore:
    """Factory function for credential stores.

    Parameters
    ----------
    persistence : str
        ``"local"``, ``"session"``, ``"memory"`` or ``"redis"``.
    prefix : str
        Key namespace.
    path : str or Path, optional
        File location for ``"local"``.
    redis_url : str
        Connection URL for ``"redis"``.

    Returns
    -------
    CredentialStore
        A store over the selected backend.
    """
    backend: StorageBackend
    if persistence == "memory":
        backend = MemoryBackend()
    elif persistence == "session":
        backend = SessionBackend()
    elif persistence == "local":
        backend = FileBackend(path)
    elif persistence == "redis":
        backend = RedisBackend(redis_url=redis_url)
    else:
        msg = f"Unknown persistence backend: {persistence}"
        raise ValueError(msg)
    logger.debug("Using %s credential persistence", persistence)
    return CredentialStore(backend, prefix=prefix)
