"""
Session Cache
=============

Persists the last known server connection and kernel id so a reload (or a
new process) can reattach to a running kernel instead of provisioning a new
server.

Two string slots are kept, mirroring the browser build's localStorage:
- serverParams: JSON text {"url": ..., "token": ...}
- kernelId: the kernel id on that server

The cache holds a single entry. Every save overwrites it.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import structlog
from filelock import FileLock

from jupytercon.constants import KERNEL_ID_KEY, SERVER_PARAMS_KEY
from jupytercon.errors import MalformedCacheError, NotFoundError
from jupytercon.models import CachedSession, ServerConnection

logger = structlog.get_logger(__name__)


class MemoryStorage:
    """Dict-backed storage. Lives as long as the process."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        return {key: self._data.get(key) for key in keys}

    async def set_many(self, values: Mapping[str, str]) -> None:
        self._data.update(values)

    async def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)


class FileStorage:
    """
    JSON-file-backed storage.

    The whole document is rewritten atomically (temp file + os.replace) under
    a file lock, and the file is only readable by its owner since it holds
    the server token.
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path).expanduser()
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = list(keys)
        data = await asyncio.to_thread(self._read_locked)
        return {key: data.get(key) for key in keys}

    async def set_many(self, values: Mapping[str, str]) -> None:
        await asyncio.to_thread(self._update, dict(values), ())

    async def delete_many(self, keys: Iterable[str]) -> None:
        await asyncio.to_thread(self._update, {}, tuple(keys))

    def _read_locked(self) -> Dict[str, str]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            return self._read()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise MalformedCacheError(f"Cannot parse session cache {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise MalformedCacheError(f"Session cache {self.path} is not a JSON object")
        return data

    def _update(self, values: Dict[str, str], removed: tuple) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            try:
                data = self._read()
            except MalformedCacheError as e:
                logger.warning(f"[CACHE] Discarding unreadable cache: {e}")
                data = {}

            data.update(values)
            for key in removed:
                data.pop(key, None)

            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".session-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise


class SessionCache:
    """Reads and writes the single cached (connection, kernel id) entry."""

    def __init__(self, storage=None):
        self.storage = storage if storage is not None else MemoryStorage()

    async def save(self, connection: ServerConnection, session_id: str) -> None:
        """Overwrite both slots as a unit."""
        await self.storage.set_many(
            {
                SERVER_PARAMS_KEY: _dump_params(connection),
                KERNEL_ID_KEY: session_id,
            }
        )
        logger.info(f"[CACHE] Saved kernel {session_id} on {connection.url}")

    async def save_server(self, connection: ServerConnection) -> None:
        """Store server parameters before any kernel exists on that server."""
        await self.storage.set_many({SERVER_PARAMS_KEY: _dump_params(connection)})
        logger.info(f"[CACHE] Saved server parameters for {connection.url}")

    async def load(self) -> CachedSession:
        """
        Return the cached entry.

        Raises:
            NotFoundError: nothing was ever saved (or only half of it)
            MalformedCacheError: the stored text is not valid session data
        """
        values = await self.storage.get_many([SERVER_PARAMS_KEY, KERNEL_ID_KEY])
        raw_params = values.get(SERVER_PARAMS_KEY)
        kernel_id = values.get(KERNEL_ID_KEY)

        if raw_params is None or not kernel_id:
            raise NotFoundError("No cached session")

        try:
            params = json.loads(raw_params)
            url = params["url"]
            if not isinstance(url, str):
                raise TypeError(f"url is {type(url).__name__}, not str")
            connection = ServerConnection.from_base_url(url, params.get("token") or "")
        except (TypeError, KeyError, ValueError) as e:
            raise MalformedCacheError(f"Cached server parameters are corrupt: {e}") from e

        if not isinstance(kernel_id, str):
            raise MalformedCacheError("Cached kernel id is not a string")

        return CachedSession(server_params=connection, session_id=kernel_id)

    async def clear(self) -> None:
        await self.storage.delete_many([SERVER_PARAMS_KEY, KERNEL_ID_KEY])
        logger.info("[CACHE] Cleared cached session")


def _dump_params(connection: ServerConnection) -> str:
    return json.dumps({"url": connection.url, "token": connection.token})
