# src/ligo_session/credential_store.py

import asyncio
import copy
import inspect
import json
import logging
import os
import re
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from .auth_utils import StoreUnavailable
from .session_data import StorageChange, TokenSet

logger = logging.getLogger(__name__)

# --- Persisted key layout ---
ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
LEGACY_TOKEN_KEY = "token"
PROFILE_KEY = "cached_user_profile"
PROFILE_TIME_KEY = "user_profile_cache_time"

TOKEN_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, LEGACY_TOKEN_KEY)
PROFILE_KEYS = (PROFILE_KEY, PROFILE_TIME_KEY)
SESSION_KEYS = TOKEN_KEYS + PROFILE_KEYS

Changes = Dict[str, StorageChange]
ChangeListener = Callable[[Changes], Union[None, Awaitable[None]]]

_KEY_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


class StorageBackend:
    """
    The shared, persistent side of the credential store. Every execution context
    attaches a sink; any write through any context is broadcast to all sinks.
    """

    def __init__(self):
        self._sinks: List[Callable[[Changes], None]] = []

    def attach(self, sink: Callable[[Changes], None]) -> None:
        self._sinks.append(sink)

    def detach(self, sink: Callable[[Changes], None]) -> None:
        with suppress(ValueError):
            self._sinks.remove(sink)

    def _broadcast(self, changes: Changes) -> None:
        if not changes:
            return
        for sink in list(self._sinks):
            sink(changes)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        raise NotImplementedError

    async def set_many(self, items: Mapping[str, Any]) -> None:
        raise NotImplementedError

    async def remove_many(self, keys: Iterable[str]) -> None:
        raise NotImplementedError


class MemoryBackend(StorageBackend):
    """In-process backend; contexts in one process share a single instance."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, Any] = dict(initial or {})
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("memory backend is unavailable")

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        self._check_available()
        return {key: copy.deepcopy(self._data[key]) for key in keys if key in self._data}

    async def set_many(self, items: Mapping[str, Any]) -> None:
        self._check_available()
        changes: Changes = {}
        for key, value in items.items():
            old_value = self._data.get(key)
            self._data[key] = copy.deepcopy(value)
            if old_value != value:
                changes[key] = StorageChange(key=key, old_value=old_value, new_value=copy.deepcopy(value))
        self._broadcast(changes)

    async def remove_many(self, keys: Iterable[str]) -> None:
        self._check_available()
        changes: Changes = {}
        for key in keys:
            if key in self._data:
                changes[key] = StorageChange(key=key, old_value=self._data.pop(key))
        self._broadcast(changes)


class DirectoryBackend(StorageBackend):
    """
    One JSON file per key, replaced atomically, so concurrent writers from
    several processes never corrupt a key (last write wins). Writes made by this
    process are broadcast immediately; writes made by other processes are found
    by `poll()` and broadcast the same way.
    """

    def __init__(self, directory: Union[str, Path]):
        super().__init__()
        self.directory = Path(directory)
        self._snapshot: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def _read_sync(self, key: str) -> Any:
        try:
            with open(self._path(key), "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None

    def _write_sync(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_path)
            raise

    def _delete_sync(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _scan_sync(self) -> Dict[str, Any]:
        if not self.directory.exists():
            return {}
        found: Dict[str, Any] = {}
        for path in self.directory.glob("*.json"):
            if not _KEY_RE.match(path.stem):
                logger.debug(f"CREDENTIAL_STORE: _scan_sync - ignoring stray file {path.name}")
                continue
            value = self._read_sync(path.stem)
            if value is not None:
                found[path.stem] = value
        return found

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"{self.directory}: {e}") from e

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for key in keys:
            value = await self._run(self._read_sync, key)
            if value is not None:
                values[key] = value
        return values

    async def set_many(self, items: Mapping[str, Any]) -> None:
        async with self._lock:
            changes: Changes = {}
            for key, value in items.items():
                old_value = await self._run(self._read_sync, key)
                await self._run(self._write_sync, key, value)
                if self._snapshot is not None:
                    self._snapshot[key] = value
                if old_value != value:
                    changes[key] = StorageChange(key=key, old_value=old_value, new_value=value)
        self._broadcast(changes)

    async def remove_many(self, keys: Iterable[str]) -> None:
        async with self._lock:
            changes: Changes = {}
            for key in keys:
                old_value = await self._run(self._read_sync, key)
                await self._run(self._delete_sync, key)
                if self._snapshot is not None:
                    self._snapshot.pop(key, None)
                if old_value is not None:
                    changes[key] = StorageChange(key=key, old_value=old_value)
        self._broadcast(changes)

    async def poll(self) -> Changes:
        """Diff the directory against the last snapshot and broadcast what other processes changed."""
        async with self._lock:
            current = await self._run(self._scan_sync)
            if self._snapshot is None:
                self._snapshot = current
                return {}
            changes: Changes = {}
            for key in set(self._snapshot) | set(current):
                old_value, new_value = self._snapshot.get(key), current.get(key)
                if old_value != new_value:
                    changes[key] = StorageChange(key=key, old_value=old_value, new_value=new_value)
            self._snapshot = current
        self._broadcast(changes)
        return changes

    async def watch(self, interval: float) -> None:
        """Poll forever; cancel the task to stop."""
        await self.poll()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.poll()
            except StoreUnavailable as e:
                logger.warning(f"CREDENTIAL_STORE: watch - poll failed, will retry: {e}")


class Subscription:
    def __init__(self, store: "CredentialStore", listener: ChangeListener):
        self._store = store
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener in self._store._listeners

    def unsubscribe(self) -> None:
        with suppress(ValueError):
            self._store._listeners.remove(self._listener)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


def _as_token(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


_TOKEN_FIELDS = {
    ACCESS_TOKEN_KEY: "access_token",
    REFRESH_TOKEN_KEY: "refresh_token",
    LEGACY_TOKEN_KEY: "legacy_token",
}


def apply_token_changes(tokens: TokenSet, changes: Changes) -> TokenSet:
    """Token set after `changes`; keys not in `changes` keep their value from `tokens`."""
    update = {
        field: _as_token(changes[key].new_value)
        for key, field in _TOKEN_FIELDS.items()
        if key in changes
    }
    return tokens.model_copy(update=update) if update else tokens


class CredentialStore:
    """
    One execution context's handle on a shared StorageBackend.

    Reads fail closed: an unavailable backend looks like an empty store.
    Writes against an unavailable backend log a warning and report False.
    """

    def __init__(self, backend: StorageBackend, name: str = "context"):
        self.backend = backend
        self.name = name
        self._listeners: List[ChangeListener] = []
        self._pending: Set[asyncio.Task] = set()
        backend.attach(self._on_backend_change)

    async def get(self, key: str, default: Any = None) -> Any:
        values = await self.get_many([key])
        return values.get(key, default)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        try:
            return await self.backend.get_many(list(keys))
        except StoreUnavailable as e:
            logger.warning(f"CREDENTIAL_STORE[{self.name}]: get_many - store unavailable, treating as empty: {e}")
            return {}

    async def set(self, key: str, value: Any) -> bool:
        return await self.set_many({key: value})

    async def set_many(self, items: Mapping[str, Any]) -> bool:
        try:
            await self.backend.set_many(dict(items))
            return True
        except StoreUnavailable as e:
            logger.warning(f"CREDENTIAL_STORE[{self.name}]: set_many - write of {sorted(items)} dropped: {e}")
            return False

    async def remove(self, key: str) -> bool:
        return await self.remove_many([key])

    async def remove_many(self, keys: Iterable[str]) -> bool:
        keys = list(keys)
        try:
            await self.backend.remove_many(keys)
            return True
        except StoreUnavailable as e:
            logger.warning(f"CREDENTIAL_STORE[{self.name}]: remove_many - removal of {keys} dropped: {e}")
            return False

    async def read_tokens(self) -> TokenSet:
        values = await self.get_many(TOKEN_KEYS)
        return TokenSet(
            access_token=_as_token(values.get(ACCESS_TOKEN_KEY)),
            refresh_token=_as_token(values.get(REFRESH_TOKEN_KEY)),
            legacy_token=_as_token(values.get(LEGACY_TOKEN_KEY)),
        )

    async def clear_session(self) -> bool:
        """Logout cascade at the storage level: drop every token and the cached profile."""
        logger.info(f"CREDENTIAL_STORE[{self.name}]: clear_session - removing {list(SESSION_KEYS)}")
        return await self.remove_many(SESSION_KEYS)

    # --- Change notifications ---

    def subscribe(self, listener: ChangeListener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def _on_backend_change(self, changes: Changes) -> None:
        if not self._listeners:
            return
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            task = loop.create_task(self._deliver(listener, dict(changes)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, listener: ChangeListener, changes: Changes) -> None:
        try:
            result = listener(changes)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"CREDENTIAL_STORE[{self.name}]: listener failed for keys {sorted(changes)}: {e}")

    async def drain(self) -> None:
        """Wait until every notification delivered to this context has been handled."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        self.backend.detach(self._on_backend_change)
        self._listeners.clear()
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()
