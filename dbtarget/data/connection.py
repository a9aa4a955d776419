"""
Connection Provider - opens SQLite handles and guards their lifetime.

MODES:
- ISOLATED: private ":memory:" store. Closing the handle destroys the data.
  The identifier is ignored; every call yields a fresh, empty store.
- SHARED: named in-memory store (shared cache). All handles opened with the
  same identifier observe each other's writes.
- FILE: on-disk database at the path given as identifier.

SHARED-STORE LIFETIME:
Reference counted by the engine. SQLite frees a shared-cache in-memory
database when the last connection to it closes, so data survives repeated
open() calls only while at least one handle for that identifier stays open.
The provider counts the handles it issued per identifier (open_handles) so
callers and tests can see when a store is about to be released. Shared and
file handles come back as TrackedConnection, whose close() releases the count.

NON-CLOSING WRAPPER:
Migration code opens and closes a connection around every step. Handing it a
NonClosingConnection lets it "close" as often as it likes while the real
owner keeps the physical handle, and closes it explicitly when done.
"""

import logging
import sqlite3
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import quote

import aiosqlite

from dbtarget.errors import DBConnectionError

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[Any]]


class ConnectionMode(str, Enum):
    ISOLATED = "isolated"
    SHARED = "shared"
    FILE = "file"


class NonClosingConnection:
    """
    Delegates every operation to `inner` except close, which is a no-op.

    Also usable as `async with`; leaving the block does not close `inner`.
    """

    def __init__(self, inner: aiosqlite.Connection):
        self._inner = inner

    @property
    def inner(self) -> aiosqlite.Connection:
        return self._inner

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)

    async def close(self) -> None:
        logger.debug("[NonClosingConnection] close() ignored; handle is externally owned")

    async def __aenter__(self) -> "NonClosingConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class TrackedConnection:
    """
    Delegates to `inner`; closing releases the provider's handle count once.

    Returned by ConnectionProvider.open() for shared and file stores.
    """

    def __init__(self, inner: aiosqlite.Connection, release: Callable[[], None]):
        self._inner = inner
        self._release = release
        self._released = False

    @property
    def inner(self) -> aiosqlite.Connection:
        return self._inner

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)

    async def close(self) -> None:
        try:
            await self._inner.close()
        finally:
            if not self._released:
                self._released = True
                self._release()

    async def __aenter__(self) -> "TrackedConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


Handle = Union[aiosqlite.Connection, TrackedConnection]


def wrap_non_closing(conn: Union[Handle, NonClosingConnection]) -> NonClosingConnection:
    if isinstance(conn, NonClosingConnection):
        return conn
    return NonClosingConnection(conn)


def pinned(conn: Handle) -> ConnectionFactory:
    """Connection factory that always yields `conn`, wrapped non-closing."""
    wrapped = wrap_non_closing(conn)

    async def connect() -> NonClosingConnection:
        return wrapped

    return connect


class ConnectionProvider:
    """Opens handles in isolated, shared or file mode and tracks shared ones."""

    def __init__(self, busy_timeout: float = 5.0):
        self.busy_timeout = busy_timeout
        self._open: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def open(self, mode: Union[ConnectionMode, str], identifier: str = "") -> Handle:
        """
        Open a new handle.

        Raises:
            DBConnectionError: the engine cannot allocate or locate storage
        """
        try:
            mode = ConnectionMode(mode)
        except ValueError:
            raise DBConnectionError(
                f"Unknown connection mode {mode!r}",
                details={"mode": str(mode), "identifier": identifier},
            ) from None
        database, uri = self._database_for(mode, identifier)

        try:
            conn = await aiosqlite.connect(
                database,
                uri=uri,
                timeout=self.busy_timeout,
                isolation_level=None,
            )
        except (sqlite3.Error, OSError) as e:
            raise DBConnectionError(
                f"Cannot open {mode.value} store {identifier!r}: {e}",
                details={"mode": mode.value, "identifier": identifier},
            ) from e

        conn.row_factory = aiosqlite.Row
        logger.debug(f"[ConnectionProvider] Opened {mode.value} handle for {identifier!r}")
        if mode is ConnectionMode.ISOLATED:
            return conn
        return self._track(conn, identifier)

    def factory(self, mode: Union[ConnectionMode, str], identifier: str = "") -> ConnectionFactory:
        async def connect() -> Handle:
            return await self.open(mode, identifier)

        return connect

    def open_handles(self, identifier: str) -> int:
        """Number of handles issued for `identifier` that are still open."""
        with self._lock:
            return self._open.get(identifier, 0)

    @staticmethod
    def _database_for(mode: ConnectionMode, identifier: str):
        if mode is ConnectionMode.ISOLATED:
            return ":memory:", False
        if mode is ConnectionMode.SHARED:
            if not identifier:
                raise DBConnectionError("Shared stores need a non-empty identifier", details={"mode": mode.value})
            return f"file:{quote(identifier, safe='')}?mode=memory&cache=shared", True
        if not identifier:
            raise DBConnectionError("File stores need a path identifier", details={"mode": mode.value})
        return identifier, False

    def _track(self, conn: aiosqlite.Connection, identifier: str) -> TrackedConnection:
        with self._lock:
            self._open[identifier] = self._open.get(identifier, 0) + 1
        return TrackedConnection(conn, lambda: self._release(identifier))

    def _release(self, identifier: str) -> None:
        with self._lock:
            remaining = self._open.get(identifier, 0) - 1
            if remaining <= 0:
                self._open.pop(identifier, None)
                logger.debug(f"[ConnectionProvider] Last handle for {identifier!r} closed")
            else:
                self._open[identifier] = remaining


_provider: Optional[ConnectionProvider] = None


def get_provider() -> ConnectionProvider:
    global _provider
    if _provider is None:
        _provider = ConnectionProvider()
    return _provider
