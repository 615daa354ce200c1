"""Pooled connection sources backed by asyncpg."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Protocol, TypeVar, runtime_checkable

import asyncpg

from .config import ConnectionSettings

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class PoolingError(RuntimeError):
    """Raised when a pooled source cannot serve a request."""


class PoolClosedError(PoolingError):
    """Raised when a source is used or closed after it was already closed."""


class DuplicateSourceError(PoolingError):
    """Raised when a source name is already registered in the process."""


@runtime_checkable
class PooledSource(Protocol):
    """Capability the provider needs from a connection source."""

    name: str

    def close(self) -> None:
        """Release every pooled connection; may only be called once."""


class SourceRegistry:
    """Process-wide index of source names."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: dict[str, PooledSource] = {}

    def register(self, name: str, source: PooledSource) -> None:
        with self._lock:
            if name in self._names:
                raise DuplicateSourceError(f"A source named '{name}' is already registered.")
            self._names[name] = source

    def release(self, name: str, source: PooledSource) -> None:
        with self._lock:
            if self._names.get(name) is source:
                del self._names[name]

    def lookup(self, name: str) -> PooledSource | None:
        with self._lock:
            return self._names.get(name)

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._names))


DEFAULT_REGISTRY = SourceRegistry()


class AsyncpgPooledSource:
    """Synchronous facade over an asyncpg pool.

    The pool lives on a private event loop thread and is created lazily on the
    first query, so constructing a source never touches the network.
    """

    def __init__(
        self,
        name: str,
        settings: ConnectionSettings,
        *,
        read_only: bool = False,
        connect_timeout: float = 5.0,
        registry: SourceRegistry | None = None,
    ) -> None:
        self.name = name
        self.settings = settings
        self.read_only = read_only
        self._connect_timeout = connect_timeout
        self._registry = registry or DEFAULT_REGISTRY
        self._registry.register(name, self)
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()
        self._state_lock = threading.Lock()
        self._closed = False
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name=f"pgprovider-{name}",
            daemon=True,
        )
        self._loop_thread.start()

    @property
    def max_connections(self) -> int:
        return self.settings.maxconns

    @property
    def closed(self) -> bool:
        return self._closed

    def fetch(self, sql: str, *args: object) -> list[Any]:
        return self._run(self._call("fetch", sql, *args))

    def fetchval(self, sql: str, *args: object) -> Any:
        return self._run(self._call("fetchval", sql, *args))

    def execute(self, sql: str, *args: object) -> str:
        return self._run(self._call("execute", sql, *args))

    def close(self) -> None:
        """Cancel in-flight queries, close the pool and stop the loop thread."""

        with self._state_lock:
            if self._closed:
                raise PoolClosedError(f"Source '{self.name}' is already closed.")
            self._closed = True
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop).result()
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join(timeout=1)
            if not self._loop_thread.is_alive():
                self._loop.close()
            self._registry.release(self.name, self)
        LOG.debug("Closed pooled source %s", self.name)

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        # Scheduling under the state lock orders every query before close().
        with self._state_lock:
            if self._closed:
                coro.close()
                raise PoolClosedError(f"Source '{self.name}' is closed.")
            future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result()
        except concurrent.futures.CancelledError as exc:
            raise PoolClosedError(f"Source '{self.name}' was closed while a query was running.") from exc

    async def _call(self, method: str, sql: str, *args: object) -> Any:
        pool = await self._ensure_pool()
        try:
            return await getattr(pool, method)(sql, *args)
        except Exception as exc:
            raise PoolingError(f"Query on source '{self.name}' failed: {exc}") from exc

    async def _ensure_pool(self) -> asyncpg.Pool:
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await self._create_pool()
            return self._pool

    async def _create_pool(self) -> asyncpg.Pool:
        kwargs: dict[str, object] = {
            "host": self.settings.server,
            "port": self.settings.port,
            "user": self.settings.username,
            "password": self.settings.password,
            "database": self.settings.database,
            "min_size": 0,
            "max_size": self.settings.maxconns,
            "timeout": self._connect_timeout,
        }
        if self.read_only:
            kwargs["server_settings"] = {"default_transaction_read_only": "on"}
        LOG.debug(
            "Creating pool %s for %s:%s/%s (max %d)",
            self.name,
            self.settings.server,
            self.settings.port,
            self.settings.database,
            self.settings.maxconns,
        )
        try:
            return await asyncpg.create_pool(**kwargs)
        except Exception as exc:
            raise PoolingError(f"Failed to open pool '{self.name}': {exc}") from exc

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    def __repr__(self) -> str:
        return f"AsyncpgPooledSource(name={self.name!r}, max_connections={self.max_connections})"


__all__ = [
    "AsyncpgPooledSource",
    "DEFAULT_REGISTRY",
    "DuplicateSourceError",
    "PoolClosedError",
    "PooledSource",
    "PoolingError",
    "SourceRegistry",
]
