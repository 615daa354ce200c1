"""Build read-only/read-write connection providers from configuration."""

from __future__ import annotations

import atexit
import logging
import threading
from typing import Callable

from .config import Config, ConnectionSettings, Mode, resolve_settings
from .pooling import AsyncpgPooledSource, PooledSource

LOG = logging.getLogger(__name__)

SourceFactory = Callable[[str, ConnectionSettings, Mode], PooledSource]


def asyncpg_source_factory(name: str, settings: ConnectionSettings, mode: Mode) -> PooledSource:
    """Default factory: one asyncpg-backed pool per mode."""

    return AsyncpgPooledSource(name, settings, read_only=mode is Mode.READONLY)


class ConnectionProvider:
    """Owns the readonly and readwrite sources; shuts them down exactly once."""

    url = "postgresql"

    def __init__(self, readonly: PooledSource, readwrite: PooledSource) -> None:
        self._readonly = readonly
        self._readwrite = readwrite
        self._shutdown_lock = threading.Lock()
        self._shutdown = False
        self._exit_hook_installed = False

    @property
    def readonly(self) -> PooledSource:
        return self._readonly

    @property
    def readwrite(self) -> PooledSource:
        return self._readwrite

    @property
    def sources(self) -> tuple[PooledSource, PooledSource]:
        return (self._readonly, self._readwrite)

    @property
    def closed(self) -> bool:
        return self._shutdown

    def source(self, read_only: bool) -> PooledSource:
        """Return the source serving the requested mode."""

        return self._readonly if read_only else self._readwrite

    def shutdown(self) -> None:
        """Close both sources; later and concurrent calls do nothing."""

        with self._shutdown_lock:
            if self._shutdown:
                return
            self._shutdown = True
        LOG.info("Shutting down connection provider (%s)", ", ".join(s.name for s in self.sources))
        failure: Exception | None = None
        for source in self.sources:
            try:
                source.close()
            except Exception as exc:
                LOG.warning("Failed to close source %s: %s", source.name, exc)
                failure = failure or exc
        if failure is not None:
            raise failure

    def install_exit_hook(self) -> None:
        """Also run shutdown() when the interpreter exits."""

        if not self._exit_hook_installed:
            atexit.register(self.shutdown)
            self._exit_hook_installed = True

    def __enter__(self) -> ConnectionProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


class ProviderFactory:
    """Creates providers whose source names are `<process_id>.<mode>`."""

    def __init__(self, source_factory: SourceFactory | None = None) -> None:
        self._source_factory = source_factory or asyncpg_source_factory

    def build(self, config: Config, process_id: str, prefix: str = "db") -> ConnectionProvider:
        settings = {mode: resolve_settings(config, prefix, mode) for mode in Mode}
        for mode, resolved in settings.items():
            LOG.debug(
                "Resolved %s.%s: %s@%s:%d/%s maxconns=%d",
                prefix,
                mode,
                resolved.username,
                resolved.server,
                resolved.port,
                resolved.database,
                resolved.maxconns,
            )

        created: list[PooledSource] = []
        try:
            for mode in Mode:
                created.append(self._source_factory(f"{process_id}.{mode}", settings[mode], mode))
        except Exception:
            for source in created:
                try:
                    source.close()
                except Exception as exc:
                    LOG.warning("Failed to close partially built source %s: %s", source.name, exc)
            raise
        readonly, readwrite = created
        return ConnectionProvider(readonly, readwrite)


def create_pooling_provider(
    config: Config,
    process_id: str,
    prefix: str = "db",
    *,
    source_factory: SourceFactory | None = None,
) -> ConnectionProvider:
    """Create a provider reading `<prefix>.default` and per-mode overrides.

    ``config`` must supply ``server``, ``port``, ``database``, ``username`` and
    ``password`` under ``<prefix>.default`` or under ``<prefix>.readonly`` /
    ``<prefix>.readwrite``; ``maxconns`` defaults to 1. ``process_id`` prefixes
    the source names, which are global to the process.
    """

    return ProviderFactory(source_factory).build(config, process_id, prefix)


__all__ = [
    "ConnectionProvider",
    "ProviderFactory",
    "SourceFactory",
    "asyncpg_source_factory",
    "create_pooling_provider",
]
