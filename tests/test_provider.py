"""Tests for the provider factory and shutdown guard."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from pgprovider.config import Config, ConnectionSettings, InvalidConfiguration, MissingConfiguration, Mode
from pgprovider.pooling import AsyncpgPooledSource, DuplicateSourceError
from pgprovider.provider import ConnectionProvider, ProviderFactory, create_pooling_provider

EXAMPLE = {
    "db.default.server": "h",
    "db.default.database": "d",
    "db.default.port": "5432",
    "db.default.username": "u",
    "db.default.password": "p",
    "db.readonly.maxconns": "5",
}


class _StubSource:
    def __init__(self, name: str, settings: ConnectionSettings, mode: Mode) -> None:
        self.name = name
        self.settings = settings
        self.mode = mode
        self.close_calls = 0
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.close_calls += 1
            if self.close_calls > 1:
                raise RuntimeError(f"{self.name} closed twice")


class _RecordingFactory:
    def __init__(self, fail_on: Mode | None = None) -> None:
        self.created: list[_StubSource] = []
        self._fail_on = fail_on

    def __call__(self, name: str, settings: ConnectionSettings, mode: Mode) -> _StubSource:
        if mode is self._fail_on:
            raise RuntimeError(f"cannot create {name}")
        source = _StubSource(name, settings, mode)
        self.created.append(source)
        return source


def test_example_configuration_resolves_both_modes() -> None:
    factory = _RecordingFactory()

    provider = create_pooling_provider(Config(EXAMPLE), "billing", source_factory=factory)

    readonly = provider.readonly
    readwrite = provider.readwrite
    assert readonly.name == "billing.readonly"
    assert readwrite.name == "billing.readwrite"
    assert readonly.settings.maxconns == 5
    assert readwrite.settings.maxconns == 1
    for source in (readonly, readwrite):
        assert source.settings.server == "h"
        assert source.settings.database == "d"
        assert source.settings.port == 5432
    assert provider.source(read_only=True) is readonly
    assert provider.source(read_only=False) is readwrite
    assert provider.sources == (readonly, readwrite)
    assert provider.url == "postgresql"


def test_custom_prefix_reads_its_own_tree() -> None:
    values = {key.replace("db.", "warehouse.", 1): value for key, value in EXAMPLE.items()}
    values["warehouse.readwrite.server"] = "primary"
    factory = _RecordingFactory()

    provider = ProviderFactory(factory).build(Config(values), "etl", prefix="warehouse")

    assert provider.readonly.settings.server == "h"
    assert provider.readwrite.settings.server == "primary"
    assert provider.readwrite.name == "etl.readwrite"


def test_missing_key_fails_before_any_source_is_created() -> None:
    values = dict(EXAMPLE)
    values["db.readonly.server"] = "replica"
    del values["db.default.server"]
    factory = _RecordingFactory()

    with pytest.raises(MissingConfiguration) as excinfo:
        create_pooling_provider(Config(values), "svc", source_factory=factory)

    assert excinfo.value.paths == ("db.default.server", "db.readwrite.server")
    assert factory.created == []


def test_invalid_port_fails_provider_construction() -> None:
    factory = _RecordingFactory()

    with pytest.raises(InvalidConfiguration):
        create_pooling_provider(
            Config({**EXAMPLE, "db.default.port": "notanumber"}), "svc", source_factory=factory
        )

    assert factory.created == []


def test_partially_built_sources_are_closed_on_failure() -> None:
    factory = _RecordingFactory(fail_on=Mode.READWRITE)

    with pytest.raises(RuntimeError, match="svc.readwrite"):
        create_pooling_provider(Config(EXAMPLE), "svc", source_factory=factory)

    assert [source.close_calls for source in factory.created] == [1]


def test_cleanup_failure_keeps_original_construction_error() -> None:
    class _UnclosableSource(_StubSource):
        def close(self) -> None:
            super().close()
            raise OSError("socket gone")

    class _Factory(_RecordingFactory):
        def __call__(self, name: str, settings: ConnectionSettings, mode: Mode) -> _StubSource:
            if mode is Mode.READWRITE:
                raise RuntimeError(f"cannot create {name}")
            source = _UnclosableSource(name, settings, mode)
            self.created.append(source)
            return source

    factory = _Factory()

    with pytest.raises(RuntimeError, match="cannot create svc.readwrite"):
        create_pooling_provider(Config(EXAMPLE), "svc", source_factory=factory)

    assert [source.close_calls for source in factory.created] == [1]


def test_shutdown_closes_each_source_once() -> None:
    factory = _RecordingFactory()
    provider = create_pooling_provider(Config(EXAMPLE), "svc", source_factory=factory)

    provider.shutdown()
    provider.shutdown()

    assert provider.closed is True
    assert [source.close_calls for source in factory.created] == [1, 1]


def test_concurrent_shutdown_closes_once() -> None:
    readonly = _StubSource("svc.readonly", None, Mode.READONLY)  # type: ignore[arg-type]
    readwrite = _StubSource("svc.readwrite", None, Mode.READWRITE)  # type: ignore[arg-type]
    provider = ConnectionProvider(readonly, readwrite)
    barrier = threading.Barrier(8)
    errors: list[BaseException] = []

    def _worker() -> None:
        barrier.wait()
        try:
            provider.shutdown()
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert readonly.close_calls == 1
    assert readwrite.close_calls == 1


def test_shutdown_closes_every_source_when_one_fails() -> None:
    class _BrokenSource(_StubSource):
        def close(self) -> None:
            super().close()
            raise OSError("socket gone")

    readonly = _BrokenSource("svc.readonly", None, Mode.READONLY)  # type: ignore[arg-type]
    readwrite = _StubSource("svc.readwrite", None, Mode.READWRITE)  # type: ignore[arg-type]
    provider = ConnectionProvider(readonly, readwrite)

    with pytest.raises(OSError, match="socket gone"):
        provider.shutdown()
    provider.shutdown()

    assert provider.closed is True
    assert readonly.close_calls == 1
    assert readwrite.close_calls == 1


def test_context_manager_shuts_down() -> None:
    factory = _RecordingFactory()

    with create_pooling_provider(Config(EXAMPLE), "svc", source_factory=factory) as provider:
        assert provider.closed is False

    assert provider.closed is True
    assert [source.close_calls for source in factory.created] == [1, 1]


def test_exit_hook_registers_once(monkeypatch: pytest.MonkeyPatch) -> None:
    registered: list[Any] = []
    monkeypatch.setattr("pgprovider.provider.atexit.register", registered.append)
    provider = create_pooling_provider(Config(EXAMPLE), "svc", source_factory=_RecordingFactory())

    provider.install_exit_hook()
    provider.install_exit_hook()

    assert registered == [provider.shutdown]
    provider.shutdown()
    registered[0]()
    assert all(source.close_calls == 1 for source in provider.sources)


def test_default_factory_builds_asyncpg_sources(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict[str, Any]] = []

    class _FakePool:
        async def fetchval(self, sql: str, *args: object) -> int:
            return 1

        async def close(self) -> None:
            return None

    async def _create_pool(**kwargs: Any) -> _FakePool:
        created.append(kwargs)
        return _FakePool()

    monkeypatch.setattr("pgprovider.pooling.asyncpg.create_pool", _create_pool)
    provider = create_pooling_provider(Config(EXAMPLE), "default-factory-test")

    try:
        assert isinstance(provider.readonly, AsyncpgPooledSource)
        assert provider.readonly.read_only is True
        assert provider.readwrite.read_only is False
        assert provider.readonly.max_connections == 5
        assert provider.readwrite.max_connections == 1
        with pytest.raises(DuplicateSourceError):
            create_pooling_provider(Config(EXAMPLE), "default-factory-test")
        assert provider.readwrite.fetchval("SELECT 1") == 1
    finally:
        provider.shutdown()

    assert [kwargs["max_size"] for kwargs in created] == [1]
    assert provider.readonly.closed is True
    assert provider.readwrite.closed is True
