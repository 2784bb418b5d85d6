from pathlib import Path

import pytest

from catalog_engine import (
    CatalogEngineError,
    SqlServerCatalogEngine,
    _escape_like_pattern,
    create_catalog_engine,
)
from catalog_fakes import RecordingAsyncEngine, sqlite_url
from db import MaintenanceRunLock, MaintenanceRunLocked


def test_run_lock_defaults_next_to_sqlite_file(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("CATALOG_RUN_LOCK_FILE", raising=False)
    lock = MaintenanceRunLock(sqlite_url(tmp_path / "history.db"))
    assert lock.lock_file_path == tmp_path / "history.db.run.lock"


def test_run_lock_env_override_wins(monkeypatch, tmp_path: Path) -> None:
    override = tmp_path / "custom" / "maintenance.lock"
    monkeypatch.setenv("CATALOG_RUN_LOCK_FILE", str(override))
    lock = MaintenanceRunLock(sqlite_url(tmp_path / "history.db"))
    assert lock.lock_file_path == override.resolve()


def test_run_lock_is_exclusive_and_reusable(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("CATALOG_RUN_LOCK_FILE", raising=False)
    monkeypatch.delenv("CATALOG_RUN_LOCK_TIMEOUT_SEC", raising=False)
    database_url = sqlite_url(tmp_path / "history.db")

    with MaintenanceRunLock(database_url):
        with pytest.raises(MaintenanceRunLocked):
            MaintenanceRunLock(database_url).acquire_sync()

    second = MaintenanceRunLock(database_url)
    second.acquire_sync()
    second.release_sync()


def test_like_pattern_escapes_wildcards() -> None:
    assert _escape_like_pattern("EDDS") == "EDDS"
    assert _escape_like_pattern("EDDS_%[") == "EDDS[_][%][[]"


def test_create_catalog_engine_requires_server_url(monkeypatch) -> None:
    monkeypatch.delenv("CATALOG_SERVER_URL", raising=False)
    with pytest.raises(ValueError, match="CATALOG_SERVER_URL"):
        create_catalog_engine()


def _catalog_engine(recording: RecordingAsyncEngine) -> SqlServerCatalogEngine:
    return SqlServerCatalogEngine(
        "mssql+aioodbc://catalog-host/master",
        database_prefix="EDDS",
        excluded_databases=["EDDS"],
        engine=recording,
    )


@pytest.mark.asyncio
async def test_catalog_size_is_the_largest_ftrow_file() -> None:
    recording = RecordingAsyncEngine(results={"sys.master_files": 3})
    engine = _catalog_engine(recording)

    assert await engine.catalog_size_bytes("EDDS1015") == 3 * 8192
    assert "MAX(CAST(size AS BIGINT))" in recording.statements[0]
    assert "SUM(" not in recording.statements[0]


@pytest.mark.asyncio
async def test_alter_catalog_switches_back_to_master() -> None:
    recording = RecordingAsyncEngine()
    engine = _catalog_engine(recording)

    await engine.reorganize("EDDS1015")

    assert recording.statements == [
        "USE [EDDS1015]",
        "ALTER FULLTEXT CATALOG [EDDS1015] REORGANIZE",
        "USE master",
    ]


@pytest.mark.asyncio
async def test_failed_alter_still_switches_back_to_master() -> None:
    recording = RecordingAsyncEngine(fail_on="ALTER FULLTEXT CATALOG")
    engine = _catalog_engine(recording)

    with pytest.raises(CatalogEngineError) as excinfo:
        await engine.rebuild("EDDS1015")

    assert excinfo.value.operation == "rebuild"
    assert excinfo.value.database_name == "EDDS1015"
    assert recording.statements[-1] == "USE master"
