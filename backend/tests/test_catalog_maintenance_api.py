import asyncio
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from catalog_engine import CatalogEngineError
from catalog_fakes import FakeCatalogEngine, sqlite_url
from db import MaintenanceRunLock
from db.history_store import ACTION_REBUILD, ACTION_REORGANIZE, HistoryRecord, HistoryStore

_HEADERS = {"X-Maintenance-API-Key": "catalog-secret"}


def _seed(database_url: str, *records: HistoryRecord) -> None:
    async def _write() -> None:
        store = HistoryStore(database_url)
        await store.init_db()
        for record in records:
            await store.append(record)
        await store.close()

    asyncio.run(_write())


def _build_client(
    monkeypatch,
    tmp_path: Path,
    *,
    databases: Optional[Dict[str, Dict[str, Any]]] = None,
    engine: Optional[FakeCatalogEngine] = None,
    client=("testclient", 50000),
) -> TestClient:
    database_url = sqlite_url(tmp_path / "history.db")
    _seed(database_url)
    store = HistoryStore(database_url)
    engine = engine or FakeCatalogEngine(databases or {})

    monkeypatch.setenv("MAINTENANCE_API_KEY", "catalog-secret")
    monkeypatch.delenv("CATALOG_RUN_LOCK_FILE", raising=False)
    monkeypatch.delenv("CATALOG_RUN_LOCK_TIMEOUT_SEC", raising=False)
    monkeypatch.setattr(maintenance_api, "get_history_store", lambda: store)
    monkeypatch.setattr(maintenance_api, "get_catalog_engine", lambda: engine)

    app = FastAPI()
    app.include_router(maintenance_api.router)
    return TestClient(app, client=client)


def _wait_for_finished_run(client: TestClient) -> Dict[str, Any]:
    for _ in range(500):
        report = client.get("/maintenance/catalogs/last-run", headers=_HEADERS).json()
        if report.get("status") != "running":
            return report
        time.sleep(0.01)
    raise AssertionError("maintenance run did not finish")


def test_catalog_api_rejects_when_api_key_not_configured(monkeypatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        monkeypatch.delenv("MAINTENANCE_API_KEY", raising=False)
        monkeypatch.delenv("MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
        response = client.post("/maintenance/catalogs/run")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "maintenance_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_catalog_api_allows_insecure_local_override_for_loopback(monkeypatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path, client=("127.0.0.1", 50000)) as client:
        monkeypatch.delenv("MAINTENANCE_API_KEY", raising=False)
        monkeypatch.setenv("MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL", "true")
        response = client.get("/maintenance/catalogs/history")
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_catalog_api_accepts_bearer_token(monkeypatch, tmp_path: Path) -> None:
    headers = {"Authorization": "Bearer catalog-secret"}
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.get("/maintenance/catalogs/history", headers=headers)
    assert response.status_code == 200


def test_catalog_api_rejects_wrong_key(monkeypatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.get(
            "/maintenance/catalogs/history", headers={"X-Maintenance-API-Key": "nope"}
        )
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


def test_run_endpoint_maintains_queue_and_reports(monkeypatch, tmp_path: Path) -> None:
    databases = {
        "EDDS1": {"fragments": 5},
        "EDDS2": {"fragments": 15},
        "EDDS3": {"fragments": 40},
    }
    with _build_client(monkeypatch, tmp_path, databases=databases) as client:
        response = client.post(
            "/maintenance/catalogs/run",
            json={"reorg_threshold": 10, "rebuild_threshold": 30, "stop_after": 3},
            headers=_HEADERS,
        )
        assert response.status_code == 202
        run_id = response.json()["run_id"]

        payload = _wait_for_finished_run(client)
        assert payload["run_id"] == run_id
        assert payload["ok"] is True
        assert [item["database_name"] for item in payload["queue"]] == ["EDDS3", "EDDS2"]
        assert payload["succeeded"] == 2

        history = client.get(
            "/maintenance/catalogs/history",
            params={"action": ACTION_REBUILD},
            headers=_HEADERS,
        )
        assert history.status_code == 200
        assert [item["database_name"] for item in history.json()["records"]] == ["EDDS3"]


def test_run_endpoint_rejects_inverted_thresholds(monkeypatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.post(
            "/maintenance/catalogs/run",
            json={"reorg_threshold": 40, "rebuild_threshold": 30},
            headers=_HEADERS,
        )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "invalid_run_config"


def test_run_endpoint_returns_conflict_while_locked(monkeypatch, tmp_path: Path) -> None:
    database_url = sqlite_url(tmp_path / "history.db")
    with _build_client(monkeypatch, tmp_path, databases={"EDDS2": {"fragments": 15}}) as client:
        with MaintenanceRunLock(database_url):
            response = client.post("/maintenance/catalogs/run", headers=_HEADERS)
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "maintenance_run_in_progress"


def test_history_endpoint_filters_by_database(monkeypatch, tmp_path: Path) -> None:
    finished = datetime(2026, 3, 1, 23, 0, 0)
    _seed(
        sqlite_url(tmp_path / "history.db"),
        HistoryRecord("EDDS2", ACTION_REORGANIZE, finished - timedelta(minutes=4), finished, 4),
        HistoryRecord("EDDS3", ACTION_REBUILD, finished - timedelta(minutes=40), finished, 40),
    )
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.get(
            "/maintenance/catalogs/history",
            params={"database_name": "EDDS2"},
            headers=_HEADERS,
        )
        invalid = client.get(
            "/maintenance/catalogs/history",
            params={"action": "Shrink"},
            headers=_HEADERS,
        )
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["records"][0]["duration_minutes"] == 4
    assert invalid.status_code == 400


def test_run_endpoint_reports_running_until_background_run_finishes(
    monkeypatch, tmp_path: Path
) -> None:
    gate = threading.Event()
    engine = FakeCatalogEngine({"EDDS2": {"fragments": 15}}, gate=gate)
    with _build_client(monkeypatch, tmp_path, engine=engine) as client:
        response = client.post("/maintenance/catalogs/run", headers=_HEADERS)
        assert response.status_code == 202
        started = response.json()
        assert started["status"] == "running"

        running = client.get("/maintenance/catalogs/last-run", headers=_HEADERS).json()
        assert running["run_id"] == started["run_id"]
        assert running["status"] == "running"

        second = client.post("/maintenance/catalogs/run", headers=_HEADERS)
        assert second.status_code == 409

        gate.set()
        finished = _wait_for_finished_run(client)

    assert finished["run_id"] == started["run_id"]
    assert finished["status"] == "queue_exhausted"
    assert engine.maintained() == [("reorganize", "EDDS2")]


def test_run_endpoint_stores_background_failure_in_report(monkeypatch, tmp_path: Path) -> None:
    engine = FakeCatalogEngine(
        {}, list_error=CatalogEngineError("", "list_databases", "login failed")
    )
    with _build_client(monkeypatch, tmp_path, engine=engine) as client:
        response = client.post("/maintenance/catalogs/run", headers=_HEADERS)
        assert response.status_code == 202
        finished = _wait_for_finished_run(client)

        with MaintenanceRunLock(sqlite_url(tmp_path / "history.db")):
            pass

    assert finished["run_id"] == response.json()["run_id"]
    assert finished["ok"] is False
    assert finished["status"] == "failed"
    assert finished["error"] == "login failed"
