from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import FastAPI
from contextlib import asynccontextmanager
from api import maintenance_router
from api.maintenance import close_catalog_engine
from db import get_history_store, close_history_store
from maintenance_scheduler import run_state


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("Catalog Maintenance API starting...")

    try:
        history_store = get_history_store()
        await history_store.init_db()
        print("History store initialized.")
    except Exception as e:
        print(f"Failed to initialize history store: {e}")
        raise RuntimeError("Failed to initialize history store during startup") from e

    yield

    await run_state.shutdown()
    print("Closing database connections...")
    await close_catalog_engine()
    await close_history_store()


app = FastAPI(
    title="Catalog Maintenance API",
    description="Full-text catalog defragmentation scheduler",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Catalog Maintenance API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        recent = await get_history_store().list_records(limit=1)
        payload["history"] = {
            "available": True,
            "latest_finish_time": recent[0]["finish_time"] if recent else None,
        }
    except Exception as e:
        payload["status"] = "degraded"
        payload["history"] = {"available": False, "reason": str(e)}

    last_report = await run_state.last()
    payload["last_run"] = (
        {
            "status": last_report.get("status"),
            "run_id": last_report.get("run_id"),
            "run_start": last_report.get("run_start"),
            "finished_at": last_report.get("finished_at"),
        }
        if last_report
        else None
    )
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
