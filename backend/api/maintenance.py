import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from catalog_engine import SqlServerCatalogEngine, create_catalog_engine
from db import MaintenanceRunLocked, get_history_store
from db.history_store import VALID_ACTIONS
from maintenance_scheduler import RunConfig, run_state

_API_KEY_ENV = "MAINTENANCE_API_KEY"
_API_KEY_HEADER = "X-Maintenance-API-Key"
_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_api_key() -> str:
    return str(os.getenv(_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


async def require_maintenance_api_key(
    request: Request,
    x_maintenance_api_key: Optional[str] = Header(default=None, alias=_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(request):
            return
        reason = (
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": reason,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    provided = str(x_maintenance_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": "invalid_or_missing_api_key",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(
    prefix="/maintenance/catalogs",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)

_catalog_engine: Optional[SqlServerCatalogEngine] = None


def get_catalog_engine() -> SqlServerCatalogEngine:
    """Get the process-wide SQL Server catalog engine."""
    global _catalog_engine
    if _catalog_engine is None:
        _catalog_engine = create_catalog_engine()
    return _catalog_engine


async def close_catalog_engine() -> None:
    global _catalog_engine
    if _catalog_engine is not None:
        await _catalog_engine.close()
        _catalog_engine = None


class CatalogRunRequest(BaseModel):
    """Unset fields fall back to the CATALOG_* environment defaults."""

    reorg_threshold: Optional[int] = Field(default=None, ge=0)
    rebuild_threshold: Optional[int] = Field(default=None, ge=0)
    stop_after: Optional[int] = Field(default=None, ge=0)
    window_length: Optional[int] = Field(default=None, ge=0)
    months_for_avg: Optional[int] = Field(default=None, ge=0)
    max_size_ftc_in_gb: Optional[int] = Field(default=None, ge=0)

    def to_run_config(self) -> RunConfig:
        return RunConfig.from_env(
            reorg_threshold=self.reorg_threshold,
            rebuild_threshold=self.rebuild_threshold,
            stop_after=self.stop_after,
            window_minutes=self.window_length,
            history_months=self.months_for_avg,
            max_size_gb=self.max_size_ftc_in_gb,
        )


@router.post("/run", status_code=status.HTTP_202_ACCEPTED)
async def run_maintenance(payload: Optional[CatalogRunRequest] = None) -> Dict[str, Any]:
    """Start a maintenance pass in the background; poll /last-run for the report."""
    request_payload = payload or CatalogRunRequest()
    try:
        config = request_payload.to_run_config()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "invalid_run_config", "reason": str(exc)},
        )

    try:
        engine = get_catalog_engine()
        history_store = get_history_store()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "maintenance_not_configured", "reason": str(exc)},
        )

    try:
        return await run_state.start(config, engine=engine, history_store=history_store)
    except MaintenanceRunLocked as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "maintenance_run_in_progress", "reason": str(exc)},
        )


@router.get("/history")
async def get_history(
    database_name: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 50,
) -> Dict[str, Any]:
    if action is not None and action not in VALID_ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_action", "reason": f"action must be one of {list(VALID_ACTIONS)}"},
        )
    store = get_history_store()
    records = await store.list_records(
        database_name=database_name,
        action=action,
        limit=max(1, min(500, limit)),
    )
    return {"ok": True, "count": len(records), "records": records}


@router.get("/last-run")
async def get_last_run() -> Dict[str, Any]:
    report = await run_state.last()
    if report is None:
        raise HTTPException(status_code=404, detail="No maintenance run recorded in this process")
    return report
