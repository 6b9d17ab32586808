"""Health Check Routes."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from weightvault import __version__

from vault_api.dependencies import CoordinatorDep, DatabaseDep, StorageDep

router = APIRouter()

ComponentStatus = Literal["ok", "degraded", "error"]
OverallStatus = Literal["healthy", "degraded", "unhealthy"]


class ComponentHealth(BaseModel):
    status: ComponentStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None


class ReadinessReport(BaseModel):
    status: OverallStatus
    version: str
    components: Dict[str, ComponentHealth]
    checked_at: datetime


async def _timed(check) -> ComponentHealth:
    start = time.perf_counter()
    try:
        message = await check()
    except Exception as e:
        return ComponentHealth(status="error", message=f"{type(e).__name__}: {e}")
    return ComponentHealth(
        status="ok",
        latency_ms=round((time.perf_counter() - start) * 1000, 2),
        message=message,
    )


@router.get("")
async def health_check() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


@router.get("/ready", response_model=ReadinessReport)
async def readiness_check(database: DatabaseDep, coordinator: CoordinatorDep, storage: StorageDep):
    """
    Database and artifact store must answer.

    A missing accelerator only degrades the service: compression still runs
    on the sequential backend.
    """
    async def ping_database():
        await database.ping()
        return None

    async def ping_store():
        await storage.store.exists("__readiness__")
        return type(storage.store).__name__

    components = {
        "database": await _timed(ping_database),
        "artifact_store": await _timed(ping_store),
    }

    caps = await asyncio.to_thread(coordinator.capabilities)
    components["parallel_backend"] = (
        ComponentHealth(status="ok", message=caps["device"]) if caps["parallel"]
        else ComponentHealth(status="degraded", message=caps["probe_error"])
    )

    statuses = {c.status for c in components.values()}
    overall: OverallStatus = (
        "unhealthy" if "error" in statuses
        else "degraded" if "degraded" in statuses
        else "healthy"
    )
    return ReadinessReport(
        status=overall,
        version=__version__,
        components=components,
        checked_at=datetime.now(timezone.utc),
    )


@router.get("/capabilities")
async def capabilities(coordinator: CoordinatorDep) -> Dict[str, Any]:
    """Backend availability as found by the one-shot device probe."""
    return await asyncio.to_thread(coordinator.capabilities)
