"""Root API router: probes, service info and the versioned module routers."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine import __version__
from billing_engine.config import settings
from billing_engine.core.database import get_db
from billing_engine.core.jobs.leases import SchedulerLease
from billing_engine.modules import discover_modules


DBSession = Annotated[AsyncSession, Depends(get_db)]


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


api_router = APIRouter()

# Probes and info are served without the /api/v1 prefix
health_router = APIRouter(tags=["health"])


@health_router.get(
    "/health/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Returns 200 while the process is running.",
)
async def liveness() -> HealthResponse:
    return HealthResponse(status="alive")


@health_router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    description="Checks that the ledger database answers and carries the billing schema.",
    responses={503: {"model": ReadinessResponse}},
)
async def readiness(db: DBSession) -> JSONResponse:
    """Report each dependency as ``ok`` or the error it raised."""
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = str(e)

    if checks["database"] == "ok":
        try:
            await db.execute(select(SchedulerLease.sweep_name).limit(1))
            checks["schema"] = "ok"
        except Exception as e:
            checks["schema"] = f"missing billing tables ({type(e).__name__})"

    ready = all(v == "ok" for v in checks.values())
    body = ReadinessResponse(status="ready" if ready else "degraded", checks=checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(),
    )


@health_router.get(
    "/info",
    summary="Service info",
    description="Returns the service version and the active dunning policy.",
)
async def info() -> dict[str, Any]:
    return {
        "app": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "debug": settings.debug,
        "dunning": {
            "max_retries": settings.dunning_max_retries,
            "retry_days": settings.dunning_retry_days,
            "cancel_after_days": settings.dunning_cancel_after_days,
        },
    }


v1_router = APIRouter(prefix="/api/v1")

for module_router in discover_modules():
    v1_router.include_router(module_router)

api_router.include_router(health_router)
api_router.include_router(v1_router)
