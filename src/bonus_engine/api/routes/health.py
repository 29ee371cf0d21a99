"""Health, readiness and liveness endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from bonus_engine.api.dependencies import DbSession
from bonus_engine.config import get_settings
from bonus_engine.models import CalculationRun
from bonus_engine.services.state_machine import RunStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Service health with the number of calculation runs holding a lease."""

    status: str
    timestamp: datetime
    database: str
    engine_version: str
    runs_in_flight: int | None = None


async def _runs_in_flight(db: DbSession) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(CalculationRun)
        .where(CalculationRun.status == RunStatus.RUNNING.value)
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession) -> HealthResponse:
    """Check the calculation run table is reachable and count in-flight runs."""
    in_flight = None
    try:
        in_flight = await _runs_in_flight(db)
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)

    healthy = in_flight is not None
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy" if healthy else "unhealthy",
        engine_version=get_settings().engine_version,
        runs_in_flight=in_flight,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(db: DbSession):
    """Ready once the schema exists, so runs can take their lease."""
    try:
        await _runs_in_flight(db)
    except SQLAlchemyError:
        logger.warning("Schema not ready", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready"},
        )
    return {"status": "ready"}


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
