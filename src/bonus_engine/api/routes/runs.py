"""Calculation run endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, status

from bonus_engine.api.dependencies import DbSession
from bonus_engine.api.schemas import ErrorResponse, RunCancelRequest, RunCreate, RunResponse
from bonus_engine.services.run_service import RunRequest, RunService

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post(
    "",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def submit_run(db: DbSession, payload: RunCreate) -> RunResponse:
    """Calculate a pool under a rule and persist the result batch.

    The response carries the completed run. Validation failures, lease
    conflicts and aborted runs are reported through the error handlers.
    """
    request = RunRequest(
        bonus_pool_id=payload.bonus_pool_id,
        allocation_rule_id=payload.allocation_rule_id,
        weight_config_id=payload.weight_config_id,
        requested_by=payload.requested_by,
        employees=[e.to_input() for e in payload.employees],
    )
    outcome = await RunService(db).submit_run(request)
    return RunResponse.model_validate(outcome.run)


@router.get("", response_model=list[RunResponse])
async def list_runs(
    db: DbSession,
    period: str | None = None,
    allocation_rule_id: UUID | None = None,
) -> list[RunResponse]:
    runs = await RunService(db).list_runs(period, allocation_rule_id)
    return [RunResponse.model_validate(r) for r in runs]


@router.get(
    "/{run_id}",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(db: DbSession, run_id: Annotated[UUID, Path()]) -> RunResponse:
    """Get a run with its status and failure reasons."""
    run = await RunService(db).get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Calculation run not found")
    return RunResponse.model_validate(run)


@router.post(
    "/{run_id}/cancel",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(
    db: DbSession,
    run_id: Annotated[UUID, Path()],
    payload: RunCancelRequest | None = None,
) -> RunResponse:
    """Cancel an in-flight run."""
    run = await RunService(db).cancel_run(run_id, payload.actor if payload else None)
    return RunResponse.model_validate(run)
