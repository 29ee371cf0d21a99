"""Allocation result, review, payment and summary endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, Query, status

from bonus_engine.api.dependencies import DbSession
from bonus_engine.api.schemas import (
    AdjustRequest,
    AllocationResultResponse,
    ApproveRequest,
    BulkApproveRequest,
    BulkApproveResponse,
    CompositeScoreResponse,
    ErrorResponse,
    PaymentRequest,
    ReviewEventResponse,
    ReviewRequest,
    SummaryResponse,
)
from bonus_engine.services.query_service import QueryService
from bonus_engine.services.review_service import ReviewService

router = APIRouter(tags=["results"])

CONFLICT = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


# ============================================================================
# Queries
# ============================================================================


@router.get("/results", response_model=list[AllocationResultResponse])
async def list_results(
    db: DbSession,
    bonus_pool_id: UUID | None = None,
    allocation_rule_id: UUID | None = None,
    employee_id: str | None = None,
    period: str | None = None,
    review_status: str | None = None,
    run_id: UUID | None = None,
    latest_only: Annotated[bool, Query()] = True,
) -> list[AllocationResultResponse]:
    """Query results. Only the latest run version per pool and rule unless asked otherwise."""
    results = await QueryService(db).list_results(
        bonus_pool_id=bonus_pool_id,
        allocation_rule_id=allocation_rule_id,
        employee_id=employee_id,
        period=period,
        review_status=review_status,
        run_id=run_id,
        latest_only=latest_only,
    )
    return [AllocationResultResponse.model_validate(r) for r in results]


@router.get("/results/finalized", response_model=list[AllocationResultResponse])
async def finalized_feed(
    db: DbSession,
    period: str | None = None,
    bonus_pool_id: UUID | None = None,
) -> list[AllocationResultResponse]:
    """Read-only feed of locked and paid results."""
    results = await QueryService(db).finalized_feed(period, bonus_pool_id)
    return [AllocationResultResponse.model_validate(r) for r in results]


@router.get(
    "/results/{allocation_result_id}",
    response_model=AllocationResultResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_result(
    db: DbSession, allocation_result_id: Annotated[UUID, Path()]
) -> AllocationResultResponse:
    result = await QueryService(db).get_result(allocation_result_id)
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Allocation result not found")
    return AllocationResultResponse.model_validate(result)


@router.get(
    "/results/{allocation_result_id}/history",
    response_model=list[ReviewEventResponse],
)
async def review_history(
    db: DbSession, allocation_result_id: Annotated[UUID, Path()]
) -> list[ReviewEventResponse]:
    events = await QueryService(db).review_history(allocation_result_id)
    return [ReviewEventResponse.model_validate(e) for e in events]


@router.get("/composite-scores", response_model=list[CompositeScoreResponse])
async def list_composite_scores(
    db: DbSession,
    period: str | None = None,
    employee_id: str | None = None,
    weight_config_id: UUID | None = None,
) -> list[CompositeScoreResponse]:
    scores = await QueryService(db).list_composite_scores(period, employee_id, weight_config_id)
    return [CompositeScoreResponse.model_validate(s) for s in scores]


@router.get(
    "/bonus-pools/{bonus_pool_id}/summary",
    response_model=SummaryResponse,
    responses={404: {"model": ErrorResponse}},
)
async def pool_summary(
    db: DbSession,
    bonus_pool_id: Annotated[UUID, Path()],
    allocation_rule_id: UUID | None = None,
) -> SummaryResponse:
    """Aggregate summary derived from the pool's latest results."""
    summary = await QueryService(db).pool_summary(bonus_pool_id, allocation_rule_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bonus pool not found")
    return SummaryResponse(**summary.to_dict())


# ============================================================================
# Review actions
# ============================================================================


@router.post(
    "/results/{allocation_result_id}/approve",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def approve_result(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: ApproveRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).approve(
        allocation_result_id,
        actor=payload.actor,
        comments=payload.comments,
        acknowledge_anomalies=payload.acknowledge_anomalies,
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/reject",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def reject_result(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: ReviewRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).reject(
        allocation_result_id, actor=payload.actor, comments=payload.comments
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/adjust",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def adjust_result(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: AdjustRequest,
) -> AllocationResultResponse:
    if payload.new_score is None and payload.new_amount is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="An adjustment needs new_score or new_amount",
        )
    result = await ReviewService(db).adjust(
        allocation_result_id,
        actor=payload.actor,
        comments=payload.comments,
        new_score=payload.new_score,
        new_amount=payload.new_amount,
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/resubmit",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def resubmit_result(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: ReviewRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).resubmit(
        allocation_result_id, actor=payload.actor, comments=payload.comments
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/lock",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def lock_result(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: ReviewRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).lock(
        allocation_result_id, actor=payload.actor, comments=payload.comments
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post("/results/bulk-approve", response_model=BulkApproveResponse)
async def bulk_approve(db: DbSession, payload: BulkApproveRequest) -> BulkApproveResponse:
    """Approve pending, non-anomalous results. Everything else is reported as skipped."""
    outcome = await ReviewService(db).bulk_approve(
        payload.allocation_result_ids, actor=payload.actor, comments=payload.comments
    )
    await db.commit()
    return BulkApproveResponse(
        approved=outcome.approved,
        unchanged=outcome.unchanged,
        skipped={str(k): v for k, v in outcome.skipped.items()},
    )


# ============================================================================
# Payment actions
# ============================================================================


@router.post(
    "/results/{allocation_result_id}/payment/submit",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def submit_payment(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: PaymentRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).submit_payment(
        allocation_result_id, actor=payload.actor, payment_reference=payload.payment_reference
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/payment/settle",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def settle_payment(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: PaymentRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).settle_payment(
        allocation_result_id,
        actor=payload.actor,
        payment_date=payload.payment_date,
        payment_reference=payload.payment_reference,
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/payment/fail",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def fail_payment(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: PaymentRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).fail_payment(
        allocation_result_id, actor=payload.actor, reason=payload.reason
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)


@router.post(
    "/results/{allocation_result_id}/payment/cancel",
    response_model=AllocationResultResponse,
    responses=CONFLICT,
)
async def cancel_payment(
    db: DbSession,
    allocation_result_id: Annotated[UUID, Path()],
    payload: PaymentRequest,
) -> AllocationResultResponse:
    result = await ReviewService(db).cancel_payment(
        allocation_result_id, actor=payload.actor, reason=payload.reason
    )
    await db.commit()
    return AllocationResultResponse.model_validate(result)
