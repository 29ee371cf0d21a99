"""Weight config, allocation rule and bonus pool endpoints."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, status
from pydantic import BaseModel

from bonus_engine.api.dependencies import DbSession
from bonus_engine.api.schemas import (
    AllocationRuleCreate,
    AllocationRuleResponse,
    BonusPoolCreate,
    BonusPoolResponse,
    ErrorResponse,
    WeightConfigCreate,
    WeightConfigResponse,
)
from bonus_engine.models import AllocationRule, BonusPool, WeightConfig
from bonus_engine.services.config_service import ConfigService

router = APIRouter(tags=["configuration"])

WEIGHT_CONFIG_JSON_FIELDS = ("adjustments",)
RULE_JSON_FIELDS = (
    "tier_config",
    "position_level_weights",
    "department_weights",
    "special_rules",
    "pool_groups",
    "fixed_amounts",
    "applicability",
)


def _column_values(payload: BaseModel, json_fields: tuple[str, ...]) -> dict[str, Any]:
    """Model fields as column values; JSON columns get JSON-safe content."""
    values = payload.model_dump()
    json_values = payload.model_dump(mode="json")
    for name in json_fields:
        values[name] = json_values[name]
    return values


# ============================================================================
# Weight configs
# ============================================================================


@router.post(
    "/weight-configs",
    response_model=WeightConfigResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_weight_config(db: DbSession, payload: WeightConfigCreate) -> WeightConfigResponse:
    """Save a new weight config version."""
    config = WeightConfig(**_column_values(payload, WEIGHT_CONFIG_JSON_FIELDS))
    await ConfigService(db).save_weight_config(config)
    await db.commit()
    return WeightConfigResponse.model_validate(config)


@router.get("/weight-configs", response_model=list[WeightConfigResponse])
async def list_weight_configs(db: DbSession, code: str | None = None) -> list[WeightConfigResponse]:
    configs = await ConfigService(db).list_weight_configs(code)
    return [WeightConfigResponse.model_validate(c) for c in configs]


@router.get(
    "/weight-configs/{weight_config_id}",
    response_model=WeightConfigResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_weight_config(
    db: DbSession, weight_config_id: Annotated[UUID, Path()]
) -> WeightConfigResponse:
    config = await db.get(WeightConfig, weight_config_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Weight config not found")
    return WeightConfigResponse.model_validate(config)


# ============================================================================
# Allocation rules
# ============================================================================


@router.post(
    "/allocation-rules",
    response_model=AllocationRuleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_allocation_rule(
    db: DbSession, payload: AllocationRuleCreate
) -> AllocationRuleResponse:
    """Save a new allocation rule version."""
    rule = AllocationRule(**_column_values(payload, RULE_JSON_FIELDS))
    await ConfigService(db).save_allocation_rule(rule)
    await db.commit()
    return AllocationRuleResponse.model_validate(rule)


@router.get("/allocation-rules", response_model=list[AllocationRuleResponse])
async def list_allocation_rules(
    db: DbSession, code: str | None = None
) -> list[AllocationRuleResponse]:
    rules = await ConfigService(db).list_allocation_rules(code)
    return [AllocationRuleResponse.model_validate(r) for r in rules]


@router.get(
    "/allocation-rules/{allocation_rule_id}",
    response_model=AllocationRuleResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_allocation_rule(
    db: DbSession, allocation_rule_id: Annotated[UUID, Path()]
) -> AllocationRuleResponse:
    rule = await db.get(AllocationRule, allocation_rule_id)
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Allocation rule not found")
    return AllocationRuleResponse.model_validate(rule)


# ============================================================================
# Bonus pools
# ============================================================================


@router.post(
    "/bonus-pools",
    response_model=BonusPoolResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_bonus_pool(db: DbSession, payload: BonusPoolCreate) -> BonusPoolResponse:
    pool = BonusPool(**payload.model_dump())
    await ConfigService(db).save_bonus_pool(pool)
    await db.commit()
    await db.refresh(pool)
    return BonusPoolResponse.model_validate(pool)


@router.get("/bonus-pools", response_model=list[BonusPoolResponse])
async def list_bonus_pools(db: DbSession, period: str | None = None) -> list[BonusPoolResponse]:
    pools = await ConfigService(db).list_bonus_pools(period)
    return [BonusPoolResponse.model_validate(p) for p in pools]


@router.get(
    "/bonus-pools/{bonus_pool_id}",
    response_model=BonusPoolResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_bonus_pool(
    db: DbSession, bonus_pool_id: Annotated[UUID, Path()]
) -> BonusPoolResponse:
    pool = await db.get(BonusPool, bonus_pool_id)
    if not pool:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bonus pool not found")
    return BonusPoolResponse.model_validate(pool)
