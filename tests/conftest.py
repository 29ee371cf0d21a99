"""Pytest fixtures for bonus engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from bonus_engine.calculators.types import (
    AllocationMethod,
    AllocationRuleSpec,
    EmployeeInput,
    PoolSpec,
    WeightConfigSpec,
)
from bonus_engine.database import make_session_factory
from bonus_engine.models import AllocationRule, Base, BonusPool, WeightConfig

PERIOD = "2025-Q4"


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database per test so several sessions can share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bonus.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Pure-engine helpers
# ============================================================================


def employee(
    employee_id: str,
    profit: str | None,
    position: str | None,
    performance: str | None,
    **kwargs: Any,
) -> EmployeeInput:
    kwargs.setdefault("work_months", 24)
    return EmployeeInput(
        employee_id=employee_id,
        profit_contribution=Decimal(profit) if profit is not None else None,
        position_value=Decimal(position) if position is not None else None,
        performance=Decimal(performance) if performance is not None else None,
        **kwargs,
    )


def weight_spec(**kwargs: Any) -> WeightConfigSpec:
    values = {
        "profit_weight": Decimal("0.4"),
        "position_weight": Decimal("0.3"),
        "performance_weight": Decimal("0.3"),
    }
    values.update(kwargs)
    return WeightConfigSpec(**values)


def rule_spec(**kwargs: Any) -> AllocationRuleSpec:
    values: dict[str, Any] = {
        "name": "standard",
        "allocation_method": AllocationMethod.SCORE_BASED,
        "reserve_ratio": Decimal("0"),
    }
    values.update(kwargs)
    return AllocationRuleSpec(**values)


def pool_spec(amount: str = "100000", period: str = PERIOD) -> PoolSpec:
    return PoolSpec(pool_id="pool-1", period=period, total_amount=Decimal(amount))


@pytest.fixture
def cohort() -> list[EmployeeInput]:
    """Four employees across two departments with distinct scores."""
    return [
        employee("E1", "8", "6", "9", department_id="sales", position_level="senior"),
        employee("E2", "5", "5", "5", department_id="sales", position_level="junior"),
        employee("E3", "7", "8", "6", department_id="ops", position_level="senior"),
        employee("E4", "3", "4", "2", department_id="ops", position_level="junior"),
    ]


# ============================================================================
# Persisted configuration
# ============================================================================


@pytest_asyncio.fixture
async def weight_config(session: AsyncSession) -> WeightConfig:
    config = WeightConfig(
        code="default",
        name="Default weights",
        version=1,
        status="active",
        profit_weight=Decimal("0.4"),
        position_weight=Decimal("0.3"),
        performance_weight=Decimal("0.3"),
        normalization_method="min_max",
        calculation_method="weighted_sum",
        scale_lower=Decimal("0"),
        scale_upper=Decimal("1"),
        effective_from=date(2025, 1, 1),
    )
    session.add(config)
    await session.commit()
    return config


@pytest_asyncio.fixture
async def allocation_rule(session: AsyncSession) -> AllocationRule:
    rule = AllocationRule(
        code="standard",
        name="Standard",
        version=1,
        status="active",
        allocation_method="score_based",
        base_allocation_ratio=Decimal("0.8"),
        performance_allocation_ratio=Decimal("0.2"),
        score_distribution_method="linear",
        min_score_threshold=Decimal("0"),
        max_score_multiplier=Decimal("3"),
        total_allocation_limit=Decimal("1"),
        reserve_ratio=Decimal("0"),
        rounding_method="round",
        calculation_precision=2,
        effective_from=date(2025, 1, 1),
    )
    session.add(rule)
    await session.commit()
    return rule


@pytest_asyncio.fixture
async def bonus_pool(session: AsyncSession, weight_config: WeightConfig) -> BonusPool:
    pool = BonusPool(
        name="Q4 bonus",
        period=PERIOD,
        total_amount=Decimal("100000"),
        weight_config_id=weight_config.weight_config_id,
        status="active",
    )
    session.add(pool)
    await session.commit()
    return pool
