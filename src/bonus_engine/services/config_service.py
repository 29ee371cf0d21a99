"""Versioned configuration store for weight configs, allocation rules and pools."""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_engine.calculators.types import period_end_date
from bonus_engine.calculators.validation import (
    ConfigurationError,
    ensure_valid,
    validate_allocation_rule,
    validate_pool,
    validate_weight_config,
)
from bonus_engine.models import AllocationRule, BonusPool, WeightConfig

logger = logging.getLogger(__name__)


def _effective_range_errors(effective_from: date | None, effective_to: date | None) -> list[str]:
    if effective_from is None:
        return ["effective_from is required"]
    if effective_to is not None and effective_to < effective_from:
        return ["effective_to must not be before effective_from"]
    return []


class ConfigService:
    """Validates and saves configuration, and selects the version effective for a period.

    Saves are all-or-nothing: an invalid configuration raises
    ConfigurationError with every problem found and nothing is written.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # === Weight configs ===

    async def save_weight_config(self, config: WeightConfig) -> WeightConfig:
        """Validate and persist a new weight config version."""
        errors = _effective_range_errors(config.effective_from, config.effective_to)
        try:
            errors.extend(validate_weight_config(config.to_spec()))
        except (ValueError, TypeError, ArithmeticError) as e:
            errors.append(f"Malformed weight config: {e}")
        ensure_valid(errors, "weight config")

        if config.version is None:
            config.version = await self._next_version(WeightConfig, config.code)
        self.session.add(config)
        await self.session.flush()
        logger.info("Saved weight config %s v%d", config.code, config.version)
        return config

    async def resolve_weight_config(self, weight_config_id: UUID, period: str) -> WeightConfig:
        """Return the version of this config's code effective for the period."""
        config = await self.session.get(WeightConfig, weight_config_id)
        if config is None:
            raise ConfigurationError([f"Weight config {weight_config_id} not found"], "weight config")
        effective = await self._effective_version(WeightConfig, config.code, period)
        if effective is None:
            raise ConfigurationError(
                [f"No active version of weight config '{config.code}' is effective for {period}"],
                "weight config",
            )
        return effective

    async def list_weight_configs(self, code: str | None = None) -> list[WeightConfig]:
        query = select(WeightConfig)
        if code:
            query = query.where(WeightConfig.code == code)
        result = await self.session.execute(
            query.order_by(WeightConfig.code, WeightConfig.version.desc())
        )
        return list(result.scalars().all())

    # === Allocation rules ===

    async def save_allocation_rule(self, rule: AllocationRule) -> AllocationRule:
        """Validate and persist a new allocation rule version."""
        errors = _effective_range_errors(rule.effective_from, rule.effective_to)
        try:
            errors.extend(validate_allocation_rule(rule.to_spec()))
        except (ValueError, TypeError, KeyError, ArithmeticError) as e:
            errors.append(f"Malformed allocation rule: {e}")
        ensure_valid(errors, "allocation rule")

        if rule.version is None:
            previous = await self._latest_version(AllocationRule, rule.code)
            rule.version = (previous.version + 1) if previous else 1
            if previous is not None and rule.parent_rule_id is None:
                rule.parent_rule_id = previous.allocation_rule_id
        self.session.add(rule)
        await self.session.flush()
        logger.info("Saved allocation rule %s v%d", rule.code, rule.version)
        return rule

    async def resolve_allocation_rule(self, allocation_rule_id: UUID, period: str) -> AllocationRule:
        """Return the version of this rule's code effective for the period."""
        rule = await self.session.get(AllocationRule, allocation_rule_id)
        if rule is None:
            raise ConfigurationError(
                [f"Allocation rule {allocation_rule_id} not found"], "allocation rule"
            )
        effective = await self._effective_version(AllocationRule, rule.code, period)
        if effective is None:
            raise ConfigurationError(
                [f"No active version of allocation rule '{rule.code}' is effective for {period}"],
                "allocation rule",
            )
        return effective

    async def list_allocation_rules(self, code: str | None = None) -> list[AllocationRule]:
        query = select(AllocationRule)
        if code:
            query = query.where(AllocationRule.code == code)
        result = await self.session.execute(
            query.order_by(AllocationRule.code, AllocationRule.version.desc())
        )
        return list(result.scalars().all())

    # === Pools ===

    async def save_bonus_pool(self, pool: BonusPool) -> BonusPool:
        errors = validate_pool(pool.to_spec()) if pool.total_amount is not None else [
            "Pool amount is required"
        ]
        if pool.weight_config_id is not None:
            if await self.session.get(WeightConfig, pool.weight_config_id) is None:
                errors.append(f"Weight config {pool.weight_config_id} not found")
        ensure_valid(errors, "bonus pool")
        self.session.add(pool)
        await self.session.flush()
        return pool

    async def list_bonus_pools(self, period: str | None = None) -> list[BonusPool]:
        query = select(BonusPool)
        if period:
            query = query.where(BonusPool.period == period)
        result = await self.session.execute(query.order_by(BonusPool.period, BonusPool.name))
        return list(result.scalars().all())

    # === Helpers ===

    async def _latest_version(self, model: type, code: str):
        result = await self.session.execute(
            select(model).where(model.code == code).order_by(model.version.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def _next_version(self, model: type, code: str) -> int:
        current = await self.session.scalar(
            select(func.max(model.version)).where(model.code == code)
        )
        return (current or 0) + 1

    async def _effective_version(self, model: type, code: str, period: str):
        """Highest active version whose effective range covers the period end."""
        as_of = period_end_date(period)
        result = await self.session.execute(
            select(model)
            .where(
                model.code == code,
                model.status == "active",
                model.effective_from <= as_of,
                or_(model.effective_to.is_(None), model.effective_to >= as_of),
            )
            .order_by(model.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
