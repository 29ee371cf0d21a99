"""ORM models."""

from bonus_engine.models.base import Base, TimestampMixin, UpdatedAtMixin
from bonus_engine.models.calculation import (
    AllocationResult,
    CalculationRun,
    CompositeScore,
    ReviewEvent,
)
from bonus_engine.models.config import AllocationRule, BonusPool, WeightConfig

__all__ = [
    "AllocationResult",
    "AllocationRule",
    "Base",
    "BonusPool",
    "CalculationRun",
    "CompositeScore",
    "ReviewEvent",
    "TimestampMixin",
    "UpdatedAtMixin",
    "WeightConfig",
]
