"""Bonus calculation engine."""

from bonus_engine.calculators.engine import (
    BonusEngine,
    CalculationContext,
    EngineConfig,
    EngineRunResult,
)
from bonus_engine.calculators.validation import ConfigurationError

__all__ = [
    "BonusEngine",
    "CalculationContext",
    "ConfigurationError",
    "EngineConfig",
    "EngineRunResult",
]
