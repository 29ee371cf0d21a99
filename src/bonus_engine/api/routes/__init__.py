"""API routes."""

from bonus_engine.api.routes.configs import router as configs_router
from bonus_engine.api.routes.health import router as health_router
from bonus_engine.api.routes.results import router as results_router
from bonus_engine.api.routes.runs import router as runs_router

__all__ = ["configs_router", "health_router", "results_router", "runs_router"]
