"""
FastAPI dependencies for the dynamic position services.

Services are constructed once in the application lifespan and stored on
``app.state``; routes receive them through these accessors.
"""

from fastapi import Request

from app.modules.dynamic_positions.order_cleanup import OrphanedOrderCleaner
from app.modules.dynamic_positions.orchestrator import DynamicPositionOrchestrator
from app.modules.dynamic_positions.planner import MultiTierExecutionPlanner


def get_orchestrator(request: Request) -> DynamicPositionOrchestrator:
    return request.app.state.orchestrator


def get_planner(request: Request) -> MultiTierExecutionPlanner:
    return request.app.state.planner


def get_order_cleaner(request: Request) -> OrphanedOrderCleaner:
    return request.app.state.order_cleaner
