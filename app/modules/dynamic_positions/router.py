"""
Dynamic positions module router.

Read APIs and operator controls for the dynamic position system.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, status
from pydantic import ValidationError as PydanticValidationError

from app.core.responses import error_json_response, success_response
from app.modules.dynamic_positions.dependencies import (
    get_orchestrator,
    get_order_cleaner,
    get_planner,
)
from app.modules.dynamic_positions.order_cleanup import OrphanedOrderCleaner
from app.modules.dynamic_positions.orchestrator import DynamicPositionOrchestrator
from app.modules.dynamic_positions.planner import MultiTierExecutionPlanner
from app.modules.dynamic_positions.schemas import (
    CleanupOrphansRequest,
    EmergencyStopRequest,
    OpenPositionRequest,
)
from app.shared.exceptions import (
    AppException,
    CriticalExecutionError,
    PartialExecutionError,
    PositionNotFoundError,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/dynamic-positions", tags=["Dynamic Positions"])


@router.get(
    "/status",
    status_code=status.HTTP_200_OK,
    response_description="System status retrieved successfully"
)
async def get_system_status(
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """
    Get system status.

    Running flag, position and pending-fill counts, last detection time,
    component status and the most recent buffered errors. Available while
    the system is stopped.
    """
    data = await orchestrator.get_system_status()
    return success_response(
        status_code=status.HTTP_200_OK,
        message="System status retrieved successfully",
        data=data
    )


@router.get(
    "/positions",
    status_code=status.HTTP_200_OK,
    response_description="Active positions retrieved successfully"
)
async def list_positions(
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """List active positions and unprocessed fills."""
    data = await orchestrator.get_position_details()
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Active positions retrieved successfully",
        data=data
    )


@router.get(
    "/positions/{position_id}",
    status_code=status.HTTP_200_OK,
    response_description="Position retrieved successfully"
)
async def get_position(
    position_id: str,
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """Get one position with its audit log."""
    try:
        data = await orchestrator.get_position_details(position_id)
    except PositionNotFoundError as e:
        logger.warning(f"Position lookup failed: {e.message}")
        return error_json_response(
            status_code=e.status_code,
            message="Position not found",
            error_code=e.code,
            error_message=e.message
        )

    return success_response(
        status_code=status.HTTP_200_OK,
        message="Position retrieved successfully",
        data=data
    )


@router.post(
    "/positions",
    status_code=status.HTTP_201_CREATED,
    response_description="Position opened successfully"
)
async def open_position(
    request: OpenPositionRequest,
    planner: MultiTierExecutionPlanner = Depends(get_planner)
):
    """
    Open a position from a trade recommendation.

    Places the market entry, the take-profit tier(s) and the stop. If a
    conditional order fails, the placed ones are rolled back and an
    emergency stop protects the position; the response then carries the
    rollback results.
    """
    try:
        recommendation = request.to_recommendation()
        sizing = request.to_sizing()
    except PydanticValidationError as e:
        return error_json_response(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            message="Invalid trade recommendation",
            error_code="VALIDATION_ERROR",
            error_message=str(e)
        )

    try:
        result = await planner.place_multi_tier_position(recommendation, sizing)
    except PartialExecutionError as e:
        return error_json_response(
            status_code=e.status_code,
            message="Position opened but protective orders were rolled back",
            error_code=e.code,
            error_message=e.message,
            data={
                "position_id": e.position_id,
                "emergency_stop_order_id": e.emergency_stop_order_id,
                "rollback_results": [r.model_dump() for r in e.rollback_results],
            }
        )
    except CriticalExecutionError as e:
        return error_json_response(
            status_code=e.status_code,
            message="Position may be unprotected",
            error_code=e.code,
            error_message=e.message,
            data={
                "position_id": e.position_id,
                "rollback_results": [r.model_dump() for r in e.rollback_results],
                **e.details,
            }
        )
    except AppException as e:
        logger.warning(f"Position not opened for {recommendation.contract}: {e.message}")
        return error_json_response(
            status_code=e.status_code,
            message="Position not opened",
            error_code=e.code,
            error_message=e.message
        )

    return success_response(
        status_code=status.HTTP_201_CREATED,
        message="Position opened successfully",
        data=result.model_dump(mode="json")
    )


@router.post(
    "/start",
    status_code=status.HTTP_200_OK,
    response_description="Monitoring started"
)
async def start_monitoring(
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """Start fill detection and stop-loss management. No-op if running."""
    data = await orchestrator.start()
    return success_response(
        status_code=status.HTTP_200_OK,
        message=data["message"],
        data=data
    )


@router.post(
    "/stop",
    status_code=status.HTTP_200_OK,
    response_description="Monitoring stopped"
)
async def stop_monitoring(
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """Stop both loops after their current iteration."""
    data = await orchestrator.stop()
    return success_response(
        status_code=status.HTTP_200_OK,
        message=data["message"],
        data=data
    )


@router.post(
    "/emergency-stop",
    status_code=status.HTTP_200_OK,
    response_description="Emergency stop executed"
)
async def emergency_stop(
    request: Optional[EmergencyStopRequest] = Body(default=None),
    orchestrator: DynamicPositionOrchestrator = Depends(get_orchestrator)
):
    """Halt all automated mutation immediately."""
    reason = request.reason if request and request.reason else "Operator emergency stop"
    data = await orchestrator.emergency_stop(reason)
    return success_response(
        status_code=status.HTTP_200_OK,
        message=data["message"],
        data=data
    )


@router.post(
    "/cleanup-orphans",
    status_code=status.HTTP_200_OK,
    response_description="Orphaned orders cleaned up"
)
async def cleanup_orphans(
    request: Optional[CleanupOrphansRequest] = Body(default=None),
    cleaner: OrphanedOrderCleaner = Depends(get_order_cleaner)
):
    """Cancel open conditional orders on contracts without a position."""
    request = request or CleanupOrphansRequest()
    try:
        data = await cleaner.cleanup_orphaned_orders(request.credential_ref, request.settle)
    except AppException as e:
        logger.error(f"Orphan cleanup failed: {e.message}")
        return error_json_response(
            status_code=e.status_code,
            message="Orphan cleanup failed",
            error_code=e.code,
            error_message=e.message
        )

    return success_response(
        status_code=status.HTTP_200_OK,
        message=data["message"],
        data=data
    )
