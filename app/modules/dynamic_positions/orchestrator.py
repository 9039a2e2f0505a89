"""
Dynamic Position Orchestrator

Owns the lifecycle of the fill-detection loop and its own processing loop
(stop-loss management, then a cleanup pass), and answers read-only status
queries from the state store at any time.
"""

from typing import Any, Dict, Optional

from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.fill_detector import OrderFillDetector
from app.modules.dynamic_positions.models import ErrorSeverity, utc_now
from app.modules.dynamic_positions.repository import PositionStateStore
from app.modules.dynamic_positions.sl_manager import DynamicStopLossManager
from app.shared.exceptions import AppException, PositionNotFoundError
from app.utils.logger import get_logger
from app.utils.periodic import PeriodicTask

logger = get_logger(__name__)


class DynamicPositionOrchestrator:
    """
    Usage:
        orchestrator = DynamicPositionOrchestrator(store, detector, sl_manager, audit)
        await orchestrator.start()
        status = await orchestrator.get_system_status()
        await orchestrator.stop()
    """

    def __init__(
        self,
        store: PositionStateStore,
        fill_detector: OrderFillDetector,
        sl_manager: DynamicStopLossManager,
        audit: AuditTrail,
        cycle_interval_seconds: float = 10,
    ):
        self.store = store
        self.fill_detector = fill_detector
        self.sl_manager = sl_manager
        self.audit = audit

        self._loop = PeriodicTask("position-orchestrator", self.run_cycle, cycle_interval_seconds)
        self._running = False
        self.started_at = None
        self.last_cycle: Dict[str, Any] = {}

        logger.info("DynamicPositionOrchestrator initialized")

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== LIFECYCLE ====================

    async def start(self) -> Dict[str, Any]:
        """
        Start both loops. A call while running is a no-op.

        Loops still finishing a cycle after an emergency stop are awaited
        before new ones start.
        """
        if self._running:
            return {"started": False, "message": "Already running"}
        # Set before the first await so a concurrent call sees it
        self._running = True

        try:
            # Loops signalled by an emergency stop may still be finishing a cycle
            if self.fill_detector.is_running or self._loop.running:
                logger.info("Waiting for previous loops to finish before restarting")
                await self.fill_detector.stop()
                await self._loop.stop()
            if not self._running:
                return {"started": False, "message": "Stopped while starting"}

            state = await self.store.get_monitoring_state()
            if not self.fill_detector.start(state.settings.check_interval_seconds):
                raise AppException(
                    "Fill detector loop is already running",
                    code="MONITORING_START_FAILED",
                    status_code=409,
                )
            if not self._loop.start():
                raise AppException(
                    "Orchestrator loop is already running",
                    code="MONITORING_START_FAILED",
                    status_code=409,
                )
            await self.store.set_monitoring_active(True)
        except Exception:
            self._running = False
            self.fill_detector.request_stop()
            self._loop.request_stop()
            raise

        self.started_at = utc_now()
        logger.info("Dynamic position system started")
        return {"started": True, "message": "Dynamic position system started"}

    async def stop(self) -> Dict[str, Any]:
        """Signal both loops to end after their current iteration."""
        if not self._running and not self._loop.running and not self.fill_detector.is_running:
            return {"stopped": False, "message": "Not running"}

        self._running = False
        await self.fill_detector.stop()
        await self._loop.stop()
        await self.store.set_monitoring_active(False)

        logger.info("Dynamic position system stopped")
        return {"stopped": True, "message": "Dynamic position system stopped"}

    async def emergency_stop(self, reason: str = "Operator emergency stop") -> Dict[str, Any]:
        """
        Halt all automated mutation now.

        Clears the running flag, signals both loops without waiting for
        them, and force-writes the monitoring state to inactive.
        """
        self._running = False
        try:
            self.fill_detector.request_stop()
        except Exception as e:
            logger.error(f"Emergency stop could not signal fill detector: {str(e)}")
        self._loop.request_stop()

        await self.store.set_monitoring_active(False)
        await self.audit.record_error(
            f"Emergency stop: {reason}",
            severity=ErrorSeverity.CRITICAL,
            audit=False,
        )
        return {"stopped": True, "message": f"Emergency stop executed: {reason}"}

    # ==================== CYCLE ====================

    async def run_cycle(self) -> Dict[str, Any]:
        """Process pending fills, then count terminal positions."""
        if not self._running:
            return {"skipped": True}

        try:
            sl_summary = await self.sl_manager.process_pending_fills()
        except Exception as e:
            await self.audit.record_error(
                f"Stop-loss processing failed: {str(e)}",
                severity=ErrorSeverity.CRITICAL,
            )
            sl_summary = {"error": str(e)}

        # Terminal positions are kept as the audit trail, only counted here
        terminal = await self.store.count_terminal_positions()

        self.last_cycle = {
            "at": utc_now(),
            "stop_loss": sl_summary,
            "terminal_positions": terminal,
        }
        return self.last_cycle

    # ==================== QUERIES ====================

    async def get_system_status(self) -> Dict[str, Any]:
        state = await self.store.get_monitoring_state()
        return {
            "running": self._running,
            "monitoring_active": state.is_active,
            "started_at": self.started_at,
            "active_position_count": await self.store.count_active_positions(),
            "unprocessed_fill_count": await self.store.count_unprocessed_fills(),
            "last_check": state.last_check,
            "tracked_position_ids": state.tracked_position_ids,
            "settings": state.settings.model_dump(mode="json"),
            "fill_detector": self.fill_detector.get_status(),
            "sl_manager": self.sl_manager.get_status(),
            "last_cycle": self.last_cycle,
            "recent_errors": [e.model_dump(mode="json") for e in state.errors[-20:]],
        }

    async def get_position_details(self, position_id: Optional[str] = None) -> Dict[str, Any]:
        """
        One position with its audit log, or an overview of all active
        positions and pending fills.

        Raises:
            PositionNotFoundError: position_id given but unknown
        """
        if position_id:
            position = await self.store.get_position(position_id)
            if position is None:
                raise PositionNotFoundError(f"Position {position_id} not found")
            audit_log = await self.store.list_audit(position_id)
            return {
                "position": position.model_dump(mode="json"),
                "audit_log": [a.model_dump(mode="json") for a in audit_log],
            }

        positions = await self.store.list_active_positions()
        fills = await self.store.list_unprocessed_fills()
        return {
            "active_positions": [p.model_dump(mode="json") for p in positions],
            "unprocessed_fills": [f.model_dump(mode="json") for f in fills],
        }
