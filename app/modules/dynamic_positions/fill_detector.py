"""
Order Fill Detector

Polls the exchange for finished conditional orders and journals exactly
one fill event per order id.

Per cycle:
1. Load non-terminal positions and record them as tracked
2. Group them by (credential_ref, settle)
3. Per group, fetch open and finished trigger orders (and positions) once
4. Match each position's pending order ids against succeeded orders
5. Journal new fills with an audit entry, in one transaction
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.schemas import TriggerOrder, TriggerOrderStatus
from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.models import (
    FILL_AUDIT_ACTIONS,
    ActionAudit,
    ErrorSeverity,
    FillType,
    OrderFillEvent,
    PositionState,
    utc_now,
)
from app.modules.dynamic_positions.repository import (
    DuplicateFillEventError,
    PositionStateStore,
)
from app.utils.logger import get_logger
from app.utils.periodic import PeriodicTask

logger = get_logger(__name__)

MANUAL_CLOSE_PREFIX = "manual-close-"


class OrderFillDetector:
    """
    Fill detector with its own polling loop.

    Usage:
        detector = OrderFillDetector(store, factory, audit, check_interval_seconds=30)
        detector.start()
        summary = await detector.run_cycle()  # one-shot
        await detector.stop()
    """

    def __init__(
        self,
        store: PositionStateStore,
        exchange_factory: ExchangeFactory,
        audit: AuditTrail,
        check_interval_seconds: float = 30,
    ):
        self.store = store
        self.exchange_factory = exchange_factory
        self.audit = audit

        self._loop = PeriodicTask("fill-detector", self.run_cycle, check_interval_seconds)
        self.last_cycle_at: Optional[datetime] = None
        self.last_summary: Dict[str, Any] = {}
        self.total_fills_detected = 0

        logger.info("OrderFillDetector initialized")

    # ==================== LIFECYCLE ====================

    @property
    def is_running(self) -> bool:
        return self._loop.running

    def start(self, check_interval_seconds: Optional[float] = None) -> bool:
        if check_interval_seconds:
            self._loop.interval_seconds = check_interval_seconds
        return self._loop.start()

    def request_stop(self) -> None:
        self._loop.request_stop()

    async def stop(self) -> None:
        await self._loop.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "check_interval_seconds": self._loop.interval_seconds,
            "cycles": self._loop.iterations,
            "last_cycle_at": self.last_cycle_at,
            "total_fills_detected": self.total_fills_detected,
            "last_summary": self.last_summary,
        }

    # ==================== CYCLE ====================

    async def run_cycle(self) -> Dict[str, Any]:
        """
        Run one detection pass over every tracked position.

        Returns:
            Dict with positions_checked, groups, groups_failed, fills_detected
        """
        positions = await self.store.list_active_positions()
        await self.store.record_check([p.id for p in positions])

        groups: Dict[Tuple[str, str], List[PositionState]] = defaultdict(list)
        for position in positions:
            groups[position.group_key].append(position)

        fills_detected = 0
        groups_failed = 0
        for (credential_ref, settle), group in groups.items():
            try:
                client = self.exchange_factory.get_client(credential_ref, settle)
                fills_detected += await self._check_group(client, group)
            except Exception as e:
                groups_failed += 1
                logger.error(f"Fill detection failed for {credential_ref}:{settle}: {str(e)}")
                for position in group:
                    await self.audit.record_error(
                        f"Fill detection failed: {str(e)}",
                        severity=ErrorSeverity.ERROR,
                        position_id=position.id,
                        context={"credential_ref": credential_ref, "settle": settle},
                    )

        self.last_cycle_at = utc_now()
        self.total_fills_detected += fills_detected
        self.last_summary = {
            "positions_checked": len(positions),
            "groups": len(groups),
            "groups_failed": groups_failed,
            "fills_detected": fills_detected,
        }
        if fills_detected or groups_failed:
            logger.info(f"Fill detection cycle: {self.last_summary}")
        return self.last_summary

    async def _check_group(self, client: ExchangeClient, positions: List[PositionState]) -> int:
        open_orders = await client.list_trigger_orders(TriggerOrderStatus.OPEN)
        finished_orders = await client.list_trigger_orders(TriggerOrderStatus.FINISHED)
        exchange_positions = await client.list_positions()

        open_ids: Set[str] = {o.id for o in open_orders}
        # Cancelled or expired orders never count as fills
        filled: Dict[str, TriggerOrder] = {
            o.id: o for o in finished_orders if o.succeeded and o.id not in open_ids
        }
        open_contracts = {p.contract for p in exchange_positions if p.is_open}

        fills = 0
        for position in positions:
            matched = False
            for order_id, fill_type in position.pending_orders():
                order = filled.get(order_id)
                if order is None:
                    continue
                matched = True
                if await self._record_fill(position, order, fill_type):
                    fills += 1

            if (
                not matched
                and position.contract not in open_contracts
                and not await self.store.has_unprocessed_fills(position.id)
            ):
                if await self._record_manual_close(client, position):
                    fills += 1
        return fills

    async def _record_fill(
        self,
        position: PositionState,
        order: TriggerOrder,
        fill_type: FillType,
    ) -> bool:
        if await self.store.get_fill_event(order.id) is not None:
            return False

        event = OrderFillEvent(
            order_id=order.id,
            position_id=position.id,
            contract=position.contract,
            fill_type=fill_type,
            fill_size=position.fill_size_for(fill_type),
            fill_price=order.trigger_price,
            fill_time=order.finish_time or utc_now(),
        )
        return await self._journal(event)

    async def _record_manual_close(self, client: ExchangeClient, position: PositionState) -> bool:
        """The exchange is flat but none of the position's orders filled."""
        order_id = f"{MANUAL_CLOSE_PREFIX}{position.id}"
        if await self.store.get_fill_event(order_id) is not None:
            return False

        spec = await client.get_contract_spec(position.contract)
        logger.warning(
            f"Position {position.id} ({position.contract}) closed outside the system; "
            f"recording manual fill of {position.remaining_size} @ {spec.last_price}"
        )
        event = OrderFillEvent(
            order_id=order_id,
            position_id=position.id,
            contract=position.contract,
            fill_type=FillType.MANUAL,
            fill_size=position.remaining_size,
            fill_price=spec.last_price,
        )
        return await self._journal(event)

    async def _journal(self, event: OrderFillEvent) -> bool:
        """Write the fill and its audit together. False if already journaled."""
        audit = ActionAudit(
            position_id=event.position_id,
            action=FILL_AUDIT_ACTIONS[event.fill_type],
            details={
                "order_id": event.order_id,
                "fill_size": event.fill_size,
                "fill_price": str(event.fill_price),
                "fill_time": event.fill_time.isoformat(),
            },
        )
        try:
            async with self.store.transaction() as session:
                await self.store.insert_fill_event(event, session=session)
                await self.store.append_audit(audit, session=session)
        except DuplicateFillEventError:
            logger.info(f"Fill for order {event.order_id} already recorded")
            return False

        logger.info(
            f"Fill detected: position={event.position_id} {event.fill_type.value} "
            f"{event.fill_size} @ {event.fill_price} (order_id={event.order_id})"
        )
        return True
