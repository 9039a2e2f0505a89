"""
Dynamic Stop-Loss Manager

Consumes journaled fills oldest-first, advances each position's phase and
relocates its protective stop:

- tier1 fill: stop moves to break-even (entry plus a small buffer)
- tier2 fill: stop trails the tier2 fill price by a fixed distance
- stop fill: position is stopped out
- manual close: completed after tier2, stopped out before
- single-tier take-profit: completed

A fill is marked processed in the same transaction that applies it, so a
failed transition is retried on the next cycle.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.schemas import PlacedOrder, TriggerOrderRequest
from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.models import (
    TERMINAL_PHASES,
    ActionAudit,
    AuditAction,
    CancellationResult,
    ErrorSeverity,
    FillType,
    MonitoringSettings,
    OrderFillEvent,
    PositionPhase,
    PositionState,
    utc_now,
)
from app.modules.dynamic_positions.pricing import (
    break_even_stop,
    realized_pnl,
    round_to_tick,
    trailing_stop,
)
from app.modules.dynamic_positions.repository import PositionStateStore
from app.shared.exceptions import (
    ExchangeError,
    OrderNotFoundError,
    StopReplacementError,
)
from app.shared.models import DomainModel
from app.utils.logger import get_logger

logger = get_logger(__name__)


class Transition(DomainModel):
    """Planned effect of one fill on its position."""

    phase: PositionPhase
    remaining_size: int
    stop_price: Optional[Decimal] = None
    stop_action: Optional[AuditAction] = None
    phase_action: Optional[AuditAction] = None


class DynamicStopLossManager:
    """
    Usage:
        manager = DynamicStopLossManager(store, factory, audit, retry_delay_seconds=1.0)
        summary = await manager.process_pending_fills()
    """

    def __init__(
        self,
        store: PositionStateStore,
        exchange_factory: ExchangeFactory,
        audit: AuditTrail,
        retry_delay_seconds: float = 1.0,
    ):
        self.store = store
        self.exchange_factory = exchange_factory
        self.audit = audit
        self.retry_delay_seconds = retry_delay_seconds

        self.last_run_at = None
        self.processed_count = 0
        self.deferred_count = 0
        self.failed_count = 0

        logger.info("DynamicStopLossManager initialized")

    def get_status(self) -> Dict[str, Any]:
        return {
            "last_run_at": self.last_run_at,
            "processed_count": self.processed_count,
            "deferred_count": self.deferred_count,
            "failed_count": self.failed_count,
            "retry_delay_seconds": self.retry_delay_seconds,
        }

    # ==================== CYCLE ====================

    async def process_pending_fills(self) -> Dict[str, Any]:
        """
        Apply every unprocessed fill, oldest first.

        Failures are recorded and leave the fill unprocessed; they never
        stop the remaining fills from being handled.
        """
        state = await self.store.get_monitoring_state()
        settings = state.settings
        fills = await self.store.list_unprocessed_fills()

        summary = {"pending": len(fills), "processed": 0, "deferred": 0, "failed": 0}
        for fill in fills:
            try:
                applied = await self.process_fill(fill, settings)
            except StopReplacementError as e:
                summary["failed"] += 1
                await self.audit.record_error(
                    e.message,
                    severity=ErrorSeverity.CRITICAL,
                    position_id=e.position_id,
                    context={"order_id": fill.order_id, "attempts": e.attempts},
                )
                continue
            except Exception as e:
                summary["failed"] += 1
                await self.audit.record_error(
                    f"Failed to process {fill.fill_type.value} fill {fill.order_id}: {str(e)}",
                    severity=ErrorSeverity.ERROR,
                    position_id=fill.position_id,
                    context={"order_id": fill.order_id},
                )
                continue

            if applied:
                summary["processed"] += 1
            else:
                summary["deferred"] += 1

        self.last_run_at = utc_now()
        self.processed_count += summary["processed"]
        self.deferred_count += summary["deferred"]
        self.failed_count += summary["failed"]
        if fills:
            logger.info(f"Stop-loss cycle: {summary}")
        return summary

    async def process_fill(self, fill: OrderFillEvent, settings: MonitoringSettings) -> bool:
        """
        Apply one fill.

        Returns:
            True if the fill was processed (including no-op fills), False if
            it was deferred for a later cycle

        Raises:
            StopReplacementError: Replacement stop could not be placed
            ExchangeError: Old stop could not be cancelled
        """
        position = await self.store.get_position(fill.position_id)
        if position is None:
            logger.error(f"Fill {fill.order_id} references unknown position {fill.position_id}")
            await self.store.mark_fill_processed(fill.order_id)
            return True

        if fill.fill_type == FillType.TIER2 and position.phase == PositionPhase.INITIAL:
            logger.info(
                f"Deferring tier2 fill {fill.order_id} for {position.id} until tier1 is applied"
            )
            return False

        transition = self.plan_transition(position, fill, settings)
        if transition is None:
            logger.info(
                f"Fill {fill.order_id} already reflected in {position.id} "
                f"(phase={position.phase.value}); marking processed"
            )
            await self.store.mark_fill_processed(fill.order_id)
            return True

        if transition.phase != position.phase and not position.can_transition_to(transition.phase):
            logger.error(
                f"Refusing {position.phase.value} -> {transition.phase.value} for {position.id} "
                f"({position.strategy_type.value}); fill {fill.order_id} ignored"
            )
            await self.store.mark_fill_processed(fill.order_id)
            return True

        new_stop: Optional[PlacedOrder] = None
        cancellations: List[CancellationResult] = []
        if transition.stop_price is not None:
            client = self.exchange_factory.get_client(position.credential_ref, position.settle)
            spec = await client.get_contract_spec(position.contract)
            transition.stop_price = round_to_tick(transition.stop_price, spec.tick_size)
            new_stop = await self.replace_stop(
                client, position, transition.stop_price, settings.max_retries
            )
        elif transition.phase in TERMINAL_PHASES:
            leftovers = [
                order_id
                for order_id, _ in position.pending_orders()
                if order_id != fill.order_id
            ]
            if leftovers:
                client = self.exchange_factory.get_client(position.credential_ref, position.settle)
                cancellations = await self.cancel_leftover_orders(client, position, leftovers)

        await self._apply(position, fill, transition, new_stop, cancellations)
        return True

    # ==================== STATE MACHINE ====================

    def plan_transition(
        self,
        position: PositionState,
        fill: OrderFillEvent,
        settings: MonitoringSettings,
    ) -> Optional[Transition]:
        """Effect of a fill on a position, or None if it has none."""
        if position.is_terminal:
            return None

        if fill.fill_type == FillType.SL:
            return Transition(
                phase=PositionPhase.STOPPED_OUT,
                remaining_size=0,
                phase_action=AuditAction.POSITION_STOPPED_OUT,
            )

        if fill.fill_type == FillType.MANUAL:
            if fill.fill_size < position.remaining_size:
                # Partial external reduction; phase unchanged
                return Transition(
                    phase=position.phase,
                    remaining_size=position.remaining_size - fill.fill_size,
                )
            if position.phase == PositionPhase.TP2_FILLED:
                return Transition(
                    phase=PositionPhase.COMPLETED,
                    remaining_size=0,
                    phase_action=AuditAction.POSITION_COMPLETED,
                )
            return Transition(
                phase=PositionPhase.STOPPED_OUT,
                remaining_size=0,
                phase_action=AuditAction.POSITION_STOPPED_OUT,
            )

        if fill.fill_type == FillType.TIER1:
            if position.phase != PositionPhase.INITIAL:
                return None
            if not position.is_multi_tier:
                return Transition(
                    phase=PositionPhase.COMPLETED,
                    remaining_size=0,
                    phase_action=AuditAction.POSITION_COMPLETED,
                )
            return Transition(
                phase=PositionPhase.TP1_FILLED,
                remaining_size=position.remaining_size - position.tier1_size,
                stop_price=break_even_stop(
                    position.entry_price, position.direction, settings.break_even_buffer
                ),
                stop_action=AuditAction.SL_UPDATED_BREAK_EVEN,
            )

        if fill.fill_type == FillType.TIER2:
            if position.phase != PositionPhase.TP1_FILLED:
                return None
            return Transition(
                phase=PositionPhase.TP2_FILLED,
                remaining_size=position.remaining_size - position.tier2_size,
                stop_price=trailing_stop(
                    fill.fill_price, position.direction, settings.trailing_distance
                ),
                stop_action=AuditAction.SL_UPDATED_TRAILING,
            )

        return None

    # ==================== STOP REPLACEMENT ====================

    async def replace_stop(
        self,
        client: ExchangeClient,
        position: PositionState,
        stop_price: Decimal,
        max_retries: int,
    ) -> PlacedOrder:
        """
        Cancel the current stop, then place the new one.

        "Order not found" on cancel means the old stop is already gone.
        Placement is attempted 1 + max_retries times with linear backoff.

        Raises:
            ExchangeError: Cancel failed for any other reason (nothing changed)
            StopReplacementError: Every placement attempt failed
        """
        try:
            await client.cancel_trigger_order(position.current_stop_order_id)
        except OrderNotFoundError:
            logger.warning(
                f"Stop {position.current_stop_order_id} for {position.id} already gone"
            )

        request = TriggerOrderRequest.stop_loss(position.contract, position.direction, stop_price)
        attempts = 1 + max_retries
        last_error: Optional[ExchangeError] = None

        for attempt in range(1, attempts + 1):
            try:
                order = await client.place_trigger_order(request)
                if attempt > 1:
                    logger.info(f"Stop for {position.id} placed on attempt {attempt}")
                return order
            except ExchangeError as e:
                last_error = e
                logger.warning(
                    f"Stop placement attempt {attempt}/{attempts} failed for "
                    f"{position.id}: {e.message}"
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay_seconds * attempt)

        raise StopReplacementError(
            f"Position {position.id} ({position.contract}) has no stop: placement at "
            f"{stop_price} failed {attempts} times ({last_error.message if last_error else 'unknown'})",
            position_id=position.id,
            attempts=attempts,
        )

    async def cancel_leftover_orders(
        self,
        client: ExchangeClient,
        position: PositionState,
        order_ids: List[str],
    ) -> List[CancellationResult]:
        """
        Cancel the conditional orders a closed position still has open.

        Unfilled take-profits and the current stop are reduce-only and
        would otherwise act on the next position on the same contract.
        Failures are reported per order and never block the transition.
        """
        results: List[CancellationResult] = []
        for order_id in order_ids:
            try:
                await client.cancel_trigger_order(order_id)
                results.append(CancellationResult(order_id=order_id, success=True))
            except OrderNotFoundError:
                results.append(
                    CancellationResult(order_id=order_id, success=True, error="already gone")
                )
            except ExchangeError as e:
                logger.warning(
                    f"Could not cancel leftover order {order_id} for {position.id}: {e.message}"
                )
                results.append(
                    CancellationResult(order_id=order_id, success=False, error=e.message)
                )
        return results

    # ==================== PERSISTENCE ====================

    async def _apply(
        self,
        position: PositionState,
        fill: OrderFillEvent,
        transition: Transition,
        new_stop: Optional[PlacedOrder],
        cancellations: Optional[List[CancellationResult]] = None,
    ) -> None:
        """Write phase, stop, size, pnl, processed flag and audit together."""
        pnl = realized_pnl(
            position.entry_price,
            fill.fill_price,
            position.direction,
            fill.fill_size,
            position.quanto_multiplier,
        )
        fields: Dict[str, Any] = {
            "phase": transition.phase,
            "remaining_size": transition.remaining_size,
            "realized_pnl": position.realized_pnl + pnl,
        }

        audits: List[ActionAudit] = []
        if new_stop is not None:
            fields["current_stop_order_id"] = new_stop.id
            fields["current_stop_price"] = transition.stop_price
            audits.append(
                ActionAudit(
                    position_id=position.id,
                    action=transition.stop_action,
                    details={
                        "fill_order_id": fill.order_id,
                        "old_stop_order_id": position.current_stop_order_id,
                        "new_stop_order_id": new_stop.id,
                        "old_stop_price": str(position.current_stop_price),
                        "new_stop_price": str(fields["current_stop_price"]),
                    },
                )
            )
        if transition.phase_action is not None:
            details: Dict[str, Any] = {
                "fill_order_id": fill.order_id,
                "fill_type": fill.fill_type.value,
                "fill_price": str(fill.fill_price),
                "realized_pnl": str(fields["realized_pnl"]),
            }
            if cancellations:
                details["cancelled_orders"] = [r.model_dump() for r in cancellations]
            audits.append(
                ActionAudit(
                    position_id=position.id,
                    action=transition.phase_action,
                    details=details,
                )
            )

        async with self.store.transaction() as session:
            await self.store.update_position(position.id, fields, session=session)
            await self.store.mark_fill_processed(fill.order_id, session=session)
            for audit in audits:
                await self.store.append_audit(audit, session=session)

        logger.info(
            f"Position {position.id}: {position.phase.value} -> {transition.phase.value} "
            f"after {fill.fill_type.value} fill (remaining={transition.remaining_size}, "
            f"pnl={fields['realized_pnl']})"
        )
