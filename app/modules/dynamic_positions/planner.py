"""
Multi-Tier Execution Planner

Sizes a position from a trade recommendation and places the market entry
followed by its protective conditional orders. If any conditional order
fails, the ones already placed are cancelled and a single emergency stop
is placed at the recommendation's stop price.

Flow:
1. Refuse if the exchange already holds a position on the contract
2. Fetch the contract spec and compute the order plan
3. Set leverage, enter at market
4. Place tier1, tier2 and stop (or one take-profit and stop), one at a time
5. Persist the position and its creation audit in one transaction
"""

from decimal import Decimal
from typing import List, Optional, Tuple, Union

from pydantic import Field

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    PositionDirection,
    TriggerOrderRequest,
)
from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.models import (
    ActionAudit,
    AuditAction,
    CancellationResult,
    ErrorSeverity,
    ExecutionResult,
    PositionState,
    SizingRequest,
    StrategyType,
    TradeRecommendation,
    new_id,
)
from app.modules.dynamic_positions.pricing import (
    offset_price,
    quantity_for_notional,
    round_to_tick,
    split_tiers,
)
from app.modules.dynamic_positions.repository import PositionStateStore
from app.shared.exceptions import (
    CriticalExecutionError,
    ExchangeError,
    ExecutionError,
    OrderNotFoundError,
    PartialExecutionError,
    PositionAlreadyOpenError,
)
from app.shared.models import DomainModel
from app.utils.logger import get_logger

logger = get_logger(__name__)

MULTI_TIER_MIN_CONTRACTS = 5
TIER1_PRICE_OFFSET = Decimal("0.015")
TIER2_PRICE_OFFSET = Decimal("0.025")


class OrderPlan(DomainModel):
    """Sizes and prices for one position, all prices tick-rounded."""

    strategy_type: StrategyType
    quantity: int
    entry_price: Decimal
    tier1_size: int = 0
    tier2_size: int = 0
    runner_size: int = 0
    tier1_price: Optional[Decimal] = None
    tier2_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    stop_price: Decimal
    warnings: List[str] = Field(default_factory=list)


def compute_order_plan(
    recommendation: TradeRecommendation,
    spec: ContractSpec,
    strategy_type: StrategyType = StrategyType.MULTI_TIER,
    entry_price: Optional[Decimal] = None,
    min_multi_tier_contracts: int = MULTI_TIER_MIN_CONTRACTS,
    tier1_offset: Decimal = TIER1_PRICE_OFFSET,
    tier2_offset: Decimal = TIER2_PRICE_OFFSET,
) -> OrderPlan:
    """
    Compute the order plan for a recommendation.

    Quantity always comes from the spec's last price; tier prices are
    offsets from entry_price (defaults to the last price).

    Args:
        recommendation: Trade to execute
        spec: Live contract spec
        strategy_type: Requested strategy; multi-tier below the minimum
            quantity is demoted to single
        entry_price: Actual entry fill price, when known

    Returns:
        OrderPlan
    """
    quantity = quantity_for_notional(recommendation.trade_size_usd, spec)
    reference = entry_price if entry_price and entry_price > 0 else spec.last_price
    direction = recommendation.direction
    tick = spec.tick_size
    warnings: List[str] = []

    if strategy_type == StrategyType.MULTI_TIER and quantity < min_multi_tier_contracts:
        warnings.append(
            f"Quantity {quantity} below {min_multi_tier_contracts}; using single take-profit"
        )
        strategy_type = StrategyType.SINGLE

    # The recommended stop is used as given; only off-tick prices are moved
    stop_price = recommendation.stop_loss
    if stop_price % tick != 0:
        stop_price = round_to_tick(stop_price, tick)
        warnings.append(
            f"Stop {recommendation.stop_loss} is not a multiple of tick {tick}; using {stop_price}"
        )

    if strategy_type == StrategyType.SINGLE:
        return OrderPlan(
            strategy_type=strategy_type,
            quantity=quantity,
            entry_price=reference,
            tier1_size=quantity,
            take_profit_price=round_to_tick(recommendation.take_profit, tick),
            stop_price=stop_price,
            warnings=warnings,
        )

    tier1_size, tier2_size, runner_size = split_tiers(quantity)
    return OrderPlan(
        strategy_type=strategy_type,
        quantity=quantity,
        entry_price=reference,
        tier1_size=tier1_size,
        tier2_size=tier2_size,
        runner_size=runner_size,
        tier1_price=round_to_tick(offset_price(reference, direction, tier1_offset), tick),
        tier2_price=round_to_tick(offset_price(reference, direction, tier2_offset), tick),
        stop_price=stop_price,
        warnings=warnings,
    )


class MultiTierExecutionPlanner:
    """
    Places new positions with failure-safe protection.

    Usage:
        planner = MultiTierExecutionPlanner(store, factory, audit)
        result = await planner.place_multi_tier_position(recommendation, sizing)
    """

    def __init__(
        self,
        store: PositionStateStore,
        exchange_factory: ExchangeFactory,
        audit: AuditTrail,
        min_multi_tier_contracts: int = MULTI_TIER_MIN_CONTRACTS,
        tier1_offset: Decimal = TIER1_PRICE_OFFSET,
        tier2_offset: Decimal = TIER2_PRICE_OFFSET,
    ):
        self.store = store
        self.exchange_factory = exchange_factory
        self.audit = audit
        self.min_multi_tier_contracts = min_multi_tier_contracts
        self.tier1_offset = tier1_offset
        self.tier2_offset = tier2_offset

        logger.info("MultiTierExecutionPlanner initialized")

    def plan(
        self,
        recommendation: TradeRecommendation,
        spec: ContractSpec,
        strategy_type: StrategyType,
        entry_price: Optional[Decimal] = None,
    ) -> OrderPlan:
        return compute_order_plan(
            recommendation,
            spec,
            strategy_type=strategy_type,
            entry_price=entry_price,
            min_multi_tier_contracts=self.min_multi_tier_contracts,
            tier1_offset=self.tier1_offset,
            tier2_offset=self.tier2_offset,
        )

    async def place_multi_tier_position(
        self,
        recommendation: TradeRecommendation,
        sizing: SizingRequest,
    ) -> ExecutionResult:
        """
        Open a position and protect it.

        Raises:
            PositionAlreadyOpenError: Contract already has an open position
            ExecutionError: Leverage or entry failed (nothing to protect)
            PartialExecutionError: Conditional placement failed; rolled back
                and protected by an emergency stop
            CriticalExecutionError: Rollback or emergency stop failed
        """
        contract = recommendation.contract
        direction = recommendation.direction
        client = self.exchange_factory.get_client(sizing.credential_ref, sizing.settle)

        if await client.has_open_position(contract):
            raise PositionAlreadyOpenError(contract)

        spec = await client.get_contract_spec(contract)
        plan = self.plan(recommendation, spec, sizing.strategy_type)
        for warning in plan.warnings:
            logger.warning(f"{contract}: {warning}")

        try:
            await client.update_leverage(contract, recommendation.leverage)
            entry = await client.place_market_order(contract, direction, plan.quantity)
        except ExchangeError as e:
            logger.error(f"Entry failed for {contract}: {str(e)}")
            raise ExecutionError(f"Entry failed for {contract}: {e.message}")

        # Reprice tiers from the actual fill; quantity is unchanged
        plan = self.plan(recommendation, spec, plan.strategy_type, entry_price=entry.fill_price)
        position_id = new_id()

        logger.info(
            f"Entered {direction.value} {plan.quantity} {contract} @ {plan.entry_price} "
            f"({plan.strategy_type.value}, position_id={position_id})"
        )

        requests = self._conditional_orders(contract, direction, plan)
        placed: List[Tuple[str, str]] = []
        for label, request in requests:
            try:
                order = await client.place_trigger_order(request)
            except ExchangeError as e:
                error = await self._rollback(
                    client, position_id, recommendation, plan, placed, label, e
                )
                raise error from e
            placed.append((label, order.id))

        order_ids = dict(placed)
        if plan.strategy_type == StrategyType.MULTI_TIER:
            tier_order_ids = [order_ids["tier1"], order_ids["tier2"]]
        else:
            tier_order_ids = [order_ids["take_profit"]]

        position = PositionState(
            id=position_id,
            contract=contract,
            direction=direction,
            size=plan.quantity,
            entry_price=plan.entry_price,
            entry_order_id=entry.id,
            strategy_type=plan.strategy_type,
            tier1_size=plan.tier1_size,
            tier2_size=plan.tier2_size,
            runner_size=plan.runner_size,
            tier1_order_id=tier_order_ids[0],
            tier2_order_id=tier_order_ids[1] if len(tier_order_ids) > 1 else None,
            tier1_price=plan.tier1_price,
            tier2_price=plan.tier2_price,
            take_profit_price=plan.take_profit_price,
            current_stop_order_id=order_ids["stop"],
            original_stop_price=plan.stop_price,
            current_stop_price=plan.stop_price,
            remaining_size=plan.quantity,
            quanto_multiplier=spec.quanto_multiplier,
            leverage=recommendation.leverage,
            credential_ref=sizing.credential_ref,
            settle=sizing.settle,
        )

        persisted = await self._persist(position)

        return ExecutionResult(
            position_id=position_id,
            entry_order_id=entry.id,
            tier_order_ids=tier_order_ids,
            stop_order_id=order_ids["stop"],
            strategy_type=plan.strategy_type,
            quantity=plan.quantity,
            persisted=persisted,
        )

    @staticmethod
    def _conditional_orders(
        contract: str,
        direction: PositionDirection,
        plan: OrderPlan,
    ) -> List[Tuple[str, TriggerOrderRequest]]:
        stop = TriggerOrderRequest.stop_loss(contract, direction, plan.stop_price)
        if plan.strategy_type == StrategyType.SINGLE:
            return [
                (
                    "take_profit",
                    TriggerOrderRequest.take_profit(
                        contract, direction, plan.take_profit_price, plan.quantity,
                        close_position=True,
                    ),
                ),
                ("stop", stop),
            ]
        return [
            ("tier1", TriggerOrderRequest.take_profit(contract, direction, plan.tier1_price, plan.tier1_size)),
            ("tier2", TriggerOrderRequest.take_profit(contract, direction, plan.tier2_price, plan.tier2_size)),
            ("stop", stop),
        ]

    async def _persist(self, position: PositionState) -> bool:
        """Store the position with its creation audit; failures are logged only."""
        audit = ActionAudit(
            position_id=position.id,
            action=AuditAction.POSITION_CREATED,
            details={
                "contract": position.contract,
                "direction": position.direction.value,
                "strategy_type": position.strategy_type.value,
                "size": position.size,
                "entry_price": str(position.entry_price),
                "tier_sizes": [position.tier1_size, position.tier2_size, position.runner_size],
                "stop_price": str(position.current_stop_price),
            },
        )
        try:
            async with self.store.transaction() as session:
                await self.store.insert_position(position, session=session)
                await self.store.append_audit(audit, session=session)
        except Exception as e:
            # Orders are live and protected on the exchange
            logger.error(
                f"Failed to persist position {position.id} ({position.contract}): {str(e)}"
            )
            return False

        logger.info(f"Position {position.id} persisted ({position.contract})")
        return True

    async def rollback_orders(
        self,
        client: ExchangeClient,
        order_ids: List[str],
    ) -> List[CancellationResult]:
        """Cancel each order, reporting the outcome per order."""
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
                logger.error(f"Rollback cancel failed for {order_id}: {str(e)}")
                results.append(
                    CancellationResult(order_id=order_id, success=False, error=e.message)
                )
        return results

    async def _rollback(
        self,
        client: ExchangeClient,
        position_id: str,
        recommendation: TradeRecommendation,
        plan: OrderPlan,
        placed: List[Tuple[str, str]],
        failed_label: str,
        cause: ExchangeError,
    ) -> Union[PartialExecutionError, CriticalExecutionError]:
        """Cancel placed orders, place the emergency stop and build the error to raise."""
        contract = recommendation.contract
        logger.error(
            f"Placement of {failed_label} failed for {contract}: {str(cause)}; rolling back "
            f"{len(placed)} order(s)"
        )

        results = await self.rollback_orders(client, [order_id for _, order_id in placed])
        rollback_clean = all(r.success for r in results)
        rollback_details = {
            "contract": contract,
            "failed_order": failed_label,
            "cause": cause.message,
            "results": [r.model_dump() for r in results],
        }
        await self.audit.log_action(
            position_id,
            AuditAction.ROLLBACK_EXECUTED,
            details=rollback_details,
            success=rollback_clean,
            error=None if rollback_clean else "One or more cancellations failed",
        )

        emergency_stop_id: Optional[str] = None
        emergency_error: Optional[str] = None
        try:
            order = await client.place_trigger_order(
                TriggerOrderRequest.stop_loss(contract, recommendation.direction, plan.stop_price)
            )
            emergency_stop_id = order.id
        except ExchangeError as e:
            emergency_error = e.message

        await self.audit.log_action(
            position_id,
            AuditAction.EMERGENCY_STOP_PLACED,
            details={
                "contract": contract,
                "stop_price": str(plan.stop_price),
                "order_id": emergency_stop_id,
            },
            success=emergency_stop_id is not None,
            error=emergency_error,
        )

        if emergency_stop_id is None or not rollback_clean:
            problems = []
            if emergency_stop_id is None:
                problems.append(f"emergency stop failed ({emergency_error})")
            if not rollback_clean:
                failed = [r.order_id for r in results if not r.success]
                problems.append(f"cancellation failed for {failed}")
            message = (
                f"Position {contract} may be unprotected after {failed_label} "
                f"placement failure: {'; '.join(problems)}"
            )
            await self.audit.record_error(
                message,
                severity=ErrorSeverity.CRITICAL,
                position_id=position_id,
                context=rollback_details,
            )
            return CriticalExecutionError(
                message,
                position_id=position_id,
                rollback_results=results,
                details={"emergency_stop_order_id": emergency_stop_id},
            )

        message = (
            f"Placement of {failed_label} failed for {contract}; rolled back and "
            f"protected by emergency stop {emergency_stop_id}"
        )
        await self.audit.record_error(
            message,
            severity=ErrorSeverity.ERROR,
            position_id=position_id,
            context=rollback_details,
        )
        return PartialExecutionError(
            message,
            position_id=position_id,
            rollback_results=results,
            emergency_stop_order_id=emergency_stop_id,
        )
