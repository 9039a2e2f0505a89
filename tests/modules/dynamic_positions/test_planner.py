"""
Multi-Tier Execution Planner Tests

Order planning, placement sequence, rollback and emergency protection.
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    PositionDirection,
    TriggerRule,
)
from app.modules.dynamic_positions.models import (
    AuditAction,
    ErrorSeverity,
    PositionPhase,
    SizingRequest,
    StrategyType,
    TradeRecommendation,
)
from app.modules.dynamic_positions.planner import compute_order_plan
from app.shared.exceptions import (
    CredentialNotFoundError,
    CriticalExecutionError,
    ExchangeConnectionError,
    ExchangeError,
    ExecutionError,
    OrderNotFoundError,
    PartialExecutionError,
    PositionAlreadyOpenError,
)


@pytest.fixture
def spec():
    return ContractSpec(
        contract="BTC_USDT",
        last_price=Decimal("50000"),
        quanto_multiplier=Decimal("0.0001"),
        tick_size=Decimal("0.1"),
    )


@pytest.fixture
def sizing():
    return SizingRequest(credential_ref="default", settle="usdt")


# ==================== PLAN ====================

def test_compute_order_plan_multi_tier(recommendation, spec):
    plan = compute_order_plan(recommendation, spec)

    assert plan.strategy_type == StrategyType.MULTI_TIER
    assert plan.quantity == 200
    assert (plan.tier1_size, plan.tier2_size, plan.runner_size) == (100, 60, 40)
    assert plan.tier1_price == Decimal("50750")
    assert plan.tier2_price == Decimal("51250")
    assert plan.stop_price == Decimal("49000")
    assert plan.warnings == []


def test_compute_order_plan_demotes_small_quantity(spec):
    recommendation = TradeRecommendation(
        contract="btc_usdt",
        direction=PositionDirection.LONG,
        stop_loss=Decimal("49000"),
        take_profit=Decimal("52000"),
        trade_size_usd=Decimal("15"),
    )

    plan = compute_order_plan(recommendation, spec, StrategyType.MULTI_TIER)

    assert plan.quantity == 3
    assert plan.strategy_type == StrategyType.SINGLE
    assert plan.tier1_size == 3
    assert plan.take_profit_price == Decimal("52000")
    assert len(plan.warnings) == 1


def test_compute_order_plan_uses_entry_price_for_tiers(recommendation, spec):
    plan = compute_order_plan(recommendation, spec, entry_price=Decimal("50100"))

    assert plan.quantity == 200
    assert plan.entry_price == Decimal("50100")
    assert plan.tier1_price == Decimal("50851.5")
    assert plan.tier2_price == Decimal("51352.5")


def test_compute_order_plan_short(spec):
    recommendation = TradeRecommendation(
        contract="BTC_USDT",
        direction=PositionDirection.SHORT,
        stop_loss=Decimal("51000.04"),
        take_profit=Decimal("48000"),
        trade_size_usd=Decimal("1000"),
    )

    plan = compute_order_plan(recommendation, spec)

    assert plan.tier1_price == Decimal("49250")
    assert plan.tier2_price == Decimal("48750")
    assert plan.stop_price == Decimal("51000.0")
    assert any("not a multiple of tick" in w for w in plan.warnings)


def test_compute_order_plan_keeps_on_tick_stop_verbatim(spec):
    recommendation = TradeRecommendation(
        contract="BTC_USDT",
        direction=PositionDirection.LONG,
        stop_loss=Decimal("49123.40"),
        take_profit=Decimal("52000"),
        trade_size_usd=Decimal("1000"),
    )

    plan = compute_order_plan(recommendation, spec)

    assert plan.stop_price == Decimal("49123.40")
    assert str(plan.stop_price) == "49123.40"
    assert plan.warnings == []


def test_recommendation_rejects_stop_on_wrong_side():
    with pytest.raises(ValueError):
        TradeRecommendation(
            contract="BTC_USDT",
            direction=PositionDirection.LONG,
            stop_loss=Decimal("53000"),
            take_profit=Decimal("52000"),
            trade_size_usd=Decimal("1000"),
        )


# ==================== PLACEMENT ====================

@pytest.mark.asyncio
async def test_place_multi_tier_position(planner, store, exchange, recommendation, sizing):
    result = await planner.place_multi_tier_position(recommendation, sizing)

    assert result.persisted is True
    assert result.quantity == 200
    assert result.tier_order_ids == ["po-1", "po-2"]
    assert result.stop_order_id == "po-3"
    assert exchange.leverage["BTC_USDT"] == 10
    assert exchange.market_orders == [
        {"contract": "BTC_USDT", "direction": PositionDirection.LONG, "size": 200}
    ]

    tier1, tier2, stop = exchange.trigger_requests
    assert (tier1.size, tier1.trigger_price, tier1.rule) == (100, Decimal("50750"), TriggerRule.GREATER_OR_EQUAL)
    assert (tier2.size, tier2.trigger_price) == (60, Decimal("51250"))
    assert stop.close_position is True
    assert stop.rule == TriggerRule.LESS_OR_EQUAL
    assert stop.trigger_price == Decimal("49000")

    position = await store.get_position(result.position_id)
    assert position.phase == PositionPhase.INITIAL
    assert position.remaining_size == 200
    assert position.tier1_order_id == "po-1"
    assert position.tier2_order_id == "po-2"
    assert position.current_stop_order_id == "po-3"
    assert position.original_stop_price == position.current_stop_price == Decimal("49000")
    assert position.quanto_multiplier == Decimal("0.0001")

    audits = await store.list_audit(result.position_id)
    assert [a.action for a in audits] == [AuditAction.POSITION_CREATED]


@pytest.mark.asyncio
async def test_place_position_reprices_tiers_from_fill(planner, store, exchange, recommendation, sizing):
    exchange.fill_price = Decimal("50100")

    result = await planner.place_multi_tier_position(recommendation, sizing)

    position = await store.get_position(result.position_id)
    assert position.entry_price == Decimal("50100")
    assert position.tier1_price == Decimal("50851.5")
    assert position.size == 200


@pytest.mark.asyncio
async def test_place_single_tier_position(planner, store, exchange, sizing):
    recommendation = TradeRecommendation(
        contract="BTC_USDT",
        direction=PositionDirection.LONG,
        stop_loss=Decimal("49000"),
        take_profit=Decimal("52000"),
        trade_size_usd=Decimal("15"),
    )

    result = await planner.place_multi_tier_position(recommendation, sizing)

    assert result.strategy_type == StrategyType.SINGLE
    assert result.tier_order_ids == ["po-1"]
    take_profit, stop = exchange.trigger_requests
    assert take_profit.close_position is True
    assert take_profit.trigger_price == Decimal("52000")
    assert stop.close_position is True

    position = await store.get_position(result.position_id)
    assert position.tier1_size == 3
    assert position.tier2_order_id is None
    assert position.take_profit_price == Decimal("52000")


@pytest.mark.asyncio
async def test_place_short_position(planner, exchange, sizing):
    recommendation = TradeRecommendation(
        contract="ETH_USDT",
        direction=PositionDirection.SHORT,
        stop_loss=Decimal("51000"),
        take_profit=Decimal("48000"),
        trade_size_usd=Decimal("1000"),
    )

    await planner.place_multi_tier_position(recommendation, sizing)

    assert exchange.positions["ETH_USDT"] == -200
    tier1, _, stop = exchange.trigger_requests
    assert tier1.rule == TriggerRule.LESS_OR_EQUAL
    assert stop.rule == TriggerRule.GREATER_OR_EQUAL


@pytest.mark.asyncio
async def test_place_refuses_existing_position(planner, exchange, recommendation, sizing):
    exchange.positions["BTC_USDT"] = 5

    with pytest.raises(PositionAlreadyOpenError):
        await planner.place_multi_tier_position(recommendation, sizing)

    assert exchange.market_orders == []


@pytest.mark.asyncio
async def test_place_unknown_credentials(planner, recommendation):
    with pytest.raises(CredentialNotFoundError):
        await planner.place_multi_tier_position(
            recommendation, SizingRequest(credential_ref="missing")
        )


@pytest.mark.asyncio
async def test_entry_failure_places_no_conditional_orders(planner, exchange, recommendation, sizing):
    exchange.market_error = ExchangeError("Insufficient margin", contract="BTC_USDT")

    with pytest.raises(ExecutionError):
        await planner.place_multi_tier_position(recommendation, sizing)

    assert exchange.trigger_requests == []


@pytest.mark.asyncio
async def test_persistence_failure_keeps_orders(planner, store, exchange, recommendation, sizing, monkeypatch):
    monkeypatch.setattr(store, "insert_position", AsyncMock(side_effect=RuntimeError("db down")))

    result = await planner.place_multi_tier_position(recommendation, sizing)

    assert result.persisted is False
    assert len(exchange.open_orders()) == 3


# ==================== ROLLBACK ====================

@pytest.mark.asyncio
async def test_tier2_failure_rolls_back_and_places_emergency_stop(
    planner, store, exchange, recommendation, sizing
):
    exchange.trigger_errors = [None, ExchangeError("Order rejected", contract="BTC_USDT")]

    with pytest.raises(PartialExecutionError) as exc_info:
        await planner.place_multi_tier_position(recommendation, sizing)

    error = exc_info.value
    assert exchange.cancelled == ["po-1"]
    assert error.emergency_stop_order_id == "po-2"
    assert [r.order_id for r in error.rollback_results] == ["po-1"]
    assert all(r.success for r in error.rollback_results)

    open_orders = exchange.open_orders()
    assert [o.id for o in open_orders] == ["po-2"]
    assert open_orders[0].trigger_price == Decimal("49000")

    assert await store.get_position(error.position_id) is None
    actions = [a.action for a in await store.list_audit(error.position_id)]
    assert AuditAction.ROLLBACK_EXECUTED in actions
    assert AuditAction.EMERGENCY_STOP_PLACED in actions

    errors = await store.recent_errors()
    assert errors[-1].severity == ErrorSeverity.ERROR
    assert errors[-1].position_id == error.position_id


@pytest.mark.asyncio
async def test_stop_failure_cancels_both_tiers(planner, exchange, recommendation, sizing):
    exchange.trigger_errors = [None, None, ExchangeError("Order rejected")]

    with pytest.raises(PartialExecutionError) as exc_info:
        await planner.place_multi_tier_position(recommendation, sizing)

    assert exchange.cancelled == ["po-1", "po-2"]
    assert exc_info.value.emergency_stop_order_id == "po-3"


@pytest.mark.asyncio
async def test_rollback_treats_missing_order_as_cancelled(planner, exchange, recommendation, sizing):
    exchange.trigger_errors = [None, ExchangeError("Order rejected")]
    exchange.cancel_errors = {"po-1": OrderNotFoundError(order_id="po-1")}

    with pytest.raises(PartialExecutionError) as exc_info:
        await planner.place_multi_tier_position(recommendation, sizing)

    result = exc_info.value.rollback_results[0]
    assert result.success is True
    assert result.error == "already gone"


@pytest.mark.asyncio
async def test_emergency_stop_failure_is_critical(planner, store, exchange, recommendation, sizing):
    exchange.trigger_errors = [
        None,
        ExchangeError("Order rejected"),
        ExchangeError("Order rejected"),
    ]

    with pytest.raises(CriticalExecutionError) as exc_info:
        await planner.place_multi_tier_position(recommendation, sizing)

    assert exc_info.value.details["emergency_stop_order_id"] is None
    errors = await store.recent_errors()
    assert errors[-1].severity == ErrorSeverity.CRITICAL


@pytest.mark.asyncio
async def test_rollback_cancel_failure_is_critical(planner, exchange, recommendation, sizing):
    exchange.trigger_errors = [None, ExchangeError("Order rejected")]
    exchange.cancel_errors = {"po-1": ExchangeConnectionError("timed out")}

    with pytest.raises(CriticalExecutionError) as exc_info:
        await planner.place_multi_tier_position(recommendation, sizing)

    error = exc_info.value
    assert error.rollback_results[0].success is False
    # The emergency stop is still placed
    assert error.details["emergency_stop_order_id"] == "po-2"
