"""
Pytest configuration and shared fixtures.

Tests run without MongoDB or exchange access: the state store is backed by
an in-memory stand-in for the Motor database and every exchange call goes
to ``FakeExchangeClient``.
"""

import copy
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    ExchangePosition,
    PlacedOrder,
    PositionDirection,
    TriggerOrder,
    TriggerOrderRequest,
    TriggerOrderStatus,
)
from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.fill_detector import OrderFillDetector
from app.modules.dynamic_positions.models import (
    MonitoringSettings,
    PositionState,
    StrategyType,
    TradeRecommendation,
)
from app.modules.dynamic_positions.orchestrator import DynamicPositionOrchestrator
from app.modules.dynamic_positions.order_cleanup import OrphanedOrderCleaner
from app.modules.dynamic_positions.planner import MultiTierExecutionPlanner
from app.modules.dynamic_positions.repository import PositionStateStore
from app.modules.dynamic_positions.sl_manager import DynamicStopLossManager
from app.shared.exceptions import OrderNotFoundError


# ==================== IN-MEMORY MONGODB ====================

class _InsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class _UpdateResult:
    def __init__(self, matched_count: int, upserted_id=None):
        self.matched_count = matched_count
        self.upserted_id = upserted_id


def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, condition in filter.items():
        value = document.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$nin" in condition and value in condition["$nin"]:
                return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, keys):
        # Stable sorts applied last key first give a compound ordering
        for field, direction in reversed(keys):
            self._documents.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return self

    def limit(self, n: int):
        self._documents = self._documents[:n]
        return self

    async def to_list(self, length=None):
        documents = self._documents if length is None else self._documents[:length]
        return [copy.deepcopy(d) for d in documents]


class FakeCollection:
    """Just enough of a Motor collection for the state store."""

    def __init__(self, name: str):
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.indexes: List[Any] = []

    async def create_index(self, keys, **kwargs):
        self.indexes.append(keys)

    async def find_one(self, filter, session=None):
        for document in self.documents:
            if _matches(document, filter):
                return copy.deepcopy(document)
        return None

    def find(self, filter, session=None):
        return FakeCursor([d for d in self.documents if _matches(d, filter)])

    async def count_documents(self, filter, session=None):
        return sum(1 for d in self.documents if _matches(d, filter))

    async def insert_one(self, document, session=None):
        document = copy.deepcopy(document)
        document.setdefault("_id", ObjectId())
        if any(d["_id"] == document["_id"] for d in self.documents):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        self.documents.append(document)
        return _InsertResult(document["_id"])

    async def update_one(self, filter, update, upsert=False, session=None):
        target = next((d for d in self.documents if _matches(d, filter)), None)
        upserted_id = None
        if target is None:
            if not upsert:
                return _UpdateResult(0)
            target = {k: v for k, v in filter.items() if not isinstance(v, dict)}
            target.setdefault("_id", ObjectId())
            self.documents.append(target)
            upserted_id = target["_id"]

        for field, value in update.get("$set", {}).items():
            target[field] = copy.deepcopy(value)
        for field, spec in update.get("$push", {}).items():
            items = target.setdefault(field, [])
            items.extend(copy.deepcopy(spec["$each"]))
            if "$slice" in spec:
                target[field] = items[spec["$slice"]:]

        return _UpdateResult(0 if upserted_id else 1, upserted_id)


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


# ==================== FAKE EXCHANGE ====================

class FakeExchangeClient(ExchangeClient):
    """
    Scriptable futures exchange.

    ``trigger_errors`` is consumed one entry per placement attempt (None
    lets that attempt succeed); ``cancel_errors`` maps order ids to the
    exception their cancel raises.
    """

    def __init__(
        self,
        credential_ref: str = "default",
        settle: str = "usdt",
        last_price: Decimal = Decimal("50000"),
        quanto_multiplier: Decimal = Decimal("0.0001"),
        tick_size: Decimal = Decimal("0.1"),
    ):
        super().__init__(credential_ref, settle)
        self.last_price = last_price
        self.quanto_multiplier = quanto_multiplier
        self.tick_size = tick_size
        self.fill_price: Optional[Decimal] = None

        self.positions: Dict[str, int] = {}
        self.orders: Dict[str, TriggerOrder] = {}
        self.trigger_requests: List[TriggerOrderRequest] = []
        self.market_orders: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.leverage: Dict[str, int] = {}

        self.trigger_errors: List[Optional[Exception]] = []
        self.cancel_errors: Dict[str, Exception] = {}
        self.market_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self._ids = count(1)

    async def get_contract_spec(self, contract: str) -> ContractSpec:
        return ContractSpec(
            contract=contract,
            last_price=self.last_price,
            quanto_multiplier=self.quanto_multiplier,
            tick_size=self.tick_size,
        )

    async def list_positions(self) -> List[ExchangePosition]:
        return [
            ExchangePosition(contract=contract, size=size)
            for contract, size in self.positions.items()
        ]

    async def update_leverage(self, contract: str, leverage: int) -> None:
        self.leverage[contract] = leverage

    async def place_market_order(self, contract, direction, size) -> PlacedOrder:
        if self.market_error is not None:
            raise self.market_error
        self.market_orders.append({"contract": contract, "direction": direction, "size": size})
        self.positions[contract] = self.positions.get(contract, 0) + size * direction.sign
        return PlacedOrder(
            id=f"entry-{len(self.market_orders)}",
            contract=contract,
            size=size * direction.sign,
            fill_price=self.fill_price or self.last_price,
            status="finished",
        )

    async def place_trigger_order(self, request: TriggerOrderRequest) -> PlacedOrder:
        if self.trigger_errors:
            error = self.trigger_errors.pop(0)
            if error is not None:
                raise error
        order_id = f"po-{next(self._ids)}"
        self.trigger_requests.append(request)
        self.orders[order_id] = TriggerOrder(
            id=order_id,
            contract=request.contract,
            status=TriggerOrderStatus.OPEN,
            trigger_price=request.trigger_price,
            rule=request.rule,
            size=request.size,
        )
        return PlacedOrder(id=order_id, contract=request.contract)

    async def cancel_trigger_order(self, order_id: str) -> None:
        if order_id in self.cancel_errors:
            raise self.cancel_errors[order_id]
        order = self.orders.get(order_id)
        if order is None or order.status != TriggerOrderStatus.OPEN:
            raise OrderNotFoundError("Order not found", order_id=order_id)
        self.cancelled.append(order_id)
        self.orders[order_id] = order.model_copy(
            update={"status": TriggerOrderStatus.FINISHED, "finish_as": "cancelled"}
        )

    async def list_trigger_orders(self, status: TriggerOrderStatus) -> List[TriggerOrder]:
        if self.list_error is not None:
            raise self.list_error
        return [o for o in self.orders.values() if o.status == status]

    # ==================== TEST HELPERS ====================

    def open_orders(self) -> List[TriggerOrder]:
        return [o for o in self.orders.values() if o.status == TriggerOrderStatus.OPEN]

    def finish(self, order_id: str, finish_as: str = "succeeded", reduce_by: int = 0) -> None:
        """Mark an order finished and shrink the exchange position."""
        order = self.orders[order_id]
        self.orders[order_id] = order.model_copy(
            update={
                "status": TriggerOrderStatus.FINISHED,
                "finish_as": finish_as,
                "finish_time": datetime.now(timezone.utc),
            }
        )
        if reduce_by and order.contract in self.positions:
            remaining = abs(self.positions[order.contract]) - reduce_by
            sign = 1 if self.positions[order.contract] > 0 else -1
            if remaining > 0:
                self.positions[order.contract] = remaining * sign
            else:
                del self.positions[order.contract]

    def add_order(self, order_id: str, contract: str, price: Decimal, **fields) -> TriggerOrder:
        order = TriggerOrder(
            id=order_id,
            contract=contract,
            status=fields.pop("status", TriggerOrderStatus.OPEN),
            trigger_price=price,
            **fields,
        )
        self.orders[order_id] = order
        return order


# ==================== FIXTURES ====================

@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def store(fake_db):
    return PositionStateStore(
        fake_db,
        use_transactions=False,
        default_settings=MonitoringSettings(max_retries=3),
    )


@pytest.fixture
def audit(store):
    return AuditTrail(store)


@pytest.fixture
def exchange():
    return FakeExchangeClient()


@pytest.fixture
def factory(exchange):
    return ExchangeFactory(
        credentials={"default": {"api_key": "test_key", "api_secret": "test_secret"}},
        builder=lambda credential_ref, settle, credentials: exchange,
    )


@pytest.fixture
def planner(store, factory, audit):
    return MultiTierExecutionPlanner(store, factory, audit)


@pytest.fixture
def fill_detector(store, factory, audit):
    return OrderFillDetector(store, factory, audit, check_interval_seconds=0.05)


@pytest.fixture
def sl_manager(store, factory, audit):
    return DynamicStopLossManager(store, factory, audit, retry_delay_seconds=0)


@pytest.fixture
def orchestrator(store, fill_detector, sl_manager, audit):
    return DynamicPositionOrchestrator(
        store, fill_detector, sl_manager, audit, cycle_interval_seconds=0.05
    )


@pytest.fixture
def order_cleaner(factory):
    return OrphanedOrderCleaner(factory)


@pytest.fixture
def recommendation():
    """Long BTC_USDT worth 200 contracts at 50000 with a 0.0001 multiplier"""
    return TradeRecommendation(
        contract="BTC_USDT",
        direction=PositionDirection.LONG,
        stop_loss=Decimal("49000"),
        take_profit=Decimal("52000"),
        trade_size_usd=Decimal("1000"),
        leverage=10,
    )


def make_position(**overrides) -> PositionState:
    """Multi-tier long position with orders tp1/tp2/sl on the fake exchange."""
    fields = dict(
        contract="BTC_USDT",
        direction=PositionDirection.LONG,
        size=200,
        entry_price=Decimal("50000"),
        entry_order_id="entry-1",
        strategy_type=StrategyType.MULTI_TIER,
        tier1_size=100,
        tier2_size=60,
        runner_size=40,
        tier1_order_id="tp1",
        tier2_order_id="tp2",
        tier1_price=Decimal("50750"),
        tier2_price=Decimal("51250"),
        current_stop_order_id="sl",
        original_stop_price=Decimal("49000"),
        current_stop_price=Decimal("49000"),
        remaining_size=200,
        quanto_multiplier=Decimal("0.0001"),
        leverage=10,
        credential_ref="default",
        settle="usdt",
    )
    fields.update(overrides)
    return PositionState(**fields)


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def seeded_exchange(exchange):
    """Exchange holding the orders and position behind make_position()"""
    exchange.positions["BTC_USDT"] = 200
    exchange.add_order("tp1", "BTC_USDT", Decimal("50750"), size=100)
    exchange.add_order("tp2", "BTC_USDT", Decimal("51250"), size=60)
    exchange.add_order("sl", "BTC_USDT", Decimal("49000"))
    return exchange
