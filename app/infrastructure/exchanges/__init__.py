"""
Exchange Infrastructure

Futures exchange clients and the factory that binds them to credentials.
"""

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.gateio import GateioFuturesClient
from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    ExchangePosition,
    PlacedOrder,
    PositionDirection,
    TriggerOrder,
    TriggerOrderRequest,
    TriggerOrderStatus,
    TriggerRule,
)

__all__ = [
    "ExchangeClient",
    "ExchangeFactory",
    "GateioFuturesClient",
    "ContractSpec",
    "ExchangePosition",
    "PlacedOrder",
    "PositionDirection",
    "TriggerOrder",
    "TriggerOrderRequest",
    "TriggerOrderStatus",
    "TriggerRule",
]
