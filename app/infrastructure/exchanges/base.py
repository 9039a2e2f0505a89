"""
ExchangeClient - Abstract Futures Exchange Interface

Defines the operations the position manager needs from a futures exchange.
One client instance is bound to one credential set and one settlement
currency.

Architecture Pattern: Strategy Pattern
"""

from abc import ABC, abstractmethod
from typing import List

from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    ExchangePosition,
    PlacedOrder,
    PositionDirection,
    TriggerOrder,
    TriggerOrderRequest,
    TriggerOrderStatus,
)


class ExchangeClient(ABC):
    """
    Abstract base class for futures exchange clients.

    Every method raises a subclass of ``ExchangeError`` on failure:
    ``ExchangeConnectionError`` when the exchange is unreachable,
    ``ExchangeAuthenticationError`` for rejected keys,
    ``ExchangeRateLimitError`` when throttled, ``OrderNotFoundError`` when
    cancelling an order that no longer exists, and
    ``MalformedResponseError`` when a payload misses required fields.

    Usage:
        client = factory.get_client("default", "usdt")
        spec = await client.get_contract_spec("BTC_USDT")
        order = await client.place_market_order("BTC_USDT", PositionDirection.LONG, 10)
    """

    def __init__(self, credential_ref: str, settle: str, **kwargs):
        """
        Initialize exchange client.

        Args:
            credential_ref: Name of the credential set this client signs with
            settle: Settlement currency (e.g. "usdt")
            **kwargs: Additional provider-specific configuration
        """
        self.credential_ref = credential_ref
        self.settle = settle
        self.config = kwargs

    # ==================== MARKET DATA ====================

    @abstractmethod
    async def get_contract_spec(self, contract: str) -> ContractSpec:
        """
        Get live contract details.

        Returns:
            ContractSpec with last price, quanto multiplier and tick size
        """
        pass

    # ==================== POSITIONS ====================

    @abstractmethod
    async def list_positions(self) -> List[ExchangePosition]:
        """List futures positions (closed ones may be reported with size 0)."""
        pass

    @abstractmethod
    async def update_leverage(self, contract: str, leverage: int) -> None:
        """Set leverage for a contract."""
        pass

    # ==================== ORDERS ====================

    @abstractmethod
    async def place_market_order(
        self,
        contract: str,
        direction: PositionDirection,
        size: int,
    ) -> PlacedOrder:
        """
        Enter a position at market.

        Args:
            contract: Contract name (e.g. "BTC_USDT")
            direction: Long buys, short sells
            size: Number of contracts (positive)

        Returns:
            PlacedOrder with the exchange order id and fill price if known
        """
        pass

    @abstractmethod
    async def place_trigger_order(self, request: TriggerOrderRequest) -> PlacedOrder:
        """Place a reduce-only price-triggered order."""
        pass

    @abstractmethod
    async def cancel_trigger_order(self, order_id: str) -> None:
        """
        Cancel a price-triggered order.

        Raises:
            OrderNotFoundError: Order already finished or never existed
        """
        pass

    @abstractmethod
    async def list_trigger_orders(self, status: TriggerOrderStatus) -> List[TriggerOrder]:
        """List open or finished price-triggered orders."""
        pass

    # ==================== LIFECYCLE ====================

    async def close(self) -> None:
        """Release network resources."""
        return None

    # ==================== HELPERS ====================

    async def has_open_position(self, contract: str) -> bool:
        positions = await self.list_positions()
        return any(p.contract == contract and p.is_open for p in positions)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"credential_ref={self.credential_ref}, settle={self.settle})"
        )
