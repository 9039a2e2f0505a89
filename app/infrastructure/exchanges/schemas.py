"""
Exchange records

Validated views of exchange payloads. Raw JSON never leaves the client:
every response is parsed into one of these records at the boundary.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==================== ENUMS ====================

class PositionDirection(str, Enum):
    """Position direction"""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is PositionDirection.LONG else -1


class TriggerRule(int, Enum):
    """Trigger comparison against the last price"""
    GREATER_OR_EQUAL = 1
    LESS_OR_EQUAL = 2


class TriggerOrderStatus(str, Enum):
    """Trigger order list filter"""
    OPEN = "open"
    FINISHED = "finished"


# Conditional orders expire after one day unless refreshed
DEFAULT_TRIGGER_EXPIRATION_SECONDS = 86400


# ==================== RECORDS ====================

class ExchangeRecord(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)


class ContractSpec(ExchangeRecord):
    """Live contract details needed to size and price orders."""

    contract: str
    last_price: Decimal = Field(..., gt=0)
    quanto_multiplier: Decimal = Field(..., gt=0)
    tick_size: Decimal = Field(..., gt=0)


class ExchangePosition(ExchangeRecord):
    """Open futures position as the exchange reports it (signed size)."""

    contract: str
    size: int
    entry_price: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return self.size != 0


class PlacedOrder(ExchangeRecord):
    """Acknowledgement of a market or trigger order."""

    id: str
    contract: str
    size: int = 0
    fill_price: Optional[Decimal] = None
    status: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, v: Any) -> str:
        return str(v)


class TriggerOrder(ExchangeRecord):
    """Price-triggered order from the open/finished lists."""

    id: str
    contract: str
    status: TriggerOrderStatus
    trigger_price: Decimal
    rule: Optional[TriggerRule] = None
    size: int = 0
    finish_as: Optional[str] = None
    finish_time: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, v: Any) -> str:
        return str(v)

    @property
    def succeeded(self) -> bool:
        """Finished because the trigger fired and the order executed."""
        return (
            self.status == TriggerOrderStatus.FINISHED
            and self.finish_as == "succeeded"
        )


class TriggerOrderRequest(ExchangeRecord):
    """
    Reduce-only conditional order.

    size=0 with close_position=True closes whatever remains of the
    position (stop-loss); a non-zero size closes that many contracts
    (take-profit tier).
    """

    contract: str
    direction: PositionDirection
    trigger_price: Decimal
    rule: TriggerRule
    size: int = 0
    close_position: bool = False
    expiration: int = DEFAULT_TRIGGER_EXPIRATION_SECONDS

    @classmethod
    def stop_loss(
        cls,
        contract: str,
        direction: PositionDirection,
        trigger_price: Decimal,
    ) -> "TriggerOrderRequest":
        rule = (
            TriggerRule.LESS_OR_EQUAL
            if direction is PositionDirection.LONG
            else TriggerRule.GREATER_OR_EQUAL
        )
        return cls(
            contract=contract,
            direction=direction,
            trigger_price=trigger_price,
            rule=rule,
            close_position=True,
        )

    @classmethod
    def take_profit(
        cls,
        contract: str,
        direction: PositionDirection,
        trigger_price: Decimal,
        size: int,
        close_position: bool = False,
    ) -> "TriggerOrderRequest":
        rule = (
            TriggerRule.GREATER_OR_EQUAL
            if direction is PositionDirection.LONG
            else TriggerRule.LESS_OR_EQUAL
        )
        return cls(
            contract=contract,
            direction=direction,
            trigger_price=trigger_price,
            rule=rule,
            size=size,
            close_position=close_position,
        )


def timestamp_to_datetime(value: Any) -> Optional[datetime]:
    """Exchange epoch seconds (int, float or string) to aware datetime."""
    if value in (None, "", 0, "0"):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
