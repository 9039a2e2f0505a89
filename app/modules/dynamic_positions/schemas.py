"""
Dynamic position API schemas.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.infrastructure.exchanges.schemas import PositionDirection
from app.modules.dynamic_positions.models import (
    SizingRequest,
    StrategyType,
    TradeRecommendation,
)


class OpenPositionRequest(BaseModel):
    """Trade recommendation plus where to execute it."""

    contract: str = Field(..., description="Futures contract, e.g. BTC_USDT")
    direction: PositionDirection
    stop_loss: Decimal = Field(..., gt=0)
    take_profit: Decimal = Field(..., gt=0)
    trade_size_usd: Decimal = Field(..., gt=0, description="Requested notional in USD")
    leverage: int = Field(default=1, ge=1, le=125)
    credential_ref: str = Field(default="default", description="Configured credential set name")
    settle: str = Field(default="usdt")
    strategy_type: StrategyType = StrategyType.MULTI_TIER

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "contract": "BTC_USDT",
                "direction": "long",
                "stop_loss": "49000",
                "take_profit": "52000",
                "trade_size_usd": "1000",
                "leverage": 10,
                "credential_ref": "default",
                "settle": "usdt",
                "strategy_type": "multi_tier",
            }
        }
    )

    def to_recommendation(self) -> TradeRecommendation:
        return TradeRecommendation(
            contract=self.contract,
            direction=self.direction,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            trade_size_usd=self.trade_size_usd,
            leverage=self.leverage,
        )

    def to_sizing(self) -> SizingRequest:
        return SizingRequest(
            credential_ref=self.credential_ref,
            settle=self.settle,
            strategy_type=self.strategy_type,
        )


class CleanupOrphansRequest(BaseModel):
    credential_ref: str = "default"
    settle: str = "usdt"


class EmergencyStopRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
