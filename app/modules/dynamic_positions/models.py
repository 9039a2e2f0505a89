"""
Dynamic Position Models

Domain records for managed positions, the fill journal, the audit trail
and the process-wide monitoring state.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from bson import ObjectId
from pydantic import Field, field_validator, model_validator

from app.infrastructure.exchanges.schemas import PositionDirection
from app.shared.models import DomainModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


# ==================== ENUMS ====================

class StrategyType(str, Enum):
    """How the position is taken off"""
    SINGLE = "single"          # One take-profit for the full size
    MULTI_TIER = "multi_tier"  # Two take-profit tiers plus a runner


class PositionPhase(str, Enum):
    """Position lifecycle phase"""
    INITIAL = "initial"
    TP1_FILLED = "tp1_filled"
    TP2_FILLED = "tp2_filled"
    COMPLETED = "completed"
    STOPPED_OUT = "stopped_out"


TERMINAL_PHASES: FrozenSet[PositionPhase] = frozenset(
    {PositionPhase.COMPLETED, PositionPhase.STOPPED_OUT}
)

# Forward-only transitions. Single-tier positions close in one step.
ALLOWED_TRANSITIONS: Dict[StrategyType, Dict[PositionPhase, FrozenSet[PositionPhase]]] = {
    StrategyType.MULTI_TIER: {
        PositionPhase.INITIAL: frozenset({PositionPhase.TP1_FILLED, PositionPhase.STOPPED_OUT}),
        PositionPhase.TP1_FILLED: frozenset({PositionPhase.TP2_FILLED, PositionPhase.STOPPED_OUT}),
        PositionPhase.TP2_FILLED: frozenset({PositionPhase.COMPLETED, PositionPhase.STOPPED_OUT}),
    },
    StrategyType.SINGLE: {
        PositionPhase.INITIAL: frozenset({PositionPhase.COMPLETED, PositionPhase.STOPPED_OUT}),
    },
}


class FillType(str, Enum):
    """Which of the position's orders filled"""
    TIER1 = "tier1"
    TIER2 = "tier2"
    SL = "sl"
    MANUAL = "manual"


class AuditAction(str, Enum):
    """Audit trail actions"""
    POSITION_CREATED = "position_created"
    TIER1_FILLED = "tier1_filled"
    TIER2_FILLED = "tier2_filled"
    SL_FILLED = "sl_filled"
    MANUAL_FILLED = "manual_filled"
    SL_UPDATED_BREAK_EVEN = "sl_updated_break_even"
    SL_UPDATED_TRAILING = "sl_updated_trailing"
    POSITION_STOPPED_OUT = "position_stopped_out"
    POSITION_COMPLETED = "position_completed"
    ROLLBACK_EXECUTED = "rollback_executed"
    EMERGENCY_STOP_PLACED = "emergency_stop_placed"
    ERROR_OCCURRED = "error_occurred"


FILL_AUDIT_ACTIONS: Dict[FillType, AuditAction] = {
    FillType.TIER1: AuditAction.TIER1_FILLED,
    FillType.TIER2: AuditAction.TIER2_FILLED,
    FillType.SL: AuditAction.SL_FILLED,
    FillType.MANUAL: AuditAction.MANUAL_FILLED,
}


class ErrorSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ==================== POSITION STATE ====================

class PositionState(DomainModel):
    """
    Managed position.

    Created once the entry and every conditional order are on the
    exchange. Mutated only by the fill detector (journal) and the stop-loss
    manager (phase, stop, remaining size). Never deleted.

    Invariant: remaining_size equals the sizes of tiers not yet filled
    plus the runner, until the position is terminal (then 0).
    """

    id: str = Field(default_factory=new_id)
    contract: str
    direction: PositionDirection
    size: int = Field(..., gt=0)
    entry_price: Decimal
    entry_order_id: str
    strategy_type: StrategyType

    # Tiers
    tier1_size: int = 0
    tier2_size: int = 0
    runner_size: int = 0
    tier1_order_id: Optional[str] = None
    tier2_order_id: Optional[str] = None
    tier1_price: Optional[Decimal] = None
    tier2_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None

    # Stop
    current_stop_order_id: str
    original_stop_price: Decimal
    current_stop_price: Decimal

    # Progress
    phase: PositionPhase = PositionPhase.INITIAL
    remaining_size: int
    realized_pnl: Decimal = Decimal("0")

    # Contract
    quanto_multiplier: Decimal = Decimal("1")
    leverage: int = 1

    # Exchange binding (never secrets)
    credential_ref: str
    settle: str = "usdt"

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_multi_tier(self) -> bool:
        return self.strategy_type == StrategyType.MULTI_TIER

    @property
    def group_key(self) -> Tuple[str, str]:
        return (self.credential_ref, self.settle)

    def can_transition_to(self, phase: PositionPhase) -> bool:
        allowed = ALLOWED_TRANSITIONS[self.strategy_type].get(self.phase, frozenset())
        return phase in allowed

    def pending_orders(self) -> List[Tuple[str, FillType]]:
        """
        Order ids whose fill is not yet reflected in the phase.

        Tier orders drop out once their phase has been reached; the
        current stop stays pending until the position is terminal.
        """
        if self.is_terminal:
            return []

        pending: List[Tuple[str, FillType]] = []
        if self.phase == PositionPhase.INITIAL and self.tier1_order_id:
            pending.append((self.tier1_order_id, FillType.TIER1))
        if (
            self.phase in (PositionPhase.INITIAL, PositionPhase.TP1_FILLED)
            and self.tier2_order_id
        ):
            pending.append((self.tier2_order_id, FillType.TIER2))
        pending.append((self.current_stop_order_id, FillType.SL))
        return pending

    def fill_size_for(self, fill_type: FillType) -> int:
        """Contracts reserved for a fill of the given type."""
        if fill_type == FillType.TIER1:
            return self.tier1_size
        if fill_type == FillType.TIER2:
            return self.tier2_size
        return self.remaining_size


# ==================== FILL JOURNAL ====================

class OrderFillEvent(DomainModel):
    """
    One detected fill. order_id is the idempotency key: a fill is
    journaled at most once and processed at most once.
    """

    order_id: str
    position_id: str
    contract: str
    fill_type: FillType
    fill_size: int = Field(..., ge=0)
    fill_price: Decimal
    fill_time: datetime = Field(default_factory=utc_now)
    processed: bool = False
    processed_at: Optional[datetime] = None
    recorded_at: datetime = Field(default_factory=utc_now)


# ==================== AUDIT ====================

class ActionAudit(DomainModel):
    """Append-only audit record."""

    id: str = Field(default_factory=new_id)
    position_id: str
    action: AuditAction
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    success: bool = True
    error: Optional[str] = None


# ==================== MONITORING STATE ====================

class MonitoringSettings(DomainModel):
    """Tunables persisted with the monitoring state."""

    check_interval_seconds: int = Field(default=30, gt=0)
    max_retries: int = Field(default=3, ge=0)
    break_even_buffer: Decimal = Decimal("0.0005")
    trailing_distance: Decimal = Decimal("0.01")


class MonitoringError(DomainModel):
    timestamp: datetime = Field(default_factory=utc_now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str
    position_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class MonitoringState(DomainModel):
    """Process-wide singleton."""

    is_active: bool = False
    last_check: Optional[datetime] = None
    tracked_position_ids: List[str] = Field(default_factory=list)
    errors: List[MonitoringError] = Field(default_factory=list)
    settings: MonitoringSettings = Field(default_factory=MonitoringSettings)


# ==================== PLANNER INPUT / OUTPUT ====================

class TradeRecommendation(DomainModel):
    """Upstream trade idea to execute."""

    contract: str = Field(..., min_length=1)
    direction: PositionDirection
    stop_loss: Decimal = Field(..., gt=0)
    take_profit: Decimal = Field(..., gt=0)
    trade_size_usd: Decimal = Field(..., gt=0)
    leverage: int = Field(default=1, ge=1, le=125)

    @field_validator("contract")
    @classmethod
    def normalize_contract(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_price_sides(self) -> "TradeRecommendation":
        if self.direction == PositionDirection.LONG and self.stop_loss >= self.take_profit:
            raise ValueError("Long stop_loss must be below take_profit")
        if self.direction == PositionDirection.SHORT and self.stop_loss <= self.take_profit:
            raise ValueError("Short stop_loss must be above take_profit")
        return self


class SizingRequest(DomainModel):
    """Where and how to execute."""

    credential_ref: str = "default"
    settle: str = "usdt"
    strategy_type: StrategyType = StrategyType.MULTI_TIER

    @field_validator("settle")
    @classmethod
    def normalize_settle(cls, v: str) -> str:
        return v.strip().lower()


class CancellationResult(DomainModel):
    """Outcome of cancelling one conditional order."""

    order_id: str
    success: bool
    error: Optional[str] = None


class ExecutionResult(DomainModel):
    position_id: str
    entry_order_id: str
    tier_order_ids: List[str]
    stop_order_id: str
    strategy_type: StrategyType
    quantity: int
    persisted: bool = True
