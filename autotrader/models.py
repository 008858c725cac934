"""Data model for signals, allocations, executions and positions.

Every record the core persists is a pydantic model so that the in-memory
store, the ClickHouse store and the HTTP surface all share one schema.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from autotrader.config import DEFAULT_LOT_SIZE, DEFAULT_PRODUCT
from autotrader.errors import InvalidTransitionError, PositionStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Short unique id. Execution ids double as broker order tags (max 20 chars)."""
    return f"{prefix}{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SignalAction(str, Enum):
    """Action carried by an inbound signal."""

    BUY = "BUY"
    SELL = "SELL"
    ENTRY = "ENTRY"      # alias of BUY
    EXIT = "EXIT"
    SHORT = "SHORT"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


class ExecutionStatus(str, Enum):
    """Lifecycle status of one order attempt."""

    PENDING = "PENDING"          # Recorded, not yet sent to the broker
    SUBMITTED = "SUBMITTED"      # Accepted by the broker
    EXECUTED = "EXECUTED"        # Filled
    FAILED = "FAILED"            # Terminal
    CANCELLED = "CANCELLED"      # Terminal


class OrderType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    EXIT = "EXIT"


class TransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeType(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    PARTIAL_EXIT = "PARTIAL_EXIT"


class ExitReason(str, Enum):
    SIGNAL = "SIGNAL"
    AUTO_SQUARE_OFF = "AUTO_SQUARE_OFF"
    EMERGENCY = "EMERGENCY"
    MANUAL = "MANUAL"
    EXTERNAL = "EXTERNAL"


class TradingType(str, Enum):
    INTRADAY = "INTRADAY"
    POSITIONAL = "POSITIONAL"


class SizingMethod(str, Enum):
    FIXED_QUANTITY = "FIXED_QUANTITY"
    RISK_PERCENTAGE = "RISK_PERCENTAGE"


class OptionType(str, Enum):
    CE = "CE"      # Call
    PE = "PE"      # Put


OPTIONS = "OPTIONS"


_FORWARD_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.SUBMITTED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.SUBMITTED: {
        ExecutionStatus.EXECUTED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.EXECUTED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


# ---------------------------------------------------------------------------
# Configuration records (owned by account management, read-only here)
# ---------------------------------------------------------------------------


class OptionRules(BaseModel):
    """Contract selection for bots that trade index options instead of the signal instrument."""

    exchange: str = "NFO"
    strike_step: int = Field(default=50, gt=0)
    strikes_each_side: int = Field(default=3, ge=0)
    min_delta: float = Field(default=0.6, ge=0, le=1)
    min_days_to_expiry: int = Field(default=3, ge=0, description="Roll to the next expiry below this.")
    implied_volatility: float = Field(default=0.15, gt=0, description="Used for the delta estimate.")


class Bot(BaseModel):
    """A strategy that emits signals and the execution rules attached to it."""

    bot_id: str
    name: str = ""
    symbol: str = ""
    exchange: str = "NFO"
    instrument_type: str = "FUTURES"
    is_active: bool = True
    trading_type: TradingType = TradingType.INTRADAY
    intraday_exit_time: Optional[str] = Field(default="15:15", description="HH:MM local.")
    auto_square_off: bool = True
    lot_size: int = Field(default=DEFAULT_LOT_SIZE, ge=1)
    product: str = DEFAULT_PRODUCT
    allow_multiple_positions: bool = False
    allow_short: bool = False
    option_rules: OptionRules = Field(default_factory=OptionRules)

    @property
    def is_intraday(self) -> bool:
        return self.trading_type == TradingType.INTRADAY

    @property
    def is_options(self) -> bool:
        return self.instrument_type == OPTIONS


class TradingWindow(BaseModel):
    start: str = "09:15"
    end: str = "15:30"


class UserBotAllocation(BaseModel):
    """One user's subscription to a bot with dedicated capital."""

    allocation_id: str
    user_id: str
    bot_id: str
    allocated_amount: float = Field(default=0.0, ge=0)
    is_active: bool = True
    quantity: int = Field(default=0, ge=0, description="Fixed size in units.")
    position_sizing_method: SizingMethod = SizingMethod.FIXED_QUANTITY
    risk_percentage: float = Field(default=2.0, ge=0)
    max_trades_per_day: int = Field(default=1, ge=0)
    enabled_hours: TradingWindow = Field(default_factory=TradingWindow)


class BrokerCredentials(BaseModel):
    user_id: str
    api_key: str
    access_token: str


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class WebhookSignal(BaseModel):
    """One inbound trading instruction and its fan-out summary."""

    signal_id: str = Field(default_factory=lambda: new_id("SG"))
    bot_id: str
    action: SignalAction
    symbol: str
    exchange: str
    instrument_type: str = "FUTURES"
    price: Optional[float] = None
    quantity: Optional[int] = None
    stop_loss: Optional[float] = None
    target: Optional[float] = None
    emergency_stop: bool = False
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    total_users_targeted: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    processed: bool = False
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_exit(self) -> bool:
        return self.action == SignalAction.EXIT


# ---------------------------------------------------------------------------
# Execution ledger
# ---------------------------------------------------------------------------


class TradeExecution(BaseModel):
    """One order attempt recorded in the execution ledger."""

    execution_id: str = Field(default_factory=lambda: new_id("EX"))
    user_id: str
    bot_id: str
    signal_id: Optional[str] = None
    allocation_id: Optional[str] = None
    symbol: str
    exchange: str
    instrument_type: str = "FUTURES"
    underlying: Optional[str] = Field(
        default=None, description="Signal instrument an option contract was picked for.",
    )
    option_type: Optional[OptionType] = None
    product: str = "MIS"
    quantity: int = 0
    order_type: OrderType
    transaction_type: TransactionType
    broker_order_id: Optional[str] = None
    requested_price: Optional[float] = None
    executed_price: Optional[float] = None
    executed_quantity: Optional[int] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: Optional[str] = None
    retry_count: int = 0
    trade_type: TradeType = TradeType.ENTRY
    exit_reason: Optional[ExitReason] = None
    position_id: Optional[str] = None
    is_emergency_exit: bool = False
    pnl: Optional[float] = None
    fees: Optional[float] = None
    submitted_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def slot_symbol(self) -> str:
        return self.underlying or self.symbol

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ExecutionStatus.EXECUTED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def transition(self, status: ExecutionStatus, **changes: Any) -> None:
        """Move forward in the ledger state machine, applying field changes."""
        if status not in _FORWARD_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.execution_id}: {self.status.value} -> {status.value} not allowed"
            )
        for key, value in changes.items():
            setattr(self, key, value)
        now = utcnow()
        if status == ExecutionStatus.SUBMITTED and self.submitted_at is None:
            self.submitted_at = now
        if status == ExecutionStatus.EXECUTED and self.executed_at is None:
            self.executed_at = now
        self.status = status
        self.updated_at = now


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


class ExitExecution(BaseModel):
    execution_id: str
    signal_id: Optional[str] = None
    quantity: int = Field(..., gt=0)
    price: float
    time: datetime = Field(default_factory=utcnow)
    order_id: str = ""
    reason: ExitReason = ExitReason.SIGNAL
    pnl: float = 0.0
    fees: float = 0.0


class Position(BaseModel):
    """Aggregate exposure for one user in one instrument, entry to close."""

    position_id: str = Field(default_factory=lambda: new_id("POS"))
    user_id: str
    bot_id: str
    allocation_id: Optional[str] = None
    symbol: str
    exchange: str
    instrument_type: str = "FUTURES"
    underlying: Optional[str] = None
    option_type: Optional[OptionType] = None
    product: str = "MIS"
    side: PositionSide
    status: PositionStatus = PositionStatus.OPEN

    entry_execution_id: str
    entry_signal_id: Optional[str] = None
    entry_price: float
    entry_quantity: int = Field(..., gt=0)
    entry_time: datetime = Field(default_factory=utcnow)
    entry_order_id: str = ""

    current_quantity: int
    average_price: float
    exit_executions: list[ExitExecution] = Field(default_factory=list)

    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_fees: float = 0.0

    is_intraday: bool = False
    scheduled_exit_time: Optional[str] = None
    auto_square_off_scheduled: bool = False
    square_off_attempts: int = 0

    stop_loss: Optional[float] = None
    target: Optional[float] = None

    exit_reason: Optional[ExitReason] = None
    emergency_square_off: bool = False
    reconciliation_note: Optional[str] = None
    closed_at: Optional[datetime] = None

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def sign(self) -> int:
        return 1 if self.side == PositionSide.LONG else -1

    @property
    def is_open(self) -> bool:
        return self.status != PositionStatus.CLOSED

    @property
    def exited_quantity(self) -> int:
        return sum(e.quantity for e in self.exit_executions)

    @property
    def slot_symbol(self) -> str:
        return self.underlying or self.symbol

    @property
    def direction(self) -> PositionSide:
        """Market view of the position. A held put is bearish even though it is bought."""
        if self.option_type == OptionType.PE:
            return PositionSide.SHORT
        if self.option_type == OptionType.CE:
            return PositionSide.LONG
        return self.side

    @property
    def net_realized_pnl(self) -> float:
        return self.realized_pnl - self.total_fees

    def derive_status(self) -> PositionStatus:
        if self.current_quantity == 0:
            return PositionStatus.CLOSED
        if self.current_quantity < self.entry_quantity:
            return PositionStatus.PARTIAL
        return PositionStatus.OPEN

    def check_invariants(self) -> None:
        """Raise PositionStateError if quantities and status disagree."""
        expected = self.entry_quantity - self.exited_quantity
        if self.current_quantity != expected:
            raise PositionStateError(
                f"{self.position_id}: current_quantity {self.current_quantity} "
                f"!= entry {self.entry_quantity} - exits {self.exited_quantity}"
            )
        if self.current_quantity < 0:
            raise PositionStateError(f"{self.position_id}: negative quantity")
        if self.status != self.derive_status():
            raise PositionStateError(
                f"{self.position_id}: status {self.status.value} does not match "
                f"quantity {self.current_quantity}/{self.entry_quantity}"
            )

    def mark_to_market(self, price: float) -> None:
        """Update unrealized P&L for the open quantity."""
        self.unrealized_pnl = (price - self.average_price) * self.current_quantity * self.sign
        self.updated_at = utcnow()


# ---------------------------------------------------------------------------
# Daily P&L sink
# ---------------------------------------------------------------------------


class DailyPnLSnapshot(BaseModel):
    """End-of-day P&L for one user, written at most once per date."""

    user_id: str
    date: date
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0
    fees: float = 0.0
    net_pnl: float = Field(default=0.0, description="total_pnl less the day's charges.")
    bot_pnl: dict[str, float] = Field(default_factory=dict)
    open_positions: int = 0
    closed_positions: int = 0
    created_at: datetime = Field(default_factory=utcnow)
