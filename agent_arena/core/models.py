"""Data models for the Agent Arena trading system.

This module defines the records exchanged between the arena components:
- Market snapshot tickers fed to agents and tools
- Positions, closed orders and the portfolio owned by each agent's ledger
- Oracle decisions (a tagged union over LONG / SHORT / CLOSE / HOLD)
- Analysis transcript entries, tool results and decision cycle results

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class PositionSide(str, Enum):
    """Direction of a leveraged position."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is PositionSide.LONG else -1


class DecisionAction(str, Enum):
    """Actions the oracle may return in a final decision array."""
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class CloseReason(str, Enum):
    """Why a position was closed."""
    SIGNAL = "signal"             # CLOSE decision from the oracle
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    LIQUIDATION = "liquidation"
    MANUAL = "manual"             # Operator request


class CycleError(str, Enum):
    """Diagnostic error kinds a decision cycle can end with."""
    PARSE_ERROR = "parse_error"
    ORACLE_ERROR = "oracle_error"
    CYCLE_TIMEOUT = "cycle_timeout"
    PROMPT_TOO_LARGE = "prompt_too_large"


# =============================================================================
# Market Data Models
# =============================================================================

class MarketTicker(BaseModel):
    """One entry of the market snapshot.

    Attributes:
        symbol: Trading pair symbol (e.g., "BTCUSDT")
        price: Last traded price
        price_24h_change: 24h change in percent (2.5 means +2.5%)
        history: Optional recent closes, oldest first
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    symbol: str = Field(..., min_length=1, description="Trading pair symbol")
    price: Decimal = Field(..., gt=0, description="Last price")
    price_24h_change: float = Field(
        default=0.0, alias="price24hChange", description="24h change in percent"
    )
    history: Optional[List[float]] = Field(default=None, description="Recent closes")

    @property
    def trend_label(self) -> str:
        """Human readable trend bucket used in prompts."""
        change = self.price_24h_change
        if change > 1:
            return "Strong Bullish"
        if change > 0.2:
            return "Bullish"
        if change < -1:
            return "Strong Bearish"
        if change < -0.2:
            return "Bearish"
        return "Neutral"


def find_ticker(market: List[MarketTicker], symbol: str) -> Optional[MarketTicker]:
    """Look up a ticker by symbol in a market snapshot."""
    for ticker in market:
        if ticker.symbol == symbol:
            return ticker
    return None


# =============================================================================
# Position Models
# =============================================================================

class Position(BaseModel):
    """Open leveraged position held in an agent's ledger.

    Created by the ledger on open, PnL refreshed on every tick, removed from
    the portfolio when closed.
    """

    id: str = Field(default_factory=lambda: f"pos_{uuid4().hex[:12]}", description="Position ID")
    symbol: str = Field(..., description="Trading pair symbol")
    side: PositionSide = Field(..., description="Position side")
    entry_price: Decimal = Field(..., gt=0, description="Entry price")
    margin_usd: Decimal = Field(..., gt=0, description="Committed margin")
    leverage: Decimal = Field(..., ge=1, description="Leverage multiplier")
    liquidation_price: Decimal = Field(..., ge=0, description="Liquidation price")
    stop_loss: Optional[Decimal] = Field(default=None, description="Stop loss price")
    take_profit: Optional[Decimal] = Field(default=None, description="Take profit price")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="Unrealized PnL")
    opened_at: datetime = Field(default_factory=utc_now, description="Open time")

    @property
    def notional(self) -> Decimal:
        """Market exposure of the position."""
        return self.margin_usd * self.leverage

    def pnl_at(self, price: Decimal) -> Decimal:
        """PnL if the position were marked at ``price``.

        sign(side) * (price - entry) / entry * leverage * margin
        """
        move = (price - self.entry_price) / self.entry_price
        return self.side.sign * move * self.leverage * self.margin_usd

    @property
    def pnl_pct(self) -> Decimal:
        """Unrealized PnL relative to margin, in percent."""
        return (self.unrealized_pnl / self.margin_usd) * 100


# =============================================================================
# Order Models
# =============================================================================

class Order(BaseModel):
    """Immutable record of a closed position.

    Attributes:
        position_id: Position this order closed
        realized_pnl: PnL at the exit price (before fees)
        fee: Entry leg plus exit leg fee
        reason: Why the position closed
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"order_{uuid4().hex[:12]}", description="Order ID")
    position_id: str = Field(..., description="Closed position ID")
    symbol: str = Field(..., description="Trading pair symbol")
    side: PositionSide = Field(..., description="Position side")
    entry_price: Decimal = Field(..., gt=0)
    exit_price: Decimal = Field(..., gt=0)
    margin_usd: Decimal = Field(..., gt=0)
    leverage: Decimal = Field(..., ge=1)
    realized_pnl: Decimal = Field(...)
    fee: Decimal = Field(..., ge=0)
    opened_at: Optional[datetime] = Field(default=None)
    closed_at: datetime = Field(default_factory=utc_now)
    reason: CloseReason = Field(default=CloseReason.SIGNAL)

    @property
    def net_pnl(self) -> Decimal:
        """PnL after fees."""
        return self.realized_pnl - self.fee

    @property
    def is_profitable(self) -> bool:
        return self.net_pnl > 0


# =============================================================================
# Portfolio Models
# =============================================================================

class Portfolio(BaseModel):
    """Free margin and open positions of one agent."""

    balance: Decimal = Field(..., ge=0, description="Free margin")
    positions: List[Position] = Field(default_factory=list, description="Open positions")

    @property
    def available_balance(self) -> Decimal:
        return self.balance

    @property
    def unrealized_pnl(self) -> Decimal:
        """Sum of unrealized PnL across all positions."""
        return sum((p.unrealized_pnl for p in self.positions), Decimal("0"))

    @property
    def margin_in_use(self) -> Decimal:
        return sum((p.margin_usd for p in self.positions), Decimal("0"))

    @property
    def total_value(self) -> Decimal:
        """Balance plus unrealized PnL."""
        return self.balance + self.unrealized_pnl

    @property
    def equity(self) -> Decimal:
        """Balance plus committed margin plus unrealized PnL."""
        return self.balance + self.margin_in_use + self.unrealized_pnl

    def get_position(self, position_id: str) -> Optional[Position]:
        for position in self.positions:
            if position.id == position_id:
                return position
        return None


class PortfolioSummary(BaseModel):
    """Derived portfolio figures exposed in a ledger snapshot."""

    balance: Decimal
    available_balance: Decimal
    unrealized_pnl: Decimal
    margin_in_use: Decimal
    total_value: Decimal


class LedgerSnapshot(BaseModel):
    """Serializable ledger state handed to persistence and broadcast."""

    portfolio: PortfolioSummary
    positions: List[Position] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)
    cooldowns: Dict[str, datetime] = Field(default_factory=dict)
    taken_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Decision Models
# =============================================================================

class _DecisionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reasoning: str = Field(default="", description="Oracle's justification")


class OpenDecision(_DecisionBase):
    """Fields shared by LONG and SHORT decisions."""

    symbol: str = Field(..., min_length=1)
    size: Decimal = Field(..., gt=0, description="Margin in USD")
    leverage: Decimal = Field(..., gt=0)
    stop_loss: Decimal = Field(..., gt=0, alias="stopLoss")
    take_profit: Decimal = Field(..., gt=0, alias="takeProfit")

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def side(self) -> PositionSide:
        return PositionSide.LONG if self.action == DecisionAction.LONG.value else PositionSide.SHORT


class LongDecision(OpenDecision):
    action: Literal["LONG"] = "LONG"


class ShortDecision(OpenDecision):
    action: Literal["SHORT"] = "SHORT"


class CloseDecision(_DecisionBase):
    action: Literal["CLOSE"] = "CLOSE"
    close_position_id: str = Field(..., min_length=1, alias="closePositionId")


class HoldDecision(_DecisionBase):
    action: Literal["HOLD"] = "HOLD"


Decision = Annotated[
    Union[LongDecision, ShortDecision, CloseDecision, HoldDecision],
    Field(discriminator="action"),
]

decision_adapter: TypeAdapter = TypeAdapter(Decision)


# =============================================================================
# Analysis & Cycle Models
# =============================================================================

class AnalysisStep(BaseModel):
    """One tool invocation recorded in a decision cycle transcript."""

    iteration: int = Field(..., ge=1)
    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    reasoning: str = ""


class RoundNote(BaseModel):
    """Diagnostic note appended when a round produced no usable response."""

    iteration: int = Field(..., ge=1)
    message: str


class ToolResult(BaseModel):
    """Outcome of a dispatched tool call: either ``result`` or ``error``."""

    tool: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, tool: str, result: Any) -> "ToolResult":
        return cls(tool=tool, result=result)

    @classmethod
    def failure(cls, tool: str, error: str) -> "ToolResult":
        return cls(tool=tool, error=error)


class CycleResult(BaseModel):
    """Result of one decision cycle for one agent."""

    decisions: List[Decision] = Field(default_factory=list)
    rounds_used: int = Field(default=0, ge=0)
    error: Optional[CycleError] = None
    error_detail: Optional[str] = None
    transcript: List[AnalysisStep] = Field(default_factory=list)
    notes: List[RoundNote] = Field(default_factory=list)
    prompt: str = ""

    @property
    def failed(self) -> bool:
        return self.error is not None


class DecisionLog(BaseModel):
    """Decisions of one completed cycle plus how the ledger handled them."""

    timestamp: datetime = Field(default_factory=utc_now)
    decisions: List[Decision] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    rounds_used: int = 0
    error: Optional[CycleError] = None
