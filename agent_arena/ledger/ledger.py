"""Position and portfolio ledger for one agent.

The ledger is the only component allowed to mutate an agent's money. It
validates every open against an ordered list of rules (the first failing rule
rejects the request and nothing is changed), marks positions to market,
fires automatic closes (liquidation, stop-loss, take-profit) and records every
closed position as an immutable Order.

Money model (isolated margin):
- Opening deducts the margin from the free balance.
- Closing returns ``margin + realized_pnl - fees`` where realized PnL is
  floored at ``-margin`` and fees are charged on the entry and exit legs.
- An open must leave enough free balance to pay the round-trip fees of every
  open position including the new one, so the balance can never go negative.

CRITICAL: every check runs before any state changes. A rejected request must
leave the ledger bit-for-bit unchanged.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from agent_arena.core.config import LedgerConfig, ledger_config
from agent_arena.core.models import (
    CloseDecision,
    CloseReason,
    Decision,
    HoldDecision,
    LedgerSnapshot,
    MarketTicker,
    OpenDecision,
    Order,
    Portfolio,
    PortfolioSummary,
    Position,
    PositionSide,
    find_ticker,
    utc_now,
)

logger = structlog.get_logger(__name__)

PriceLike = Union[Decimal, int, float, str]


class LedgerRejection(ValueError):
    """A ledger precondition failed; the ledger state is unchanged."""

    def __init__(self, reason: str, rule: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.rule = rule


@dataclass
class LedgerCheck:
    """Result of one open-position rule.

    Attributes:
        passed: Whether the request satisfied the rule
        reason: Human-readable explanation if the rule failed
        rule_triggered: Name of the failing rule
    """
    passed: bool
    reason: str = ""
    rule_triggered: Optional[str] = None


@dataclass
class OpenRequest:
    symbol: str
    side: PositionSide
    margin_usd: Decimal
    leverage: Decimal
    entry_price: Decimal
    stop_loss: Optional[Decimal]
    take_profit: Optional[Decimal]
    now: datetime


@dataclass
class LedgerRule:
    name: str
    check_fn: Callable[[OpenRequest], LedgerCheck]


def to_decimal(value: PriceLike, name: str = "value") -> Decimal:
    """Convert a price/amount to a finite Decimal without binary float artifacts.

    Raises:
        LedgerRejection: for NaN, infinities and strings that are not numbers.
    """
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise LedgerRejection(f"Invalid {name} {value!r}", name.replace(" ", "_"))
    if not result.is_finite():
        raise LedgerRejection(f"Invalid {name} {value!r}", name.replace(" ", "_"))
    return result


class Ledger:
    """
    Single-agent margin ledger.

    Callers must serialize operations on one ledger (the arena engine holds a
    per-agent lock); different agents' ledgers are independent.
    """

    def __init__(
        self,
        initial_balance: Optional[PriceLike] = None,
        config: Optional[LedgerConfig] = None,
        agent_id: Optional[str] = None,
    ):
        self.config = config or ledger_config
        balance = to_decimal(initial_balance) if initial_balance is not None else self.config.initial_balance_usd
        if balance < 0:
            raise ValueError("Initial balance cannot be negative")

        self.portfolio = Portfolio(balance=balance)
        self.cooldowns: Dict[str, datetime] = {}
        self.orders: List[Order] = []
        self.logger = logger.bind(agent_id=agent_id) if agent_id else logger

        self._rules: List[LedgerRule] = [
            LedgerRule("entry_price", self._check_entry_price),
            LedgerRule("min_margin", self._check_min_margin),
            LedgerRule("leverage_range", self._check_leverage),
            LedgerRule("available_balance", self._check_available_balance),
            LedgerRule("symbol_cooldown", self._check_cooldown),
            LedgerRule("liquidation_price", self._check_liquidation_price),
            LedgerRule("protective_levels", self._check_protective_levels),
            LedgerRule("fee_reserve", self._check_fee_reserve),
        ]

    # =========================================================================
    # Derived figures
    # =========================================================================

    @property
    def balance(self) -> Decimal:
        return self.portfolio.balance

    @property
    def positions(self) -> List[Position]:
        return self.portfolio.positions

    def liquidation_price(self, side: PositionSide, entry_price: Decimal, leverage: Decimal) -> Decimal:
        """entry * (1 - 1/lev + mmr) for longs, entry * (1 + 1/lev - mmr) for shorts."""
        mmr = self.config.maintenance_margin_rate
        if side is PositionSide.LONG:
            return entry_price * (1 - 1 / leverage + mmr)
        return entry_price * (1 + 1 / leverage - mmr)

    def leg_fee(self, margin_usd: Decimal, leverage: Decimal) -> Decimal:
        """Fee charged on one leg (entry or exit)."""
        basis = margin_usd * leverage if self.config.fee_basis == "notional" else margin_usd
        return basis * self.config.fee_rate

    def round_trip_fee(self, margin_usd: Decimal, leverage: Decimal) -> Decimal:
        return 2 * self.leg_fee(margin_usd, leverage)

    def reserved_fees(self) -> Decimal:
        """Round-trip fees owed by currently open positions."""
        return sum(
            (self.round_trip_fee(p.margin_usd, p.leverage) for p in self.positions),
            Decimal("0"),
        )

    def cooldown_remaining(self, symbol: str, now: Optional[datetime] = None) -> timedelta:
        now = now or utc_now()
        until = self.cooldowns.get(symbol)
        if until is None or now >= until:
            return timedelta(0)
        return until - now

    def active_cooldowns(self, now: Optional[datetime] = None) -> Dict[str, datetime]:
        """Cooldowns still in force at ``now``; expired entries are pruned."""
        now = now or utc_now()
        for symbol in [s for s, until in self.cooldowns.items() if now >= until]:
            del self.cooldowns[symbol]
        return dict(self.cooldowns)

    # =========================================================================
    # Open rules
    # =========================================================================

    def _check_entry_price(self, request: OpenRequest) -> LedgerCheck:
        if request.entry_price <= 0:
            return LedgerCheck(False, f"Invalid entry price {request.entry_price}")
        return LedgerCheck(True)

    def _check_min_margin(self, request: OpenRequest) -> LedgerCheck:
        if request.margin_usd < self.config.min_margin_usd:
            return LedgerCheck(
                False,
                f"Margin ${request.margin_usd} is below the minimum ${self.config.min_margin_usd}",
            )
        return LedgerCheck(True)

    def _check_leverage(self, request: OpenRequest) -> LedgerCheck:
        low, high = self.config.min_leverage, self.config.max_leverage
        if request.leverage < low or request.leverage > high:
            return LedgerCheck(False, f"Leverage {request.leverage}x outside [{low}x, {high}x]")
        return LedgerCheck(True)

    def _check_available_balance(self, request: OpenRequest) -> LedgerCheck:
        if request.margin_usd > self.balance:
            return LedgerCheck(
                False,
                f"Insufficient balance: margin ${request.margin_usd} exceeds available ${self.balance}",
            )
        return LedgerCheck(True)

    def _check_cooldown(self, request: OpenRequest) -> LedgerCheck:
        remaining = self.cooldown_remaining(request.symbol, request.now)
        if remaining > timedelta(0):
            minutes = max(1, -(-int(remaining.total_seconds()) // 60))
            return LedgerCheck(False, f"{request.symbol} is in cooldown for {minutes} more minutes")
        return LedgerCheck(True)

    def _check_liquidation_price(self, request: OpenRequest) -> LedgerCheck:
        liquidation = self.liquidation_price(request.side, request.entry_price, request.leverage)
        crossed = (
            liquidation >= request.entry_price
            if request.side is PositionSide.LONG
            else liquidation <= request.entry_price
        )
        if crossed:
            return LedgerCheck(
                False, f"Liquidation price {liquidation} already crossed at entry {request.entry_price}"
            )
        return LedgerCheck(True)

    def _check_protective_levels(self, request: OpenRequest) -> LedgerCheck:
        entry, sl, tp = request.entry_price, request.stop_loss, request.take_profit
        if request.side is PositionSide.LONG:
            if sl is not None and not (0 < sl < entry):
                return LedgerCheck(False, f"Long stop-loss {sl} must be below entry {entry}")
            if tp is not None and not tp > entry:
                return LedgerCheck(False, f"Long take-profit {tp} must be above entry {entry}")
        else:
            if sl is not None and not sl > entry:
                return LedgerCheck(False, f"Short stop-loss {sl} must be above entry {entry}")
            if tp is not None and not (0 < tp < entry):
                return LedgerCheck(False, f"Short take-profit {tp} must be below entry {entry}")
        return LedgerCheck(True)

    def _check_fee_reserve(self, request: OpenRequest) -> LedgerCheck:
        required = (
            request.margin_usd
            + self.round_trip_fee(request.margin_usd, request.leverage)
            + self.reserved_fees()
        )
        if required > self.balance:
            return LedgerCheck(
                False,
                f"Insufficient balance for margin plus round-trip fees: need ${required}, have ${self.balance}",
            )
        return LedgerCheck(True)

    def check_open(self, request: OpenRequest) -> LedgerCheck:
        """Run every rule in order; the first failure wins."""
        for rule in self._rules:
            result = rule.check_fn(request)
            if not result.passed:
                result.rule_triggered = rule.name
                return result
        return LedgerCheck(True)

    # =========================================================================
    # Mutations
    # =========================================================================

    def open_position(
        self,
        symbol: str,
        side: PositionSide,
        margin_usd: PriceLike,
        leverage: PriceLike,
        entry_price: PriceLike,
        stop_loss: Optional[PriceLike] = None,
        take_profit: Optional[PriceLike] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Open a position and return its id.

        Raises:
            LedgerRejection: if any rule fails. The ledger is unchanged.
        """
        now = now or utc_now()
        request = OpenRequest(
            symbol=symbol.upper(),
            side=PositionSide(side),
            margin_usd=to_decimal(margin_usd, "margin"),
            leverage=to_decimal(leverage, "leverage"),
            entry_price=to_decimal(entry_price, "entry price"),
            stop_loss=to_decimal(stop_loss, "stop loss") if stop_loss is not None else None,
            take_profit=to_decimal(take_profit, "take profit") if take_profit is not None else None,
            now=now,
        )
        self.active_cooldowns(now)

        check = self.check_open(request)
        if not check.passed:
            self.logger.info(
                "ledger.open_rejected",
                symbol=request.symbol,
                side=request.side.value,
                rule=check.rule_triggered,
                reason=check.reason,
            )
            raise LedgerRejection(check.reason, check.rule_triggered)

        position = Position(
            symbol=request.symbol,
            side=request.side,
            entry_price=request.entry_price,
            margin_usd=request.margin_usd,
            leverage=request.leverage,
            liquidation_price=self.liquidation_price(request.side, request.entry_price, request.leverage),
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
            opened_at=now,
        )
        self.portfolio.balance -= request.margin_usd
        self.portfolio.positions.append(position)

        self.logger.info(
            "ledger.position_opened",
            position_id=position.id,
            symbol=position.symbol,
            side=position.side.value,
            margin=str(position.margin_usd),
            leverage=str(position.leverage),
            entry_price=str(position.entry_price),
            liquidation_price=str(position.liquidation_price),
            balance=str(self.balance),
        )
        return position.id

    def close_position(
        self,
        position_id: str,
        exit_price: PriceLike,
        reason: CloseReason = CloseReason.SIGNAL,
        now: Optional[datetime] = None,
    ) -> Order:
        """Close a position at ``exit_price`` and record the Order.

        Raises:
            LedgerRejection: unknown position id or a non-positive or non-finite exit price.
        """
        now = now or utc_now()
        exit_price = to_decimal(exit_price, "exit price")
        position = self.portfolio.get_position(position_id)
        if position is None:
            raise LedgerRejection(f"Position {position_id} not found", "unknown_position")
        if exit_price <= 0:
            raise LedgerRejection(f"Invalid exit price {exit_price}", "exit_price")

        realized_pnl = max(position.pnl_at(exit_price), -position.margin_usd)
        fee = self.round_trip_fee(position.margin_usd, position.leverage)

        order = Order(
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            margin_usd=position.margin_usd,
            leverage=position.leverage,
            realized_pnl=realized_pnl,
            fee=fee,
            opened_at=position.opened_at,
            closed_at=now,
            reason=CloseReason(reason),
        )

        self.portfolio.positions = [p for p in self.positions if p.id != position_id]
        self.portfolio.balance += position.margin_usd + realized_pnl - fee
        self.orders.append(order)
        self.cooldowns[position.symbol] = now + timedelta(seconds=self.config.cooldown_seconds)

        self.logger.info(
            "ledger.position_closed",
            position_id=position.id,
            symbol=position.symbol,
            reason=order.reason.value,
            exit_price=str(exit_price),
            realized_pnl=str(realized_pnl),
            fee=str(fee),
            balance=str(self.balance),
        )
        return order

    def tick(
        self,
        mark_prices: Mapping[str, PriceLike],
        now: Optional[datetime] = None,
    ) -> List[Order]:
        """Mark positions to market and fire automatic closes.

        At most one automatic close per position per tick, in priority order
        liquidation > stop-loss > take-profit, filled at the threshold price.
        """
        now = now or utc_now()
        triggered = []
        for position in list(self.positions):
            if position.symbol not in mark_prices:
                continue
            try:
                mark = to_decimal(mark_prices[position.symbol], "mark price")
            except LedgerRejection:
                continue
            if mark <= 0:
                continue
            position.unrealized_pnl = position.pnl_at(mark)

            trigger = self._auto_close_trigger(position, mark)
            if trigger is not None:
                triggered.append((position.id, trigger))

        closed = []
        for position_id, (reason, price) in triggered:
            self.logger.warning(
                f"ledger.{reason.value}_triggered",
                position_id=position_id,
                price=str(price),
            )
            closed.append(self.close_position(position_id, price, reason, now))
        return closed

    @staticmethod
    def _auto_close_trigger(position: Position, mark: Decimal):
        if position.side is PositionSide.LONG:
            if mark <= position.liquidation_price:
                return CloseReason.LIQUIDATION, position.liquidation_price
            if position.stop_loss is not None and mark <= position.stop_loss:
                return CloseReason.STOP_LOSS, position.stop_loss
            if position.take_profit is not None and mark >= position.take_profit:
                return CloseReason.TAKE_PROFIT, position.take_profit
        else:
            if mark >= position.liquidation_price:
                return CloseReason.LIQUIDATION, position.liquidation_price
            if position.stop_loss is not None and mark >= position.stop_loss:
                return CloseReason.STOP_LOSS, position.stop_loss
            if position.take_profit is not None and mark <= position.take_profit:
                return CloseReason.TAKE_PROFIT, position.take_profit
        return None

    # =========================================================================
    # Batch application of oracle decisions
    # =========================================================================

    def apply_decisions(
        self,
        decisions: Sequence[Decision],
        market: Sequence[MarketTicker],
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Apply a decision batch at current market prices.

        Each decision succeeds or is rejected on its own; a rejection never
        stops the rest of the batch. Returns one note per decision.
        """
        now = now or utc_now()
        market = list(market)
        notes: List[str] = []

        for decision in decisions:
            if isinstance(decision, HoldDecision):
                continue
            try:
                if isinstance(decision, OpenDecision):
                    notes.append(self._apply_open(decision, market, now))
                elif isinstance(decision, CloseDecision):
                    notes.append(self._apply_close(decision, market, now))
            except LedgerRejection as e:
                label = self._describe(decision)
                notes.append(f"REJECTED {label}: {e.reason}")

        return notes

    @staticmethod
    def _describe(decision: Decision) -> str:
        if isinstance(decision, OpenDecision):
            return f"{decision.action} {decision.symbol}"
        return f"{decision.action} {decision.close_position_id}"

    def _apply_open(self, decision: OpenDecision, market: List[MarketTicker], now: datetime) -> str:
        ticker = find_ticker(market, decision.symbol)
        if ticker is None:
            raise LedgerRejection(f"{decision.symbol} not in market data", "unknown_symbol")
        position_id = self.open_position(
            symbol=decision.symbol,
            side=decision.side,
            margin_usd=decision.size,
            leverage=decision.leverage,
            entry_price=ticker.price,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            now=now,
        )
        position = self.portfolio.get_position(position_id)
        return (
            f"SUCCESS {decision.action} {decision.symbol}: opened {position_id} "
            f"margin ${decision.size} at {decision.leverage}x, entry {ticker.price}, "
            f"liquidation {position.liquidation_price:.2f}"
        )

    def _apply_close(self, decision: CloseDecision, market: List[MarketTicker], now: datetime) -> str:
        position = self.portfolio.get_position(decision.close_position_id)
        if position is None:
            raise LedgerRejection(f"Position {decision.close_position_id} not found", "unknown_position")
        ticker = find_ticker(market, position.symbol)
        if ticker is None:
            raise LedgerRejection(f"{position.symbol} not in market data", "unknown_symbol")
        order = self.close_position(position.id, ticker.price, CloseReason.SIGNAL, now)
        return (
            f"SUCCESS CLOSE {position.id} ({position.symbol}): exit {order.exit_price}, "
            f"net PnL ${order.net_pnl:.2f}"
        )

    # =========================================================================
    # Snapshot / reset
    # =========================================================================

    def summary(self) -> PortfolioSummary:
        return PortfolioSummary(
            balance=self.portfolio.balance,
            available_balance=self.portfolio.available_balance,
            unrealized_pnl=self.portfolio.unrealized_pnl,
            margin_in_use=self.portfolio.margin_in_use,
            total_value=self.portfolio.total_value,
        )

    def snapshot(self, now: Optional[datetime] = None) -> LedgerSnapshot:
        """Serializable copy of the ledger state."""
        now = now or utc_now()
        return LedgerSnapshot(
            portfolio=self.summary(),
            positions=[p.model_copy(deep=True) for p in self.positions],
            orders=list(self.orders),
            cooldowns=self.active_cooldowns(now),
            taken_at=now,
        )

    def reset(self, initial_balance: Optional[PriceLike] = None) -> None:
        """Drop all positions, orders and cooldowns and restore the balance."""
        balance = to_decimal(initial_balance) if initial_balance is not None else self.config.initial_balance_usd
        if balance < 0:
            raise ValueError("Initial balance cannot be negative")
        self.portfolio = Portfolio(balance=balance)
        self.cooldowns.clear()
        self.orders.clear()
        self.logger.info("ledger.reset", balance=str(balance))


def mark_prices(market: Sequence[MarketTicker]) -> Dict[str, Decimal]:
    """Symbol -> price map for ``Ledger.tick``."""
    return {ticker.symbol: ticker.price for ticker in market}
