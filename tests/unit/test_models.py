"""Unit tests for data models."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from agent_arena.core.models import (
    CloseDecision,
    CycleResult,
    CycleError,
    HoldDecision,
    MarketTicker,
    Order,
    Portfolio,
    Position,
    PositionSide,
    ShortDecision,
    ToolResult,
    decision_adapter,
    find_ticker,
)


def _position(side=PositionSide.LONG, **overrides):
    fields = dict(
        symbol="BTCUSDT",
        side=side,
        entry_price=Decimal("100"),
        margin_usd=Decimal("50"),
        leverage=Decimal("4"),
        liquidation_price=Decimal("75"),
    )
    fields.update(overrides)
    return Position(**fields)


# =============================================================================
# MarketTicker Tests
# =============================================================================

class TestMarketTicker:
    """Test MarketTicker model."""

    def test_camel_case_alias(self):
        ticker = MarketTicker.model_validate({"symbol": "BTCUSDT", "price": "60000", "price24hChange": 1.5})

        assert ticker.price == Decimal("60000")
        assert ticker.price_24h_change == 1.5

    def test_price_must_be_positive(self):
        with pytest.raises(ValidationError):
            MarketTicker(symbol="BTCUSDT", price=Decimal("0"))

    @pytest.mark.parametrize(
        "change,label",
        [(1.5, "Strong Bullish"), (0.5, "Bullish"), (0.0, "Neutral"), (-0.5, "Bearish"), (-3, "Strong Bearish")],
    )
    def test_trend_label(self, change, label):
        assert MarketTicker(symbol="X", price=Decimal("1"), price_24h_change=change).trend_label == label

    def test_find_ticker(self, market):
        assert find_ticker(market, "ETHUSDT").price == Decimal("3000")
        assert find_ticker(market, "DOGEUSDT") is None


# =============================================================================
# Position / Order Tests
# =============================================================================

class TestPositionAndOrder:
    """PnL arithmetic and order immutability."""

    def test_long_pnl(self):
        position = _position()

        assert position.pnl_at(Decimal("110")) == Decimal("20")
        assert position.notional == Decimal("200")

    def test_short_pnl(self):
        position = _position(PositionSide.SHORT, liquidation_price=Decimal("125"))

        assert position.pnl_at(Decimal("110")) == Decimal("-20")

    def test_pnl_pct(self):
        position = _position(unrealized_pnl=Decimal("10"))

        assert position.pnl_pct == Decimal("20")

    def test_order_is_frozen(self):
        order = Order(
            position_id="pos_1",
            symbol="BTCUSDT",
            side=PositionSide.LONG,
            entry_price=Decimal("100"),
            exit_price=Decimal("90"),
            margin_usd=Decimal("50"),
            leverage=Decimal("4"),
            realized_pnl=Decimal("-20"),
            fee=Decimal("12"),
        )

        assert order.net_pnl == Decimal("-32")
        assert not order.is_profitable
        with pytest.raises(ValidationError):
            order.fee = Decimal("0")


# =============================================================================
# Portfolio Tests
# =============================================================================

class TestPortfolio:
    """Derived portfolio figures."""

    def test_totals(self):
        portfolio = Portfolio(
            balance=Decimal("1000"),
            positions=[
                _position(unrealized_pnl=Decimal("15")),
                _position(PositionSide.SHORT, liquidation_price=Decimal("125"), unrealized_pnl=Decimal("-5")),
            ],
        )

        assert portfolio.unrealized_pnl == Decimal("10")
        assert portfolio.margin_in_use == Decimal("100")
        assert portfolio.total_value == Decimal("1010")
        assert portfolio.equity == Decimal("1110")

    def test_negative_balance_rejected(self):
        with pytest.raises(ValidationError):
            Portfolio(balance=Decimal("-1"))

    def test_get_position(self):
        position = _position()
        portfolio = Portfolio(balance=Decimal("0"), positions=[position])

        assert portfolio.get_position(position.id) is position
        assert portfolio.get_position("missing") is None


# =============================================================================
# Decision Tests
# =============================================================================

class TestDecisions:
    """Tagged decision union."""

    def test_short_decision(self):
        decision = decision_adapter.validate_python({
            "action": "SHORT", "symbol": "solusdt", "size": "75", "leverage": "3",
            "stopLoss": 160, "takeProfit": 140,
        })

        assert isinstance(decision, ShortDecision)
        assert decision.side is PositionSide.SHORT
        assert decision.symbol == "SOLUSDT"

    def test_close_decision_alias(self):
        decision = decision_adapter.validate_python({"action": "CLOSE", "closePositionId": "pos_1"})

        assert isinstance(decision, CloseDecision)
        assert decision.close_position_id == "pos_1"

    def test_hold_ignores_extra_fields(self):
        decision = decision_adapter.validate_python({"action": "HOLD", "symbol": "BTCUSDT"})

        assert isinstance(decision, HoldDecision)

    @pytest.mark.parametrize("field", ["size", "leverage", "stopLoss", "takeProfit"])
    def test_open_fields_required(self, field):
        payload = {"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 2,
                   "stopLoss": 1, "takeProfit": 2}
        del payload[field]

        with pytest.raises(ValidationError):
            decision_adapter.validate_python(payload)


# =============================================================================
# Result Tests
# =============================================================================

class TestResults:
    """Tool and cycle results."""

    def test_tool_result(self):
        assert ToolResult.success("rsi", {"value": 50}).ok
        failure = ToolResult.failure("rsi", "boom")
        assert not failure.ok
        assert failure.result is None

    def test_cycle_result_failed(self):
        assert not CycleResult().failed
        assert CycleResult(error=CycleError.CYCLE_TIMEOUT).failed
