"""Unit tests for the indicator library."""
import math
from decimal import Decimal

import numpy as np
import pytest

from agent_arena.core.models import MarketTicker
from agent_arena.tools import indicators as ind
from agent_arena.tools.indicators import IndicatorError


# =============================================================================
# Statistics
# =============================================================================

class TestStatistics:
    """Descriptive statistics and correlation."""

    def test_statistics(self):
        result = ind.statistics([1, 2, 3, 4])

        assert result["mean"] == pytest.approx(2.5)
        assert result["median"] == pytest.approx(2.5)
        assert result["variance"] == pytest.approx(1.25)
        assert result["std_dev"] == pytest.approx(math.sqrt(1.25))
        assert result["min"] == 1
        assert result["max"] == 4
        assert result["count"] == 4

    @pytest.mark.parametrize("data", [[], "abc", [1, "a"], [1, True], [1, float("inf")]])
    def test_statistics_rejects_bad_input(self, data):
        with pytest.raises(IndicatorError):
            ind.statistics(data)

    def test_correlation(self):
        assert ind.correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
        assert ind.correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)
        assert ind.correlation([1, 1, 1], [1, 2, 3]) == 0.0

    def test_correlation_length_mismatch(self):
        with pytest.raises(IndicatorError):
            ind.correlation([1, 2, 3], [1, 2])

    def test_volatility_of_flat_series_is_zero(self):
        assert ind.volatility(np.full(30, 100.0), 20) == pytest.approx(0.0)

    def test_volatility_needs_enough_data(self):
        with pytest.raises(IndicatorError, match="Insufficient data"):
            ind.volatility(np.full(10, 100.0), 20)


# =============================================================================
# Technical Indicators
# =============================================================================

class TestTechnicalIndicators:
    """Moving averages, RSI, MACD, Bollinger, trend, levels."""

    def test_ema_series(self):
        values = ind.ema_series(np.array([1.0, 2.0, 3.0]), 2)

        assert values[0] == pytest.approx(1.0)
        assert values[1] == pytest.approx(5 / 3)
        assert values[2] == pytest.approx(23 / 9)

    def test_sma_series(self):
        values = ind.sma_series(np.array([1.0, 2.0, 3.0, 4.0]), 2)

        assert list(values) == pytest.approx([1.5, 2.5, 3.5])

    def test_rsi_extremes(self, rising_prices):
        prices = np.array(rising_prices)

        assert ind.rsi(prices) == pytest.approx(100.0)
        assert ind.rsi(prices[::-1]) == pytest.approx(0.0)

    def test_rsi_balanced(self):
        prices = np.array([10.0 + (i % 2) for i in range(15)])

        assert ind.rsi(prices) == pytest.approx(50.0)

    def test_rsi_needs_enough_data(self):
        with pytest.raises(IndicatorError):
            ind.rsi(np.array([1.0, 2.0]), 14)

    def test_macd_flat(self):
        result = ind.macd(np.full(40, 50.0))

        assert result["macd"] == pytest.approx(0.0)
        assert result["signal"] == pytest.approx(0.0)
        assert result["histogram"] == pytest.approx(0.0)

    def test_macd_needs_26_prices(self):
        with pytest.raises(IndicatorError):
            ind.macd(np.full(25, 50.0))

    def test_bollinger_flat(self):
        result = ind.bollinger(np.full(20, 10.0))

        assert result["upper"] == result["middle"] == result["lower"] == pytest.approx(10.0)

    def test_trend_bullish(self, rising_prices):
        result = ind.trend(np.array(rising_prices))

        assert result["direction"] == "bullish"
        assert result["confidence"] == pytest.approx(1.0)
        assert result["slope"] > 0

    def test_trend_neutral(self):
        result = ind.trend(np.full(20, 10.0))

        assert result["direction"] == "neutral"
        assert result["slope"] == pytest.approx(0.0)

    def test_trend_period_too_small(self, rising_prices):
        with pytest.raises(IndicatorError):
            ind.trend(np.array(rising_prices), 1)

    def test_support_resistance(self):
        prices = np.array([
            100, 101, 102, 101, 100, 99, 98, 99, 100, 101, 102,
            103, 102, 101, 100, 99, 98.1, 99, 100, 101, 102,
        ], dtype=float)

        result = ind.support_resistance(prices)

        assert result["support"] == pytest.approx([98.05])
        assert result["resistance"] == pytest.approx([102.5])

    def test_support_resistance_needs_20_prices(self):
        with pytest.raises(IndicatorError):
            ind.support_resistance(np.full(19, 1.0))


# =============================================================================
# Risk Management
# =============================================================================

class TestRiskTools:
    """Kelly, position sizing and reward/risk."""

    def test_kelly(self):
        assert ind.kelly(0.6, 2, 1) == pytest.approx(0.2)

    def test_kelly_clamped(self):
        assert ind.kelly(0.1, 1, 1) == 0.0
        assert ind.kelly(0.99, 100, 1) == pytest.approx(0.4)

    @pytest.mark.parametrize("win_rate", [0, 1, -0.5, 1.5])
    def test_kelly_invalid_win_rate(self, win_rate):
        with pytest.raises(IndicatorError):
            ind.kelly(win_rate, 1, 1)

    def test_position_size(self):
        assert ind.position_size(10000, 1, 5) == pytest.approx(2000.0)

    def test_position_size_capped(self):
        assert ind.position_size(10000, 1, 2) == pytest.approx(4000.0)

    def test_position_size_invalid(self):
        with pytest.raises(IndicatorError):
            ind.position_size(10000, 0, 2)

    def test_risk_reward(self):
        assert ind.risk_reward(100, 95, 110) == pytest.approx(2.0)

    def test_risk_reward_zero_risk(self):
        with pytest.raises(IndicatorError):
            ind.risk_reward(100, 100, 110)


# =============================================================================
# Market Data
# =============================================================================

class TestMarketData:
    """Ticker lookup, price history and simulation sources."""

    def test_get_ticker_case_insensitive(self, market):
        assert ind.get_ticker(market, "btcusdt").symbol == "BTCUSDT"

    def test_get_ticker_unknown(self, market):
        with pytest.raises(IndicatorError, match="not found"):
            ind.get_ticker(market, "DOGEUSDT")

    def test_price_change(self):
        ticker = MarketTicker(symbol="XUSDT", price=Decimal("110"), price_24h_change=10.0)

        result = ind.price_change(ticker)

        assert result["absolute"] == pytest.approx(10.0)
        assert result["percent"] == pytest.approx(10.0)
        assert result["current_price"] == pytest.approx(110.0)

    def test_synthetic_history_is_deterministic(self, market):
        btc = market[0]

        first = ind.price_history(btc, 100)
        second = ind.price_history(btc, 100)

        assert len(first) == 100
        assert np.array_equal(first, second)
        assert first[-1] == pytest.approx(60000.0)
        assert np.all(first > 0)

    def test_ticker_history_is_used(self):
        ticker = MarketTicker(symbol="XUSDT", price=Decimal("4"), history=[1, 2, 3])

        assert list(ind.price_history(ticker)) == [1.0, 2.0, 3.0, 4.0]

    def test_ticker_history_ending_at_price(self):
        ticker = MarketTicker(symbol="XUSDT", price=Decimal("3"), history=[1, 2, 3])

        assert list(ind.price_history(ticker)) == [1.0, 2.0, 3.0]

    def test_resolve_market_source(self, market):
        assert ind.resolve_market_source("BTCUSDT_price", market) == pytest.approx(60000.0)
        assert ind.resolve_market_source("ETHUSDT_change", market) == pytest.approx(-0.012)
        assert ind.resolve_market_source("avg_change", market) == pytest.approx((2.5 - 1.2) / 3 / 100)
        assert ind.resolve_market_source("volatility", market) == pytest.approx((2.5 + 1.2) / 3 / 100)
        assert ind.resolve_market_source("correlation", market) == pytest.approx(0.75)

    def test_resolve_unknown_source(self, market):
        with pytest.raises(IndicatorError, match="Unknown variable source"):
            ind.resolve_market_source("funding_rate", market)
