"""Quantitative analysis tools available to agents.

Pure functions over numpy arrays. Each one validates its input and raises
``IndicatorError`` when parameters are invalid or there is not enough data.
Results are plain Python floats/dicts so they can be rendered into prompts.
"""

import math
import zlib
from decimal import Decimal
from numbers import Real
from typing import Any, Dict, List, Sequence

import numpy as np

from agent_arena.core.models import MarketTicker, find_ticker


class IndicatorError(ValueError):
    """Invalid tool parameters or insufficient data."""


TRADING_PERIODS_PER_YEAR = 365
TREND_NEUTRAL_SLOPE_PCT = 0.1
LEVEL_CLUSTER_THRESHOLD = 0.02
KELLY_CAP = 0.4
POSITION_SIZE_CAP = 0.4
DEFAULT_SOURCE_CORRELATION = 0.75


# =============================================================================
# Input validation
# =============================================================================

def as_number(value: Any, name: str) -> float:
    """Coerce a JSON parameter to a finite float."""
    if isinstance(value, bool) or not isinstance(value, (Real, Decimal)):
        raise IndicatorError(f"Parameter '{name}' must be a number")
    result = float(value)
    if not math.isfinite(result):
        raise IndicatorError(f"Parameter '{name}' must be finite")
    return result


def as_period(value: Any, name: str = "period", minimum: int = 1) -> int:
    """Coerce a JSON parameter to an integer window length."""
    number = as_number(value, name)
    if number != int(number) or number < minimum:
        raise IndicatorError(f"Parameter '{name}' must be an integer >= {minimum}")
    return int(number)


def as_series(values: Any, name: str = "data", minimum: int = 1) -> np.ndarray:
    """Coerce a JSON list to a 1-d float array of finite values."""
    if not isinstance(values, (list, tuple, np.ndarray)):
        raise IndicatorError(f"Parameter '{name}' must be an array of numbers")
    numbers = [as_number(v, name) for v in values]
    if len(numbers) < minimum:
        raise IndicatorError(f"Parameter '{name}' needs at least {minimum} values")
    return np.asarray(numbers, dtype=float)


def _require(prices: np.ndarray, count: int, what: str) -> None:
    if len(prices) < count:
        raise IndicatorError(
            f"Insufficient data for {what}: need {count} prices, have {len(prices)}"
        )


# =============================================================================
# Statistics
# =============================================================================

def statistics(data: Sequence[float]) -> Dict[str, float]:
    """Mean, median, population standard deviation and range of a dataset."""
    values = as_series(data, "data")
    variance = float(np.var(values))
    return {
        "mean": float(np.mean(values)),
        "median": float(np.median(values)),
        "std_dev": math.sqrt(variance),
        "variance": variance,
        "min": float(np.min(values)),
        "max": float(np.max(values)),
        "count": int(len(values)),
    }


def correlation(series1: Sequence[float], series2: Sequence[float]) -> float:
    """Pearson correlation coefficient; 0 when either series is constant."""
    a = as_series(series1, "series1")
    b = as_series(series2, "series2")
    if len(a) != len(b):
        raise IndicatorError("Series must have equal non-zero length")
    da = a - a.mean()
    db = b - b.mean()
    denominator = math.sqrt(float(np.sum(da * da)) * float(np.sum(db * db)))
    if denominator == 0:
        return 0.0
    return float(np.sum(da * db)) / denominator


def volatility(prices: np.ndarray, period: int) -> float:
    """Annualized volatility of log returns over the last ``period`` returns."""
    _require(prices, period + 1, "volatility")
    if np.any(prices <= 0):
        raise IndicatorError("Prices must be positive for volatility")
    returns = np.diff(np.log(prices))[-period:]
    return float(np.std(returns)) * math.sqrt(TRADING_PERIODS_PER_YEAR)


# =============================================================================
# Technical indicators
# =============================================================================

def ema_series(prices: np.ndarray, period: int) -> np.ndarray:
    """Exponential moving average seeded with the first price."""
    _require(prices, period, "EMA")
    multiplier = 2.0 / (period + 1)
    result = np.empty(len(prices), dtype=float)
    result[0] = prices[0]
    for i in range(1, len(prices)):
        result[i] = prices[i] * multiplier + result[i - 1] * (1 - multiplier)
    return result


def sma_series(prices: np.ndarray, period: int) -> np.ndarray:
    """Simple moving average, one value per complete window."""
    _require(prices, period, "SMA")
    window = np.ones(period, dtype=float) / period
    return np.convolve(prices, window, mode="valid")


def rsi(prices: np.ndarray, period: int = 14) -> float:
    """Relative Strength Index over the last ``period`` changes."""
    _require(prices, period + 1, "RSI")
    changes = np.diff(prices)[-period:]
    avg_gain = float(np.sum(np.where(changes > 0, changes, 0.0))) / period
    avg_loss = float(np.sum(np.where(changes < 0, -changes, 0.0))) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(prices: np.ndarray) -> Dict[str, float]:
    """MACD line (EMA12 - EMA26), 9-period signal line and histogram."""
    _require(prices, 26, "MACD")
    macd_values = ema_series(prices, 12) - ema_series(prices, 26)
    signal = ema_series(macd_values, 9)
    line = float(macd_values[-1])
    return {"macd": line, "signal": float(signal[-1]), "histogram": line - float(signal[-1])}


def bollinger(prices: np.ndarray, period: int = 20, std_dev: float = 2.0) -> Dict[str, float]:
    """Bollinger bands over the last ``period`` prices."""
    _require(prices, period, "Bollinger Bands")
    recent = prices[-period:]
    middle = float(np.mean(recent))
    width = std_dev * float(np.std(recent))
    return {"upper": middle + width, "middle": middle, "lower": middle - width}


def trend(prices: np.ndarray, period: int = 20) -> Dict[str, Any]:
    """Linear-regression trend over the last ``period`` prices.

    ``slope`` is the per-step slope as a percent of the mean price;
    ``confidence`` is the regression's R squared.
    """
    if period < 2:
        raise IndicatorError("Trend detection needs a period of at least 2")
    _require(prices, period, "trend detection")
    recent = prices[-period:]
    x = np.arange(period, dtype=float)
    mean_x = float(x.mean())
    mean_y = float(recent.mean())

    slope = float(np.sum((x - mean_x) * (recent - mean_y))) / float(np.sum((x - mean_x) ** 2))
    slope_pct = slope / mean_y * 100 if mean_y else 0.0

    predicted = mean_y + slope * (x - mean_x)
    ss_res = float(np.sum((recent - predicted) ** 2))
    ss_tot = float(np.sum((recent - mean_y) ** 2))
    r_squared = 1.0 if ss_tot == 0 else max(0.0, 1.0 - ss_res / ss_tot)

    if abs(slope_pct) < TREND_NEUTRAL_SLOPE_PCT:
        direction = "neutral"
    elif slope_pct > 0:
        direction = "bullish"
    else:
        direction = "bearish"

    return {
        "direction": direction,
        "strength": min(abs(slope_pct) / 5, 1.0),
        "confidence": r_squared,
        "slope": slope_pct,
    }


def _cluster_levels(levels: List[float], threshold: float = LEVEL_CLUSTER_THRESHOLD) -> List[float]:
    if not levels:
        return []
    ordered = sorted(levels)
    clusters = [[ordered[0]]]
    for level in ordered[1:]:
        current = clusters[-1]
        average = sum(current) / len(current)
        if abs(level - average) / average < threshold:
            current.append(level)
        else:
            clusters.append([level])
    return [sum(c) / len(c) for c in clusters]


def support_resistance(prices: np.ndarray) -> Dict[str, List[float]]:
    """Support/resistance levels from clustered local extrema (+/-2 window)."""
    _require(prices, 20, "support/resistance")
    minima: List[float] = []
    maxima: List[float] = []
    for i in range(2, len(prices) - 2):
        window = np.concatenate((prices[i - 2:i], prices[i + 1:i + 3]))
        if np.all(prices[i] < window):
            minima.append(float(prices[i]))
        if np.all(prices[i] > window):
            maxima.append(float(prices[i]))
    return {"support": _cluster_levels(minima), "resistance": _cluster_levels(maxima)}


# =============================================================================
# Risk management
# =============================================================================

def kelly(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """Half-Kelly fraction, clamped to [0, 0.4]."""
    if win_rate <= 0 or win_rate >= 1:
        raise IndicatorError("Win rate must be between 0 and 1")
    if avg_win <= 0 or avg_loss <= 0:
        raise IndicatorError("Average win and loss must be positive")
    ratio = avg_win / avg_loss
    fraction = (win_rate * ratio - (1 - win_rate)) / ratio
    return max(0.0, min(fraction / 2, KELLY_CAP))


def position_size(balance: float, risk_percent: float, stop_distance: float) -> float:
    """Margin to risk ``risk_percent`` of balance with a ``stop_distance`` % stop.

    Capped at 40% of the balance.
    """
    if balance <= 0 or risk_percent <= 0 or stop_distance <= 0:
        raise IndicatorError("All parameters must be positive")
    risk_amount = balance * risk_percent / 100
    size = risk_amount / (stop_distance / 100)
    return min(size, balance * POSITION_SIZE_CAP)


def risk_reward(entry: float, stop: float, target: float) -> float:
    risk = abs(entry - stop)
    if risk == 0:
        raise IndicatorError("Stop loss cannot equal entry price")
    return abs(target - entry) / risk


# =============================================================================
# Market data access
# =============================================================================

def get_ticker(market: Sequence[MarketTicker], symbol: Any) -> MarketTicker:
    if not isinstance(symbol, str) or not symbol:
        raise IndicatorError("Parameter 'symbol' is required")
    ticker = find_ticker(list(market), symbol.upper())
    if ticker is None:
        raise IndicatorError(f"Symbol {symbol} not found in market data")
    return ticker


def price_change(ticker: MarketTicker) -> Dict[str, float]:
    """Absolute and percent 24h change of a ticker."""
    current = float(ticker.price)
    change = ticker.price_24h_change
    if change <= -100:
        raise IndicatorError(f"Invalid 24h change for {ticker.symbol}")
    price_24h_ago = current / (1 + change / 100)
    return {"absolute": current - price_24h_ago, "percent": change, "current_price": current}


def price_history(ticker: MarketTicker, points: int = 100) -> np.ndarray:
    """Recent closes for a ticker, oldest first.

    Uses the ticker's own history when it carries one. Otherwise builds a
    deterministic series seeded by the symbol that drifts from the price 24h
    ago to the current price; the last point is always the current price.
    """
    current = float(ticker.price)
    if ticker.history:
        history = as_series(ticker.history, "history")
        if history[-1] != current:
            history = np.append(history, current)
        return history

    rng = np.random.default_rng(zlib.crc32(ticker.symbol.encode("utf-8")))
    change = ticker.price_24h_change / 100
    price = current / (1 + change) if change > -1 else current
    prices = np.empty(points, dtype=float)
    for i in range(points):
        prices[i] = price
        drift = (current - price) / (points - i) * 0.5
        noise = (rng.random() - 0.5) * price * 0.02
        price = max(price + drift + noise, current * 1e-6)
    prices[-1] = current
    return prices


def resolve_market_source(source: str, market: Sequence[MarketTicker]) -> float:
    """Map a simulation variable source name to a value from the market snapshot.

    Supported sources:
        price_change_24h / avg_change: mean 24h change as a fraction
        volatility / vol: mean absolute 24h change as a fraction
        <symbol>_price / <symbol>_change: a ticker's price or 24h change fraction
        correlation: a fixed typical crypto correlation of 0.75
    """
    if not isinstance(source, str) or not source:
        raise IndicatorError("Variable source must be a non-empty string")
    key = source.lower()

    if "price_change_24h" in key or "avg_change" in key:
        if not market:
            raise IndicatorError("No market data for source " + source)
        return sum(t.price_24h_change for t in market) / len(market) / 100

    if "volatility" in key or "vol" in key:
        if not market:
            raise IndicatorError("No market data for source " + source)
        return sum(abs(t.price_24h_change) for t in market) / len(market) / 100

    for ticker in market:
        if ticker.symbol.lower() in key:
            if "price" in key:
                return float(ticker.price)
            if "change" in key:
                return ticker.price_24h_change / 100

    if "correlation" in key:
        return DEFAULT_SOURCE_CORRELATION

    raise IndicatorError(f"Unknown variable source: {source}")


def tail(values: np.ndarray, count: int = 10) -> List[float]:
    """Last ``count`` values as a plain list."""
    return [float(v) for v in values[-count:]]
