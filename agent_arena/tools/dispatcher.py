"""Tool execution dispatcher.

Routes ANALYZE requests from the decision loop to the indicator library, the
expression sandbox or the simulation registry. Every call runs in a worker
thread under a timeout and every failure comes back as a ``ToolResult`` error
string, so a bad tool call can never break a decision cycle.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from agent_arena.core.config import ToolConfig
from agent_arena.core.models import MarketTicker, ToolResult
from agent_arena.sandbox import SandboxRejection, SimulationError, SimulationRegistry, evaluate
from agent_arena.tools import indicators as ind
from agent_arena.tools.indicators import IndicatorError

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any], List[MarketTicker]], Any]


# Shown to the oracle in the default prompt
TOOL_DESCRIPTIONS: Dict[str, str] = {
    "statistics": '{"data": [numbers]} -> mean, median, std_dev, variance, min, max, count',
    "correlation": '{"series1": [numbers], "series2": [numbers]} -> Pearson correlation',
    "rsi": '{"symbol": str, "period": 14} -> relative strength index',
    "macd": '{"symbol": str} -> macd, signal, histogram',
    "bollinger": '{"symbol": str, "period": 20, "stdDev": 2} -> upper, middle, lower',
    "ema": '{"symbol": str, "period": int} -> exponential moving average',
    "sma": '{"symbol": str, "period": int} -> simple moving average',
    "volatility": '{"symbol": str, "period": int} -> annualized volatility',
    "trend": '{"symbol": str, "period": 20} -> direction, strength, confidence, slope',
    "support_resistance": '{"symbol": str} -> support and resistance levels',
    "kelly": '{"winRate": 0-1, "avgWin": num, "avgLoss": num} -> half-Kelly fraction',
    "position_size": '{"balance": num, "riskPercent": num, "stopDistance": num} -> margin size',
    "risk_reward": '{"entry": num, "stop": num, "target": num} -> reward/risk ratio',
    "price_change": '{"symbol": str} -> absolute, percent, current_price',
    "current_price": '{"symbol": str} -> price',
    "custom_equation": '{"expression": str, "variables": {name: number}} -> result',
    "define_simulation": (
        '{"name": str, "equations": [{"name", "expression"}], '
        '"variables": [{"name", "defaultValue", "source"}]} -> simulationId'
    ),
    "run_simulation": '{"simulationId": str, "parameters": {name: number}} -> outputs, confidence',
}


def _pick(parameters: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present parameter among camelCase/snake_case spellings."""
    for name in names:
        if name in parameters and parameters[name] is not None:
            return parameters[name]
    return default


def _require(parameters: Dict[str, Any], *names: str) -> Any:
    value = _pick(parameters, *names)
    if value is None:
        raise IndicatorError(f"Missing required parameter '{names[0]}'")
    return value


class ToolDispatcher:
    """Executes named analysis tools against a market snapshot.

    Args:
        registry: Simulation registry shared across cycles
        config: Tool configuration (timeout, synthetic history length)
    """

    def __init__(
        self,
        registry: Optional[SimulationRegistry] = None,
        config: Optional[ToolConfig] = None,
    ):
        self.registry = registry or SimulationRegistry()
        self.config = config or ToolConfig()
        self._handlers: Dict[str, Handler] = {
            "statistics": self._statistics,
            "correlation": self._correlation,
            "rsi": self._rsi,
            "macd": self._macd,
            "bollinger": self._bollinger,
            "ema": self._ema,
            "sma": self._sma,
            "volatility": self._volatility,
            "trend": self._trend,
            "support_resistance": self._support_resistance,
            "kelly": self._kelly,
            "position_size": self._position_size,
            "risk_reward": self._risk_reward,
            "price_change": self._price_change,
            "current_price": self._current_price,
            "custom_equation": self._custom_equation,
            "define_simulation": self._define_simulation,
            "run_simulation": self._run_simulation,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    async def dispatch(
        self,
        tool: str,
        parameters: Optional[Dict[str, Any]],
        market: Sequence[MarketTicker],
    ) -> ToolResult:
        """Run one tool. Never raises; failures are returned as errors."""
        name = tool if isinstance(tool, str) else repr(tool)
        handler = self._handlers.get(tool) if isinstance(tool, str) else None
        if handler is None:
            logger.warning("dispatcher.unknown_tool", tool=name)
            return ToolResult.failure(name, f"Unknown tool: {name}")

        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            return ToolResult.failure(name, "Parameters must be an object")

        timeout = self.config.tool_timeout_seconds
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(handler, parameters, list(market)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("dispatcher.tool_timeout", tool=name, timeout=timeout)
            return ToolResult.failure(name, f"Tool timed out after {timeout}s")
        except (IndicatorError, SandboxRejection, SimulationError) as e:
            logger.info("dispatcher.tool_rejected", tool=name, error=str(e))
            return ToolResult.failure(name, str(e))
        except Exception as e:
            logger.error("dispatcher.tool_failed", tool=name, error=str(e))
            return ToolResult.failure(name, f"Tool execution failed: {e}")

        logger.debug("dispatcher.tool_completed", tool=name)
        return ToolResult.success(name, result)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _prices(self, parameters: Dict[str, Any], market: List[MarketTicker]):
        ticker = ind.get_ticker(market, parameters.get("symbol"))
        return ticker, ind.price_history(ticker, self.config.price_history_points)

    # -------------------------------------------------------------------------
    # Statistical tools
    # -------------------------------------------------------------------------

    def _statistics(self, parameters, market):
        return ind.statistics(_require(parameters, "data"))

    def _correlation(self, parameters, market):
        value = ind.correlation(
            _require(parameters, "series1", "series_1"),
            _require(parameters, "series2", "series_2"),
        )
        return {"correlation": value}

    # -------------------------------------------------------------------------
    # Technical indicators
    # -------------------------------------------------------------------------

    def _rsi(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_pick(parameters, "period", default=14))
        return {"value": ind.rsi(prices, period), "symbol": ticker.symbol, "period": period}

    def _macd(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        return {**ind.macd(prices), "symbol": ticker.symbol}

    def _bollinger(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_pick(parameters, "period", default=20))
        std_dev = ind.as_number(_pick(parameters, "stdDev", "std_dev", default=2), "stdDev")
        if std_dev <= 0:
            raise IndicatorError("Parameter 'stdDev' must be positive")
        return {**ind.bollinger(prices, period, std_dev), "symbol": ticker.symbol, "period": period}

    def _ema(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_require(parameters, "period"))
        values = ind.ema_series(prices, period)
        return {
            "value": float(values[-1]),
            "values": ind.tail(values),
            "symbol": ticker.symbol,
            "period": period,
        }

    def _sma(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_require(parameters, "period"))
        values = ind.sma_series(prices, period)
        return {
            "value": float(values[-1]),
            "values": ind.tail(values),
            "symbol": ticker.symbol,
            "period": period,
        }

    def _volatility(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_require(parameters, "period"))
        return {"value": ind.volatility(prices, period), "symbol": ticker.symbol, "period": period}

    def _trend(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        period = ind.as_period(_pick(parameters, "period", default=20), minimum=2)
        return {**ind.trend(prices, period), "symbol": ticker.symbol}

    def _support_resistance(self, parameters, market):
        ticker, prices = self._prices(parameters, market)
        return {**ind.support_resistance(prices), "symbol": ticker.symbol}

    # -------------------------------------------------------------------------
    # Risk management
    # -------------------------------------------------------------------------

    def _kelly(self, parameters, market):
        win_rate = ind.as_number(_require(parameters, "winRate", "win_rate"), "winRate")
        avg_win = ind.as_number(_require(parameters, "avgWin", "avg_win"), "avgWin")
        avg_loss = ind.as_number(_require(parameters, "avgLoss", "avg_loss"), "avgLoss")
        return {
            "fraction": ind.kelly(win_rate, avg_win, avg_loss),
            "winRate": win_rate,
            "avgWin": avg_win,
            "avgLoss": avg_loss,
        }

    def _position_size(self, parameters, market):
        balance = ind.as_number(_require(parameters, "balance"), "balance")
        risk_percent = ind.as_number(
            _require(parameters, "riskPercent", "risk_percent"), "riskPercent"
        )
        stop_distance = ind.as_number(
            _require(parameters, "stopDistance", "stop_distance"), "stopDistance"
        )
        return {
            "size": ind.position_size(balance, risk_percent, stop_distance),
            "balance": balance,
            "riskPercent": risk_percent,
        }

    def _risk_reward(self, parameters, market):
        entry = ind.as_number(_require(parameters, "entry"), "entry")
        stop = ind.as_number(_require(parameters, "stop"), "stop")
        target = ind.as_number(_require(parameters, "target"), "target")
        return {
            "ratio": ind.risk_reward(entry, stop, target),
            "entry": entry,
            "stop": stop,
            "target": target,
        }

    # -------------------------------------------------------------------------
    # Market data
    # -------------------------------------------------------------------------

    def _price_change(self, parameters, market):
        ticker = ind.get_ticker(market, parameters.get("symbol"))
        return {**ind.price_change(ticker), "symbol": ticker.symbol}

    def _current_price(self, parameters, market):
        ticker = ind.get_ticker(market, parameters.get("symbol"))
        return {"price": float(ticker.price), "symbol": ticker.symbol}

    # -------------------------------------------------------------------------
    # Sandbox and simulations
    # -------------------------------------------------------------------------

    def _custom_equation(self, parameters, market):
        expression = _require(parameters, "expression")
        variables = _pick(parameters, "variables", default={})
        evaluation = evaluate(expression, variables, self.registry.config)
        if not evaluation.accepted:
            raise SandboxRejection(evaluation.reason)
        return {"result": evaluation.value, "expression": expression, "variables": variables}

    def _define_simulation(self, parameters, market):
        variables = _pick(parameters, "variables")
        defaults = _pick(parameters, "variableDefaults", "variable_defaults", default={})
        if isinstance(variables, dict):
            defaults = {**variables, **defaults}
            variables = None
        if not isinstance(defaults, dict):
            raise IndicatorError("Parameter 'variableDefaults' must be an object")

        name = _require(parameters, "name")
        simulation_id = self.registry.define_simulation(
            name=name,
            equations=_require(parameters, "equations"),
            variable_defaults=defaults,
            variables=variables,
            description=_pick(parameters, "description", default=""),
        )
        return {"simulationId": simulation_id, "name": name, "status": "defined"}

    def _run_simulation(self, parameters, market):
        simulation_id = _require(parameters, "simulationId", "simulation_id")
        overrides = _pick(parameters, "parameters", "overrides", default={})
        if not isinstance(overrides, dict):
            raise IndicatorError("Parameter 'parameters' must be an object")

        simulation = self.registry.get(simulation_id)
        market_values: Dict[str, float] = {}
        unresolved: Dict[str, str] = {}
        for var_name, source in simulation.sources.items():
            if var_name in overrides:
                continue
            try:
                market_values[var_name] = ind.resolve_market_source(source, market)
            except IndicatorError as e:
                unresolved[var_name] = str(e)

        run = self.registry.run_simulation(simulation_id, overrides, market_values)
        result = run.to_dict()
        result["simulationId"] = simulation_id
        result["metadata"]["unresolved_sources"] = unresolved
        return result
