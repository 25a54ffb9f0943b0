"""Analysis tools and the dispatcher that runs them for agents."""
from agent_arena.tools.dispatcher import TOOL_DESCRIPTIONS, ToolDispatcher
from agent_arena.tools.indicators import IndicatorError, price_history, resolve_market_source

__all__ = [
    "TOOL_DESCRIPTIONS",
    "ToolDispatcher",
    "IndicatorError",
    "price_history",
    "resolve_market_source",
]
