"""Prompt rendering for the decision loop.

A prompt is the agent's template with portfolio/market placeholders filled
in, followed by decision history, active cooldowns, recent orders, the round
header and the analysis transcript of the current cycle.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence

from agent_arena.core.models import (
    AnalysisStep,
    DecisionLog,
    MarketTicker,
    Order,
    Portfolio,
    RoundNote,
    utc_now,
)
from agent_arena.tools.dispatcher import TOOL_DESCRIPTIONS

RULE = "-" * 60


def _tool_catalog() -> str:
    return "\n".join(f"- {name}: {desc}" for name, desc in TOOL_DESCRIPTIONS.items())


DEFAULT_PROMPT_TEMPLATE = (
    """You are a quantitative crypto futures trader managing a paper portfolio.
Today's date is {{currentDate}}.

Your context:
- Total Portfolio Value: {{totalValue}}
- Available Balance (for new positions): {{availableBalance}}
- Current Unrealized PnL: {{unrealizedPnl}}

Open Positions:
{{openPositions}}

Live Market Data:
{{marketData}}

You may run analysis tools before deciding. To run a tool respond with ONE
JSON object:
{ "action": "ANALYZE", "tool": "<name>", "parameters": { ... }, "reasoning": "..." }

Available tools:
"""
    + _tool_catalog()
    + """

When you are ready, respond with a JSON array of decisions:
- LONG/SHORT require symbol, size (margin in USD, minimum $50), leverage
  (1-25x), stopLoss and takeProfit.
- CLOSE requires closePositionId.
- Return [] to hold.
Every trade pays a 3% fee on notional when opening and again when closing.
After closing a symbol you cannot reopen it for 30 minutes.
"""
)


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def _price(value: Any) -> str:
    return f"{Decimal(str(value)):.4f}"


def format_positions(portfolio: Portfolio, now: Optional[datetime] = None) -> str:
    """One line per open position, or "None"."""
    if not portfolio.positions:
        return "None"
    now = now or utc_now()
    lines = []
    for p in portfolio.positions:
        hours_open = (now - p.opened_at).total_seconds() / 3600
        sl = f"${_price(p.stop_loss)}" if p.stop_loss is not None else "N/A"
        tp = f"${_price(p.take_profit)}" if p.take_profit is not None else "N/A"
        lines.append(
            f"Position {p.id}: {p.side.value.upper()} {p.symbol} | Entry: ${_price(p.entry_price)} "
            f"| Current PnL: ${_money(p.unrealized_pnl)} ({p.pnl_pct:.2f}%) "
            f"| Margin: ${_money(p.margin_usd)} | Leverage: {p.leverage}x "
            f"| Liquidation: ${_price(p.liquidation_price)} | Open: {hours_open:.1f}h "
            f"| SL: {sl} | TP: {tp}"
        )
    return "\n".join(lines)


def format_market(market: Sequence[MarketTicker]) -> str:
    lines = []
    for t in market:
        sign = "+" if t.price_24h_change >= 0 else ""
        lines.append(
            f"{t.symbol}: ${_price(t.price)} | 24h: {sign}{t.price_24h_change:.2f}% ({t.trend_label})"
        )
    return "\n".join(lines) if lines else "No market data"


def render_template(
    template: str,
    portfolio: Portfolio,
    market: Sequence[MarketTicker],
    now: Optional[datetime] = None,
) -> str:
    """Fill the template placeholders."""
    now = now or utc_now()
    replacements = {
        "{{totalValue}}": _money(portfolio.total_value),
        "{{availableBalance}}": _money(portfolio.available_balance),
        "{{unrealizedPnl}}": _money(portfolio.unrealized_pnl),
        "{{openPositions}}": format_positions(portfolio, now),
        "{{marketData}}": format_market(market),
        "{{currentDate}}": now.isoformat(),
    }
    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


def format_history(history: Sequence[DecisionLog], now: Optional[datetime] = None) -> str:
    """Recent cycles, newest first, with their decisions and execution notes."""
    if not history:
        return ""
    now = now or utc_now()
    parts = [f"\n\n=== RECENT DECISION HISTORY (Last {len(history)} Cycles) ==="]
    for index, log in enumerate(history, start=1):
        minutes_ago = int((now - log.timestamp).total_seconds() // 60)
        parts.append(RULE)
        parts.append(f"Cycle #{index} - {minutes_ago / 60:.1f}h ago ({minutes_ago}min)")
        if not log.decisions:
            parts.append("  No trades taken (HOLD)")
        for decision in log.decisions:
            target = getattr(decision, "symbol", None) or getattr(decision, "close_position_id", "")
            parts.append(f"  {decision.action} {target}".rstrip())
        for note in log.notes:
            parts.append(f"  {note}")
        if log.error is not None:
            parts.append(f"  Error: {log.error.value}")
    return "\n".join(parts)


def format_cooldowns(cooldowns: Mapping[str, datetime], now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    active = []
    for symbol, until in cooldowns.items():
        if until > now:
            minutes = -(-int((until - now).total_seconds()) // 60)
            active.append(f"{symbol}: {minutes}min remaining")
    if not active:
        return ""
    return "\n\nActive Position Cooldowns (symbols you cannot trade yet):\n" + "\n".join(active)


def format_recent_orders(orders: Sequence[Order]) -> str:
    if not orders:
        return ""
    lines = ["\n\nRecent Closed Orders:"]
    for o in orders:
        lines.append(
            f"{o.symbol} {o.side.value.upper()} {o.leverage}x | Entry: ${_price(o.entry_price)} "
            f"| Exit: ${_price(o.exit_price)} | Net PnL: ${_money(o.net_pnl)} | Reason: {o.reason.value}"
        )
    return "\n".join(lines)


def format_round_header(round_number: int, max_rounds: int, symbol_count: int) -> str:
    header = f"\n\n=== ITERATION {round_number} of {max_rounds} ===\n"
    if round_number >= max_rounds:
        return header + (
            "FINAL ITERATION: You MUST return trading decisions now as a JSON array "
            "(LONG/SHORT/CLOSE/HOLD). ANALYZE requests are not accepted in this round."
        )
    remaining = max_rounds - round_number
    return header + (
        f"You have {remaining} more iterations after this one across {symbol_count} symbols. "
        "Respond with one ANALYZE object to compute a metric, or with a JSON array of "
        "final decisions if your analysis is sufficient."
    )


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def format_transcript(transcript: Sequence[AnalysisStep], notes: Sequence[RoundNote]) -> str:
    """Previous analysis results and round notes in round order."""
    entries: List[tuple] = [(s.iteration, 0, s) for s in transcript]
    entries += [(n.iteration, 1, n) for n in notes]
    if not entries:
        return "\n\nNo previous analysis yet."

    parts = ["\n\nPrevious Analysis Results:"]
    for _, _, entry in sorted(entries, key=lambda e: (e[0], e[1])):
        if isinstance(entry, AnalysisStep):
            parts.append(f"\n[Iteration {entry.iteration} - Tool: {entry.tool}]")
            parts.append(f"Reasoning: {entry.reasoning}")
            parts.append(f"Parameters: {_dump(entry.parameters)}")
            if entry.error is not None:
                parts.append(f"ERROR: {entry.error}")
            else:
                parts.append(f"Result: {_dump(entry.result)}")
        else:
            parts.append(f"\n[Iteration {entry.iteration} - Note]")
            parts.append(entry.message)
    return "\n".join(parts)


def render_prompt(
    template: str,
    portfolio: Portfolio,
    market: Sequence[MarketTicker],
    history: Sequence[DecisionLog],
    cooldowns: Mapping[str, datetime],
    recent_orders: Sequence[Order],
    round_number: int,
    max_rounds: int,
    transcript: Sequence[AnalysisStep],
    notes: Sequence[RoundNote],
    now: Optional[datetime] = None,
) -> str:
    """Full prompt for one round of a decision cycle."""
    now = now or utc_now()
    return (
        render_template(template, portfolio, market, now)
        + format_history(history, now)
        + format_cooldowns(cooldowns, now)
        + format_recent_orders(recent_orders)
        + format_round_header(round_number, max_rounds, len(market))
        + format_transcript(transcript, notes)
    )
