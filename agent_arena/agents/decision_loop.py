"""Decision loop controller.

Runs one trading cycle for one agent as a bounded state machine:

    ROUND(r) --ANALYZE, r < MAX--> ROUND(r + 1)
    ROUND(r) --decision array----> FINAL
    ROUND(MAX) --anything else---> FINAL_EMPTY

Failed oracle calls and unparseable responses cost a round and leave a note
in the transcript for the next prompt. The whole cycle runs under a
wall-clock budget; nothing in here raises to the caller.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

import structlog

from agent_arena.agents.oracle import ReasoningOracle
from agent_arena.agents.parsing import AnalyzeRequest, ParseError, parse_response
from agent_arena.agents.prompts import render_prompt
from agent_arena.core.config import DecisionLoopConfig
from agent_arena.core.models import (
    AnalysisStep,
    CycleError,
    CycleResult,
    Decision,
    DecisionLog,
    MarketTicker,
    Order,
    Portfolio,
    RoundNote,
    utc_now,
)
from agent_arena.tools.dispatcher import ToolDispatcher

logger = structlog.get_logger(__name__)

RESPONSE_PREVIEW_CHARS = 200


@dataclass
class _CycleState:
    transcript: List[AnalysisStep] = field(default_factory=list)
    notes: List[RoundNote] = field(default_factory=list)
    rounds_used: int = 0
    prompt: str = ""
    last_error: Optional[CycleError] = None
    last_detail: Optional[str] = None

    def fail(self, round_number: int, kind: CycleError, message: str) -> None:
        self.notes.append(RoundNote(iteration=round_number, message=message))
        self.last_error = kind
        self.last_detail = message

    def result(
        self,
        decisions: Optional[List[Decision]] = None,
        error: Optional[CycleError] = None,
        detail: Optional[str] = None,
    ) -> CycleResult:
        return CycleResult(
            decisions=decisions or [],
            rounds_used=self.rounds_used,
            error=error,
            error_detail=detail,
            transcript=list(self.transcript),
            notes=list(self.notes),
            prompt=self.prompt,
        )


class DecisionLoop:
    """
    Turns oracle responses into validated trading decisions.

    Args:
        oracle: External reasoning service
        dispatcher: Tool dispatcher for ANALYZE requests
        config: Round budget, timeouts and prompt limits
        agent_id: Bound into every log line when given
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        dispatcher: ToolDispatcher,
        config: Optional[DecisionLoopConfig] = None,
        agent_id: Optional[str] = None,
    ):
        self.oracle = oracle
        self.dispatcher = dispatcher
        self.config = config or DecisionLoopConfig()
        self.logger = logger.bind(agent_id=agent_id) if agent_id else logger

    async def run_cycle(
        self,
        portfolio: Portfolio,
        market: Sequence[MarketTicker],
        prompt_template: str,
        history: Sequence[DecisionLog] = (),
        cooldowns: Optional[Mapping[str, datetime]] = None,
        recent_orders: Sequence[Order] = (),
        now: Optional[datetime] = None,
    ) -> CycleResult:
        """Run rounds until a decision array, the round budget or the cycle budget ends it."""
        state = _CycleState()
        budget = self.config.cycle_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self._run_rounds(
                    state,
                    portfolio,
                    list(market),
                    prompt_template,
                    list(history)[: self.config.history_depth],
                    dict(cooldowns or {}),
                    list(recent_orders)[: self.config.recent_orders_depth],
                    now or utc_now(),
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                "decision_loop.cycle_timeout",
                budget_seconds=budget,
                rounds_used=state.rounds_used,
            )
            return state.result(
                error=CycleError.CYCLE_TIMEOUT,
                detail=f"Decision cycle exceeded {budget}s budget",
            )

        self.logger.info(
            "decision_loop.cycle_completed",
            rounds_used=result.rounds_used,
            decisions=len(result.decisions),
            tool_calls=len(result.transcript),
            error=result.error.value if result.error else None,
        )
        return result

    async def _run_rounds(
        self,
        state: _CycleState,
        portfolio: Portfolio,
        market: List[MarketTicker],
        template: str,
        history: List[DecisionLog],
        cooldowns: dict,
        recent_orders: List[Order],
        now: datetime,
    ) -> CycleResult:
        max_rounds = self.config.max_rounds

        for round_number in range(1, max_rounds + 1):
            final_round = round_number == max_rounds
            state.rounds_used = round_number
            state.prompt = render_prompt(
                template,
                portfolio,
                market,
                history,
                cooldowns,
                recent_orders,
                round_number,
                max_rounds,
                state.transcript,
                state.notes,
                now,
            )

            if len(state.prompt) > self.config.max_prompt_chars:
                detail = (
                    f"Prompt size {len(state.prompt)} chars exceeds limit of "
                    f"{self.config.max_prompt_chars}"
                )
                self.logger.error("decision_loop.prompt_too_large", size=len(state.prompt))
                return state.result(error=CycleError.PROMPT_TOO_LARGE, detail=detail)

            response = await self._ask_oracle(state, round_number)
            if response is None:
                continue

            try:
                parsed = parse_response(response, allow_analyze=not final_round)
            except ParseError as e:
                preview = response[:RESPONSE_PREVIEW_CHARS]
                self.logger.warning("decision_loop.parse_failed", round=round_number, error=str(e))
                state.fail(
                    round_number,
                    CycleError.PARSE_ERROR,
                    f"Could not parse response ({e}). Respond with one ANALYZE object or a "
                    f"JSON array of final decisions. Response: {preview}...",
                )
                continue

            if isinstance(parsed, AnalyzeRequest):
                await self._run_tool(state, round_number, parsed, market)
                continue

            for message in parsed.dropped:
                state.notes.append(RoundNote(iteration=round_number, message=message))
            return state.result(decisions=parsed.decisions)

        self.logger.warning(
            "decision_loop.final_empty",
            rounds_used=state.rounds_used,
            error=state.last_error.value if state.last_error else None,
        )
        return state.result(
            error=state.last_error or CycleError.PARSE_ERROR,
            detail=state.last_detail or "No decision array after the final round",
        )

    async def _ask_oracle(self, state: _CycleState, round_number: int) -> Optional[str]:
        timeout = self.config.round_timeout_seconds
        try:
            return await asyncio.wait_for(self.oracle.complete(state.prompt), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("decision_loop.oracle_timeout", round=round_number, timeout=timeout)
            state.fail(round_number, CycleError.ORACLE_ERROR, f"Oracle call timed out after {timeout}s")
        except Exception as e:
            self.logger.error("decision_loop.oracle_failed", round=round_number, error=str(e))
            state.fail(round_number, CycleError.ORACLE_ERROR, f"Oracle call failed: {e}")
        return None

    async def _run_tool(
        self,
        state: _CycleState,
        round_number: int,
        request: AnalyzeRequest,
        market: List[MarketTicker],
    ) -> None:
        result = await self.dispatcher.dispatch(request.tool, request.parameters, market)
        state.transcript.append(
            AnalysisStep(
                iteration=round_number,
                tool=request.tool,
                parameters=request.parameters,
                result=result.result,
                error=result.error,
                reasoning=request.reasoning,
            )
        )
        self.logger.info(
            "decision_loop.tool_called",
            round=round_number,
            tool=request.tool,
            ok=result.ok,
        )
