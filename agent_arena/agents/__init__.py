"""Agent decision cycle: oracle clients, prompt rendering, response parsing."""
from agent_arena.agents.decision_loop import DecisionLoop
from agent_arena.agents.oracle import HttpOracle, OracleError, ReasoningOracle
from agent_arena.agents.parsing import (
    AnalyzeRequest,
    DecisionBatch,
    ParseError,
    extract_json,
    parse_response,
)
from agent_arena.agents.prompts import DEFAULT_PROMPT_TEMPLATE, render_prompt

__all__ = [
    "DecisionLoop",
    "HttpOracle",
    "OracleError",
    "ReasoningOracle",
    "AnalyzeRequest",
    "DecisionBatch",
    "ParseError",
    "extract_json",
    "parse_response",
    "DEFAULT_PROMPT_TEMPLATE",
    "render_prompt",
]
