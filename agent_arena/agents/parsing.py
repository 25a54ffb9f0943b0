"""Tolerant parsing of oracle responses.

The oracle answers in free-form text that should contain either one ANALYZE
object (a tool call) or one JSON array of decisions. The first top-level
decision array (empty, or holding at least one object) is preferred, then the
first top-level object carrying an "action". Code fences and prose, including
arrays of plain values such as `[30, 70]`, are ignored.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import structlog
from pydantic import ValidationError

from agent_arena.core.models import Decision, HoldDecision, decision_adapter

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_OPENER_RE = re.compile(r"[\[{]")

ANALYZE_ACTION = "ANALYZE"


class ParseError(ValueError):
    """Response matches neither the ANALYZE shape nor the decision-array shape."""


@dataclass
class AnalyzeRequest:
    """Tool call requested by the oracle."""
    tool: str
    parameters: Dict[str, Any]
    reasoning: str = "No reasoning provided"


@dataclass
class DecisionBatch:
    """Validated final decisions; HOLD items are already filtered out.

    Attributes:
        decisions: Actionable LONG / SHORT / CLOSE decisions
        dropped: One note per item that failed validation
        holds: Number of HOLD items filtered out
    """
    decisions: List[Decision] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    holds: int = 0


ParsedResponse = Union[AnalyzeRequest, DecisionBatch]


def strip_code_fences(text: str) -> str:
    """Replace markdown code fences with their contents."""
    return _FENCE_RE.sub(lambda m: m.group(1), text)


def iter_json_values(text: str) -> Iterator[Any]:
    """Yield every top-level JSON array/object embedded in ``text``, in order."""
    decoder = json.JSONDecoder()
    pos = 0
    while True:
        match = _OPENER_RE.search(text, pos)
        if match is None:
            return
        start = match.start()
        try:
            value, end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pos = start + 1
            continue
        yield value
        pos = end


def is_decision_array(value: Any) -> bool:
    """An empty list, or a list holding at least one object."""
    return isinstance(value, list) and (not value or any(isinstance(item, dict) for item in value))


def extract_json(text: str) -> Optional[Any]:
    """First decision array, else first object with an action, else first object, else None."""
    if not isinstance(text, str) or not text:
        return None
    values = list(iter_json_values(strip_code_fences(text)))
    for value in values:
        if is_decision_array(value):
            return value
    objects = [value for value in values if isinstance(value, dict)]
    for value in objects:
        if _action_of(value):
            return value
    return objects[0] if objects else None


def _action_of(item: Dict[str, Any]) -> str:
    action = item.get("action")
    return action.strip().upper() if isinstance(action, str) else ""


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def validate_decisions(items: List[Any]) -> DecisionBatch:
    """Validate decision items one by one against the tagged union."""
    batch = DecisionBatch()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            batch.dropped.append(f"Dropped decision {index}: not an object")
            continue
        action = _action_of(item)
        if action == ANALYZE_ACTION:
            batch.dropped.append(f"Dropped decision {index}: ANALYZE is not a final decision")
            continue
        try:
            decision = decision_adapter.validate_python({**item, "action": action})
        except ValidationError as e:
            batch.dropped.append(f"Dropped decision {index} ({action or 'no action'}): {_describe(e)}")
            continue
        if isinstance(decision, HoldDecision):
            batch.holds += 1
            continue
        batch.decisions.append(decision)
    return batch


def parse_response(text: str, allow_analyze: bool = True) -> ParsedResponse:
    """Classify an oracle response as a tool call or a decision batch.

    Raises:
        ParseError: no usable JSON, an object that is not a decision, a
            malformed ANALYZE request, or ANALYZE when ``allow_analyze`` is False.
    """
    value = extract_json(text)
    if value is None:
        raise ParseError("No valid JSON array or object found in response")

    if isinstance(value, dict):
        action = _action_of(value)
        if action == ANALYZE_ACTION:
            if not allow_analyze:
                raise ParseError("ANALYZE is not allowed in the final round; a decision array is required")
            tool = value.get("tool")
            parameters = value.get("parameters")
            if not isinstance(tool, str) or not tool or not isinstance(parameters, dict):
                raise ParseError("ANALYZE request requires a tool name and a parameters object")
            reasoning = value.get("reasoning")
            return AnalyzeRequest(
                tool=tool,
                parameters=parameters,
                reasoning=reasoning if isinstance(reasoning, str) and reasoning else "No reasoning provided",
            )
        if not action:
            raise ParseError("Found JSON object but not a valid decision format")
        value = [value]

    batch = validate_decisions(value)
    if batch.dropped:
        logger.info("parsing.decisions_dropped", dropped=batch.dropped)
    return batch
