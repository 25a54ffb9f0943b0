"""Pytest fixtures and utilities for the Agent Arena test suite."""
import asyncio
from decimal import Decimal
from typing import List, Union

import pytest
import pytest_asyncio

from agent_arena.agents.oracle import ReasoningOracle
from agent_arena.core.config import (
    DecisionLoopConfig,
    LedgerConfig,
    SandboxConfig,
    ToolConfig,
)
from agent_arena.core.models import MarketTicker
from agent_arena.ledger import Ledger
from agent_arena.sandbox import SimulationRegistry
from agent_arena.storage.database import Database
from agent_arena.tools import ToolDispatcher


# =============================================================================
# Test Doubles
# =============================================================================

class ScriptedOracle(ReasoningOracle):
    """Oracle that replays canned responses and records every prompt.

    A response may be a string, an exception instance (raised), or a number
    of seconds to sleep before answering "[]" (to trigger timeouts).
    """

    def __init__(self, responses: List[Union[str, Exception, float]]):
        self.responses = list(responses)
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            return "[]"
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, (int, float)):
            await asyncio.sleep(response)
            return "[]"
        return response


class FakeClock:
    """Monotonic clock the simulation registry can be driven with."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def ledger_config():
    """Ledger configuration with the production defaults spelled out."""
    return LedgerConfig(
        initial_balance_usd=Decimal("10000"),
        min_margin_usd=Decimal("50"),
        min_leverage=Decimal("1"),
        max_leverage=Decimal("25"),
        fee_rate=Decimal("0.03"),
        fee_basis="notional",
        maintenance_margin_rate=Decimal("0"),
        cooldown_seconds=1800,
    )


@pytest.fixture
def sandbox_config():
    """Sandbox limits used by most tests."""
    return SandboxConfig(
        max_expression_length=500,
        max_nesting_depth=64,
        evaluation_timeout_seconds=2.0,
        max_simulation_equations=10,
        simulation_ttl_seconds=1800,
        max_simulations=256,
    )


@pytest.fixture
def tool_config():
    return ToolConfig(tool_timeout_seconds=5.0, price_history_points=100)


@pytest.fixture
def loop_config():
    """Decision loop configuration with short timeouts."""
    return DecisionLoopConfig(
        max_rounds=5,
        round_timeout_seconds=1.0,
        cycle_timeout_seconds=10.0,
        max_prompt_chars=500_000,
        history_depth=5,
        recent_orders_depth=10,
    )


# =============================================================================
# Market Fixtures
# =============================================================================

@pytest.fixture
def market() -> List[MarketTicker]:
    """Three-symbol market snapshot."""
    return [
        MarketTicker(symbol="BTCUSDT", price=Decimal("60000"), price_24h_change=2.5),
        MarketTicker(symbol="ETHUSDT", price=Decimal("3000"), price_24h_change=-1.2),
        MarketTicker(symbol="SOLUSDT", price=Decimal("150"), price_24h_change=0.0),
    ]


@pytest.fixture
def rising_prices() -> List[float]:
    """Thirty strictly increasing closes."""
    return [100.0 + i for i in range(30)]


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def ledger(ledger_config):
    """Fresh ledger with a $10,000 balance."""
    return Ledger(Decimal("10000"), ledger_config, agent_id="test-agent")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(sandbox_config, clock):
    """Simulation registry driven by a fake clock."""
    return SimulationRegistry(sandbox_config, clock=clock)


@pytest.fixture
def dispatcher(registry, tool_config):
    return ToolDispatcher(registry, tool_config)


@pytest_asyncio.fixture
async def database(tmp_path):
    """File-backed SQLite snapshot store in a temp directory."""
    db = Database(f"sqlite:///{tmp_path / 'arena.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def make_oracle():
    """Factory for scripted oracles."""
    return ScriptedOracle
