"""Integration tests for the arena engine."""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from agent_arena.agents.oracle import ReasoningOracle
from agent_arena.core.config import ArenaConfig, ArenaLoopConfig
from agent_arena.core.engine import ArenaEngine, MarketFeed, StaticMarketFeed
from agent_arena.core.models import CloseReason, CycleError, PositionSide
from agent_arena.ledger import LedgerRejection

LONG_ETH = (
    '[{"action": "LONG", "symbol": "ETHUSDT", "size": 200, "leverage": 5, '
    '"stopLoss": 2800, "takeProfit": 3300}]'
)


class RoutingOracle(ReasoningOracle):
    """Answers by the agent name each prompt starts with."""

    def __init__(self, answers):
        self.answers = answers
        self.prompts = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        name = prompt.split("\n", 1)[0]
        answer = self.answers.get(name, "[]")
        if isinstance(answer, Exception):
            raise answer
        return answer


def _template(name):
    return name + "\n{{availableBalance}}\n{{marketData}}"


@pytest.fixture
def config(ledger_config, sandbox_config, tool_config, loop_config):
    config = ArenaConfig()
    config.ledger = ledger_config
    config.sandbox = sandbox_config
    config.tools = tool_config
    config.decision_loop = loop_config
    config.arena = ArenaLoopConfig(turn_interval_seconds=300, tick_interval_seconds=10)
    return config


@pytest.fixture
def feed(market):
    return StaticMarketFeed(market)


@pytest.fixture
def make_engine(config, feed, dispatcher, database):
    def factory(oracle, with_database=True):
        return ArenaEngine(oracle, feed, dispatcher, config, database if with_database else None)
    return factory


# =============================================================================
# Agent Management
# =============================================================================

class TestAgentManagement:
    """Adding, removing, pausing and resetting agents."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, make_engine):
        engine = make_engine(RoutingOracle({}))

        agent = engine.add_agent("alpha", _template("alpha"), Decimal("5000"), agent_id="a1")

        assert engine.get_agent("a1") is agent
        assert agent.ledger.balance == Decimal("5000")

    @pytest.mark.asyncio
    async def test_generated_id_and_default_balance(self, make_engine):
        engine = make_engine(RoutingOracle({}))

        agent = engine.add_agent("alpha")

        assert agent.id.startswith("agent_")
        assert agent.ledger.balance == Decimal("10000")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, make_engine):
        engine = make_engine(RoutingOracle({}))
        engine.add_agent("alpha", agent_id="a1")

        with pytest.raises(ValueError):
            engine.add_agent("beta", agent_id="a1")

    @pytest.mark.asyncio
    async def test_remove_unknown(self, make_engine):
        engine = make_engine(RoutingOracle({}))
        engine.add_agent("alpha", agent_id="a1")
        engine.remove_agent("a1")

        with pytest.raises(KeyError):
            engine.get_agent("a1")
        with pytest.raises(KeyError):
            engine.remove_agent("a1")

    @pytest.mark.asyncio
    async def test_reset_agent(self, make_engine, database):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH}))
        agent = engine.add_agent("alpha", _template("alpha"), agent_id="a1")
        await engine.run_turn()

        await engine.reset_agent("a1", Decimal("2500"))

        assert agent.ledger.balance == Decimal("2500")
        assert agent.ledger.positions == []
        assert len(agent.decision_logs) == 0
        snapshot = await database.latest_snapshot("a1")
        assert snapshot.portfolio.balance == Decimal("2500")


# =============================================================================
# Turns
# =============================================================================

class TestTurns:
    """Decision cycles applied to ledgers."""

    @pytest.mark.asyncio
    async def test_turn_opens_position(self, make_engine, database):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH}))
        agent = engine.add_agent("alpha", _template("alpha"), agent_id="a1")

        logs = await engine.run_turn()

        log = logs["a1"]
        assert log.error is None
        assert len(log.decisions) == 1
        assert log.notes[0].startswith("SUCCESS LONG ETHUSDT")
        assert len(agent.ledger.positions) == 1
        position = agent.ledger.positions[0]
        assert position.side is PositionSide.LONG
        assert position.entry_price == Decimal("3000")
        assert agent.ledger.balance == Decimal("9800")

        snapshot = await database.latest_snapshot("a1")
        assert len(snapshot.positions) == 1

    @pytest.mark.asyncio
    async def test_rejection_is_noted(self, make_engine):
        oracle = RoutingOracle({
            "alpha": '[{"action": "LONG", "symbol": "DOGEUSDT", "size": 200, "leverage": 5, '
                     '"stopLoss": 0.1, "takeProfit": 0.3}]'
        })
        engine = make_engine(oracle)
        agent = engine.add_agent("alpha", _template("alpha"), agent_id="a1")

        logs = await engine.run_turn()

        assert logs["a1"].notes[0].startswith("REJECTED LONG DOGEUSDT")
        assert agent.ledger.balance == Decimal("10000")

    @pytest.mark.asyncio
    async def test_history_reaches_next_prompt(self, make_engine):
        oracle = RoutingOracle({"alpha": LONG_ETH})
        engine = make_engine(oracle)
        engine.add_agent("alpha", _template("alpha"), agent_id="a1")

        await engine.run_turn()
        await engine.run_turn()

        assert "RECENT DECISION HISTORY" not in oracle.prompts[0]
        assert "RECENT DECISION HISTORY" in oracle.prompts[1]
        assert "SUCCESS LONG ETHUSDT" in oracle.prompts[1]

    @pytest.mark.asyncio
    async def test_oracle_failure_recorded_in_log(self, make_engine, loop_config):
        engine = make_engine(RoutingOracle({"alpha": RuntimeError("down")}))
        engine.config.decision_loop = loop_config.model_copy(update={"max_rounds": 2})
        agent = engine.add_agent("alpha", _template("alpha"), agent_id="a1")

        logs = await engine.run_turn()

        assert logs["a1"].error == CycleError.ORACLE_ERROR
        assert logs["a1"].decisions == []
        assert agent.ledger.balance == Decimal("10000")

    @pytest.mark.asyncio
    async def test_paused_agent_skipped(self, make_engine):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH, "beta": LONG_ETH}))
        engine.add_agent("alpha", _template("alpha"), agent_id="a1")
        engine.add_agent("beta", _template("beta"), agent_id="b1")
        engine.pause_agent("b1")

        logs = await engine.run_turn()

        assert set(logs) == {"a1"}

        logs = await engine.run_turn("b1")
        assert set(logs) == {"b1"}

        engine.resume_agent("b1")
        logs = await engine.run_turn()
        assert set(logs) == {"a1", "b1"}

    @pytest.mark.asyncio
    async def test_failing_agent_does_not_block_others(self, make_engine):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH, "beta": LONG_ETH}))
        good = engine.add_agent("alpha", _template("alpha"), agent_id="a1")
        bad = engine.add_agent("beta", _template("beta"), agent_id="b1")

        def explode(*args, **kwargs):
            raise RuntimeError("ledger exploded")

        bad.ledger.apply_decisions = explode

        logs = await engine.run_turn()

        assert set(logs) == {"a1"}
        assert len(good.ledger.positions) == 1
        assert bad.ledger.positions == []

    @pytest.mark.asyncio
    async def test_agents_trade_independently(self, make_engine):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH, "beta": "[]"}))
        alpha = engine.add_agent("alpha", _template("alpha"), agent_id="a1")
        beta = engine.add_agent("beta", _template("beta"), agent_id="b1")

        await engine.run_turn()

        assert len(alpha.ledger.positions) == 1
        assert beta.ledger.positions == []
        assert beta.ledger.balance == Decimal("10000")

    @pytest.mark.asyncio
    async def test_unknown_agent(self, make_engine):
        engine = make_engine(RoutingOracle({}))

        with pytest.raises(KeyError):
            await engine.run_turn("missing")


# =============================================================================
# Ticks
# =============================================================================

class TestTicks:
    """Mark-to-market and automatic closes."""

    @pytest.mark.asyncio
    async def test_liquidation_on_tick(self, make_engine, feed, market, database):
        engine = make_engine(RoutingOracle({}))
        agent = engine.add_agent("alpha", agent_id="a1")
        agent.ledger.open_position("BTCUSDT", PositionSide.LONG, 2000, 10, 60000)
        feed.update([{"symbol": "BTCUSDT", "price": "53900", "price24hChange": -10.2}, *market[1:]])

        closed = await engine.update_portfolios()

        assert len(closed["a1"]) == 1
        order = closed["a1"][0]
        assert order.reason == CloseReason.LIQUIDATION
        assert order.exit_price == Decimal("54000")
        assert agent.ledger.balance == Decimal("6800")
        assert len(agent.value_history) == 1

        stored = await database.get_orders("a1")
        assert [o.id for o in stored] == [order.id]

    @pytest.mark.asyncio
    async def test_tick_marks_pnl(self, make_engine, feed, market):
        engine = make_engine(RoutingOracle({}), with_database=False)
        agent = engine.add_agent("alpha", agent_id="a1")
        agent.ledger.open_position("ETHUSDT", PositionSide.SHORT, 100, 5, 3000)
        feed.update([market[0], {"symbol": "ETHUSDT", "price": "2940"}, market[2]])

        closed = await engine.update_portfolios()

        assert closed == {"a1": []}
        assert agent.ledger.portfolio.unrealized_pnl == Decimal("10")
        assert agent.value_history[-1][1] == Decimal("9910")

    @pytest.mark.asyncio
    async def test_manual_close(self, make_engine, database):
        engine = make_engine(RoutingOracle({}))
        agent = engine.add_agent("alpha", agent_id="a1")
        position_id = agent.ledger.open_position("SOLUSDT", PositionSide.LONG, 100, 2, 150)

        order = await engine.manual_close("a1", position_id)

        assert order.reason == CloseReason.MANUAL
        assert order.exit_price == Decimal("150")
        assert agent.ledger.positions == []
        assert "SOLUSDT" in agent.ledger.cooldowns
        assert len(await database.get_orders("a1")) == 1

    @pytest.mark.asyncio
    async def test_manual_close_unknown_position(self, make_engine):
        engine = make_engine(RoutingOracle({}))
        engine.add_agent("alpha", agent_id="a1")

        with pytest.raises(LedgerRejection) as exc_info:
            await engine.manual_close("a1", "pos_missing")

        assert exc_info.value.rule == "unknown_position"


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Background loop and status."""

    @pytest.mark.asyncio
    async def test_start_runs_tick_and_turn(self, make_engine):
        engine = make_engine(RoutingOracle({"alpha": "[]"}), with_database=False)
        agent = engine.add_agent("alpha", _template("alpha"), agent_id="a1")

        await engine.start()
        await asyncio.sleep(0.3)
        await engine.stop()

        assert engine.get_status()["running"] is False
        assert len(agent.value_history) >= 1
        assert len(agent.decision_logs) == 1

    @pytest.mark.asyncio
    async def test_loop_survives_feed_errors(self, config, dispatcher):
        feed = AsyncMock(spec=MarketFeed)
        feed.fetch.side_effect = RuntimeError("feed offline")
        engine = ArenaEngine(RoutingOracle({}), feed, dispatcher, config)
        engine.add_agent("alpha", agent_id="a1")

        await engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()

        feed.fetch.assert_awaited()
        assert engine.market == []

    @pytest.mark.asyncio
    async def test_status(self, make_engine):
        engine = make_engine(RoutingOracle({"alpha": LONG_ETH}), with_database=False)
        engine.add_agent("alpha", _template("alpha"), agent_id="a1")
        engine.pause_agent("a1")
        await engine.run_turn("a1")

        status = engine.get_status()

        assert status["running"] is False
        entry = status["agents"]["a1"]
        assert entry["name"] == "alpha"
        assert entry["paused"] is True
        assert entry["balance"] == "9800"
        assert entry["positions"] == 1
        assert entry["cycles"] == 1
