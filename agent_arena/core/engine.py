"""Arena engine - runs several agents against a shared market feed."""
import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

import structlog

from agent_arena.agents.decision_loop import DecisionLoop
from agent_arena.agents.oracle import ReasoningOracle
from agent_arena.agents.prompts import DEFAULT_PROMPT_TEMPLATE
from agent_arena.core.config import ArenaConfig, arena_config
from agent_arena.core.models import (
    CloseReason,
    DecisionLog,
    LedgerSnapshot,
    MarketTicker,
    Order,
    find_ticker,
    utc_now,
)
from agent_arena.ledger import Ledger, LedgerRejection, mark_prices
from agent_arena.sandbox import SimulationRegistry
from agent_arena.storage.database import Database
from agent_arena.tools import ToolDispatcher

logger = structlog.get_logger(__name__)


class MarketFeed(ABC):
    """Source of market snapshots."""

    @abstractmethod
    async def fetch(self) -> List[MarketTicker]:
        """Return the current market snapshot."""


class StaticMarketFeed(MarketFeed):
    """Feed that serves whatever snapshot was last set; used by the CLI and tests."""

    def __init__(self, market: Iterable[Any] = ()):
        self.update(market)

    def update(self, market: Iterable[Any]):
        self.market = [
            t if isinstance(t, MarketTicker) else MarketTicker.model_validate(t)
            for t in market
        ]

    async def fetch(self) -> List[MarketTicker]:
        return list(self.market)


@dataclass
class AgentRuntime:
    """Per-agent state owned by the engine.

    The lock serializes every ledger mutation for this agent; oracle calls
    run outside it.
    """
    id: str
    name: str
    prompt_template: str
    ledger: Ledger
    decision_logs: Deque[DecisionLog]
    value_history: Deque[Tuple[datetime, Decimal]]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    paused: bool = False


class ArenaEngine:
    """
    Orchestrates the decision cycles of all agents.

    Responsibilities:
    - Marks every ledger to market on a short interval
    - Runs each active agent's decision cycle every turn, concurrently
    - Applies decisions to the agent's ledger under its lock
    - Persists snapshots and closed orders
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        feed: MarketFeed,
        dispatcher: Optional[ToolDispatcher] = None,
        config: Optional[ArenaConfig] = None,
        database: Optional[Database] = None,
    ):
        self.config = config or arena_config
        self.oracle = oracle
        self.feed = feed
        self.dispatcher = dispatcher or ToolDispatcher(
            SimulationRegistry(self.config.sandbox), self.config.tools
        )
        self.database = database

        # State
        self.agents: Dict[str, AgentRuntime] = {}
        self.market: List[MarketTicker] = []

        # Control
        self._running = False
        self._main_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Agent management
    # =========================================================================

    def add_agent(
        self,
        name: str,
        prompt_template: Optional[str] = None,
        initial_balance: Optional[Decimal] = None,
        agent_id: Optional[str] = None,
    ) -> AgentRuntime:
        agent_id = agent_id or f"agent_{uuid4().hex[:8]}"
        if agent_id in self.agents:
            raise ValueError(f"Agent {agent_id} already exists")

        agent = AgentRuntime(
            id=agent_id,
            name=name,
            prompt_template=prompt_template or DEFAULT_PROMPT_TEMPLATE,
            ledger=Ledger(initial_balance, self.config.ledger, agent_id=agent_id),
            decision_logs=deque(maxlen=self.config.arena.max_decision_logs),
            value_history=deque(maxlen=self.config.arena.max_value_history),
        )
        self.agents[agent_id] = agent
        logger.info("engine.agent_added", agent_id=agent_id, name=name, balance=str(agent.ledger.balance))
        return agent

    def get_agent(self, agent_id: str) -> AgentRuntime:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise KeyError(f"Unknown agent {agent_id}")
        return agent

    def remove_agent(self, agent_id: str):
        self.get_agent(agent_id)
        del self.agents[agent_id]
        logger.info("engine.agent_removed", agent_id=agent_id)

    def pause_agent(self, agent_id: str):
        self.get_agent(agent_id).paused = True
        logger.info("engine.agent_paused", agent_id=agent_id)

    def resume_agent(self, agent_id: str):
        self.get_agent(agent_id).paused = False
        logger.info("engine.agent_resumed", agent_id=agent_id)

    async def reset_agent(self, agent_id: str, initial_balance: Optional[Decimal] = None):
        """Wipe an agent's ledger, history and value curve."""
        agent = self.get_agent(agent_id)
        async with agent.lock:
            agent.ledger.reset(initial_balance)
            agent.decision_logs.clear()
            agent.value_history.clear()
            snapshot = agent.ledger.snapshot()
        await self._persist(agent_id, snapshot, [])

    async def manual_close(self, agent_id: str, position_id: str) -> Order:
        """Close one position at the current market price.

        Raises:
            LedgerRejection: unknown position or no price for its symbol
        """
        agent = self.get_agent(agent_id)
        market = await self._fetch_market()
        async with agent.lock:
            position = agent.ledger.portfolio.get_position(position_id)
            if position is None:
                raise LedgerRejection(f"Position {position_id} not found", "unknown_position")
            ticker = find_ticker(market, position.symbol)
            if ticker is None:
                raise LedgerRejection(f"{position.symbol} not in market data", "unknown_symbol")
            order = agent.ledger.close_position(position_id, ticker.price, CloseReason.MANUAL)
            snapshot = agent.ledger.snapshot()
        await self._persist(agent_id, snapshot, [order])
        return order

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Start the background loop."""
        logger.info("engine.starting")
        self._running = True
        self._main_task = asyncio.create_task(self._main_loop())
        logger.info("engine.started", agents=list(self.agents.keys()))

    async def stop(self):
        """Stop the background loop gracefully."""
        logger.info("engine.stopping")
        self._running = False

        if self._main_task:
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                pass
            self._main_task = None

        logger.info("engine.stopped")

    async def _main_loop(self):
        """Tick portfolios and run turns on their intervals."""
        loop = asyncio.get_running_loop()
        last_tick: Optional[float] = None
        last_turn: Optional[float] = None

        while self._running:
            try:
                now = loop.time()

                if last_tick is None or now - last_tick >= self.config.arena.tick_interval_seconds:
                    await self.update_portfolios()
                    last_tick = now

                if last_turn is None or now - last_turn >= self.config.arena.turn_interval_seconds:
                    await self.run_turn()
                    last_turn = now

                await asyncio.sleep(1)

            except Exception as e:
                logger.error("engine.loop_error", error=str(e))
                await asyncio.sleep(5)

    # =========================================================================
    # Ticks and turns
    # =========================================================================

    async def _fetch_market(self) -> List[MarketTicker]:
        market = await self.feed.fetch()
        self.market = list(market)
        return self.market

    async def update_portfolios(self) -> Dict[str, List[Order]]:
        """Mark every ledger to market; returns automatic closes per agent."""
        market = await self._fetch_market()
        prices = mark_prices(market)
        now = utc_now()
        closed: Dict[str, List[Order]] = {}

        for agent in list(self.agents.values()):
            async with agent.lock:
                orders = agent.ledger.tick(prices, now)
                agent.value_history.append((now, agent.ledger.portfolio.total_value))
                snapshot = agent.ledger.snapshot(now)
            closed[agent.id] = orders
            await self._persist(agent.id, snapshot, orders)

        return closed

    async def run_turn(self, agent_id: Optional[str] = None) -> Dict[str, DecisionLog]:
        """Run one decision cycle for one agent, or for every active agent concurrently.

        An explicitly named agent runs even when paused.
        """
        self.dispatcher.registry.prune()

        if agent_id is not None:
            targets = [self.get_agent(agent_id)]
        else:
            targets = [a for a in self.agents.values() if not a.paused]
        if not targets:
            return {}

        market = await self._fetch_market()
        results = await asyncio.gather(
            *(self._run_agent(agent, market) for agent in targets),
            return_exceptions=True,
        )

        logs: Dict[str, DecisionLog] = {}
        for agent, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error("engine.agent_turn_failed", agent_id=agent.id, error=str(result))
                continue
            logs[agent.id] = result
        return logs

    async def _run_agent(self, agent: AgentRuntime, market: List[MarketTicker]) -> DecisionLog:
        now = utc_now()
        depth = self.config.decision_loop.recent_orders_depth

        async with agent.lock:
            portfolio = agent.ledger.portfolio.model_copy(deep=True)
            cooldowns = agent.ledger.active_cooldowns(now)
            recent_orders = list(reversed(agent.ledger.orders))[:depth]
            history = list(reversed(agent.decision_logs))

        loop = DecisionLoop(self.oracle, self.dispatcher, self.config.decision_loop, agent_id=agent.id)
        result = await loop.run_cycle(
            portfolio,
            market,
            agent.prompt_template,
            history=history,
            cooldowns=cooldowns,
            recent_orders=recent_orders,
            now=now,
        )

        async with agent.lock:
            order_count = len(agent.ledger.orders)
            notes = agent.ledger.apply_decisions(result.decisions, market, now)
            new_orders = agent.ledger.orders[order_count:]
            snapshot = agent.ledger.snapshot(now)

        log = DecisionLog(
            timestamp=now,
            decisions=result.decisions,
            notes=notes,
            rounds_used=result.rounds_used,
            error=result.error,
        )
        agent.decision_logs.append(log)
        await self._persist(agent.id, snapshot, new_orders)

        logger.info(
            "engine.agent_turn_completed",
            agent_id=agent.id,
            decisions=len(result.decisions),
            rounds_used=result.rounds_used,
            error=result.error.value if result.error else None,
            balance=str(snapshot.portfolio.balance),
        )
        return log

    async def _persist(self, agent_id: str, snapshot: LedgerSnapshot, orders: List[Order]):
        if self.database is None:
            return
        try:
            for order in orders:
                await self.database.save_order(agent_id, order)
            if self.config.database.snapshots_enabled:
                await self.database.save_snapshot(agent_id, snapshot)
        except Exception as e:
            logger.error("engine.persist_error", agent_id=agent_id, error=str(e))

    def get_status(self) -> Dict:
        """Get current engine status."""
        return {
            'running': self._running,
            'simulations': len(self.dispatcher.registry),
            'agents': {
                agent.id: {
                    'name': agent.name,
                    'paused': agent.paused,
                    'balance': str(agent.ledger.balance),
                    'total_value': str(agent.ledger.portfolio.total_value),
                    'positions': len(agent.ledger.positions),
                    'orders': len(agent.ledger.orders),
                    'cycles': len(agent.decision_logs),
                }
                for agent in self.agents.values()
            },
        }
