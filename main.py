"""
Agent Arena - Main Entry Point

Paper-trading arena where LLM agents trade leveraged crypto futures through a
sandboxed analysis loop.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Evaluate a sandboxed expression
    python main.py --eval "sqrt(x) * 2" --var x=16

    # Run three turns against a market snapshot file
    python main.py --run --market-file market.json --turns 3

    # Run the arena loop until interrupted
    python main.py --run --market-file market.json
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from agent_arena.agents.oracle import HttpOracle
from agent_arena.core.config import arena_config
from agent_arena.core.engine import ArenaEngine, StaticMarketFeed
from agent_arena.sandbox import evaluate
from agent_arena.storage.database import Database
from agent_arena.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class ArenaApp:
    """
    Wires the oracle, market feed, snapshot store and arena engine together.

    Args:
        market_file: JSON file holding a list of market tickers
        agent_names: One agent is created per name
    """

    def __init__(self, market_file: Path, agent_names: List[str]):
        self.market_file = market_file
        self.agent_names = agent_names

        self.engine: Optional[ArenaEngine] = None
        self.database: Optional[Database] = None
        self.feed: Optional[StaticMarketFeed] = None

        self._shutdown_event = asyncio.Event()

    async def initialize(self):
        logger.info("app.initializing", market_file=str(self.market_file))

        if arena_config.database.snapshots_enabled:
            self.database = Database()
            await self.database.initialize()

        self.feed = StaticMarketFeed(load_market(self.market_file))
        self.engine = ArenaEngine(
            oracle=HttpOracle(arena_config.oracle),
            feed=self.feed,
            config=arena_config,
            database=self.database,
        )
        for name in self.agent_names:
            self.engine.add_agent(name)

        logger.info("app.initialized", agents=len(self.agent_names))

    async def run_turns(self, turns: int):
        """Run a fixed number of tick + turn pairs, reloading the market file each time."""
        for turn in range(1, turns + 1):
            self.feed.update(load_market(self.market_file))
            await self.engine.update_portfolios()
            logs = await self.engine.run_turn()
            for agent_id, log in logs.items():
                print(f"[turn {turn}] {agent_id}: {len(log.decisions)} decisions, {log.rounds_used} rounds")
                for note in log.notes:
                    print(f"    {note}")
                if log.error is not None:
                    print(f"    error: {log.error.value}")

    async def run_forever(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        try:
            await self.engine.start()
            await self._shutdown_event.wait()
        finally:
            await self.engine.stop()

    async def shutdown(self):
        logger.info("app.shutting_down")
        if self.database:
            await self.database.close()
        logger.info("app.shutdown_complete")


def load_market(path: Path) -> List[Dict]:
    """Read a market snapshot (a JSON list of tickers)."""
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of tickers")
    return data


def parse_variables(pairs: List[str]) -> Dict[str, float]:
    """Turn ``name=value`` pairs into a variable mapping."""
    variables = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected name=value, got {pair!r}")
        variables[name.strip()] = float(value)
    return variables


def print_check():
    validation = arena_config.validate_configuration()

    print("\n" + "=" * 60)
    print("           CONFIGURATION CHECK")
    print("=" * 60)

    if validation["valid"]:
        print("\n✓ Configuration is valid")
    else:
        print("\n✗ Configuration issues:")
        for issue in validation["issues"]:
            print(f"   - {issue}")

    print(f"\nOracle: {arena_config.oracle.provider} ({arena_config.oracle.model_name})")
    print(f"Symbols: {', '.join(arena_config.arena.symbols)}")
    print(f"Rounds per cycle: {arena_config.decision_loop.max_rounds}")
    print(f"Leverage: {arena_config.ledger.min_leverage}x - {arena_config.ledger.max_leverage}x")
    print("\n" + "=" * 60)
    return validation["valid"]


async def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Agent Arena - LLM paper-trading arena")

    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database and exit")
    parser.add_argument("--eval", metavar="EXPR", help="Evaluate a sandboxed expression and exit")
    parser.add_argument(
        "--var", action="append", default=[], metavar="NAME=VALUE",
        help="Variable for --eval (repeatable)",
    )
    parser.add_argument("--run", action="store_true", help="Run the arena")
    parser.add_argument("--market-file", type=Path, help="JSON market snapshot for --run")
    parser.add_argument("--turns", type=int, help="Run N turns and exit instead of looping")
    parser.add_argument(
        "--agent", action="append", default=[], metavar="NAME",
        help="Agent to create for --run (repeatable, default: one agent)",
    )

    args = parser.parse_args()

    setup_logging(log_to_file=not (args.check or args.eval))

    if args.check:
        return 0 if print_check() else 1

    if args.eval is not None:
        try:
            variables = parse_variables(args.var)
        except ValueError as e:
            print(f"✗ {e}")
            return 2
        result = evaluate(args.eval, variables)
        if result.accepted:
            print(result.value)
            return 0
        print(f"✗ {result.reason}")
        return 1

    if args.init_db:
        print("\n📦 Initializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return 0

    if args.run:
        if args.market_file is None:
            parser.error("--run requires --market-file")

        validation = arena_config.validate_configuration()
        if not validation["valid"]:
            print("\n✗ Configuration issues:")
            for issue in validation["issues"]:
                print(f"   - {issue}")
            print("\nPlease check your .env file and try again.")
            return 1

        app = ArenaApp(args.market_file, args.agent or ["agent-1"])
        try:
            await app.initialize()
            if args.turns:
                await app.run_turns(args.turns)
            else:
                await app.run_forever()
        except KeyboardInterrupt:
            print("\n\nShutdown requested by user...")
        except Exception as e:
            logger.error("main.error", error=str(e), exc_info=True)
            print(f"\n✗ Fatal error: {e}")
            raise
        finally:
            await app.shutdown()
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
