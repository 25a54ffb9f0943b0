"""Snapshot store for ledger state and closed orders."""
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
import structlog

from agent_arena.core.config import database_config
from agent_arena.core.models import CloseReason, LedgerSnapshot, Order, PositionSide

logger = structlog.get_logger(__name__)

Base = declarative_base()


class SnapshotModel(Base):
    """One ledger snapshot document per row."""
    __tablename__ = 'ledger_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    taken_at = Column(DateTime(timezone=True), nullable=False)
    balance = Column(Numeric(36, 18), nullable=False)
    total_value = Column(Numeric(36, 18), nullable=False)
    open_positions = Column(Integer, default=0)
    document = Column(JSON, nullable=False)


class OrderModel(Base):
    """Closed positions, append-only."""
    __tablename__ = 'orders'

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False, index=True)
    position_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    exit_price = Column(Numeric(36, 18), nullable=False)
    margin_usd = Column(Numeric(36, 18), nullable=False)
    leverage = Column(Numeric(36, 18), nullable=False)
    realized_pnl = Column(Numeric(36, 18), nullable=False)
    fee = Column(Numeric(36, 18), nullable=False)
    reason = Column(String, nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=False)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Database:
    """Async snapshot store (SQLite via aiosqlite by default)."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        prefix = 'sqlite+aiosqlite:///'
        if self.database_url.startswith(prefix) and ':memory:' not in self.database_url:
            Path(self.database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.database_url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Snapshot operations
    async def save_snapshot(self, agent_id: str, snapshot: LedgerSnapshot) -> int:
        """Store a snapshot document; returns the row id."""
        async with self.session_maker() as session:
            row = SnapshotModel(
                agent_id=agent_id,
                taken_at=snapshot.taken_at,
                balance=snapshot.portfolio.balance,
                total_value=snapshot.portfolio.total_value,
                open_positions=len(snapshot.positions),
                document=snapshot.model_dump(mode="json"),
            )
            session.add(row)
            await session.commit()
            return row.id

    async def latest_snapshot(self, agent_id: str) -> Optional[LedgerSnapshot]:
        """Most recently stored snapshot for an agent."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(SnapshotModel)
                .where(SnapshotModel.agent_id == agent_id)
                .order_by(SnapshotModel.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return LedgerSnapshot.model_validate(row.document)

    async def count_snapshots(self, agent_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SnapshotModel.id).where(SnapshotModel.agent_id == agent_id)
            )
            return len(result.scalars().all())

    # Order operations
    async def save_order(self, agent_id: str, order: Order):
        """Append a closed order; saving the same order twice is a no-op."""
        async with self.session_maker() as session:
            if await session.get(OrderModel, order.id) is not None:
                return
            session.add(
                OrderModel(
                    id=order.id,
                    agent_id=agent_id,
                    position_id=order.position_id,
                    symbol=order.symbol,
                    side=order.side.value,
                    entry_price=order.entry_price,
                    exit_price=order.exit_price,
                    margin_usd=order.margin_usd,
                    leverage=order.leverage,
                    realized_pnl=order.realized_pnl,
                    fee=order.fee,
                    reason=order.reason.value,
                    opened_at=order.opened_at,
                    closed_at=order.closed_at,
                )
            )
            await session.commit()

    async def get_orders(
        self,
        agent_id: Optional[str] = None,
        symbol: Optional[str] = None,
        limit: int = 100,
    ) -> List[Order]:
        """Closed orders, newest first, with optional filters."""
        async with self.session_maker() as session:
            query = select(OrderModel).order_by(OrderModel.closed_at.desc()).limit(limit)

            if agent_id:
                query = query.where(OrderModel.agent_id == agent_id)
            if symbol:
                query = query.where(OrderModel.symbol == symbol)

            result = await session.execute(query)
            return [self._order_from_model(o) for o in result.scalars().all()]

    # Helpers
    def _order_from_model(self, model: OrderModel) -> Order:
        """Convert DB model to Order object."""
        return Order(
            id=model.id,
            position_id=model.position_id,
            symbol=model.symbol,
            side=PositionSide(model.side),
            entry_price=model.entry_price,
            exit_price=model.exit_price,
            margin_usd=model.margin_usd,
            leverage=model.leverage,
            realized_pnl=model.realized_pnl,
            fee=model.fee,
            reason=CloseReason(model.reason),
            opened_at=_utc(model.opened_at),
            closed_at=_utc(model.closed_at),
        )
