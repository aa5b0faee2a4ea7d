"""
Trade, decision and position persistence.

SQLAlchemy models for the ``trades``, ``agent_decisions`` and ``positions``
tables plus a small repository the execution engine and the repairer share.
Every repository call runs in its own session; the close sequence is not
wrapped in a multi-row transaction.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from position_guard.errors import ReconciliationError
from position_guard.models import DecisionRecord, Side, TradeRecord, TradeStatus, TradeType

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utc_naive(ts: datetime) -> datetime:
    """Normalise to naive UTC; SQLite drops tzinfo and comparisons must line up."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TradeModel(Base):
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_symbol_type_ts", "symbol", "type", "timestamp"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, default="")
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    type = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    leverage = Column(Float, nullable=False)
    pnl = Column(Float, nullable=True)
    fee = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    status = Column(String, nullable=False)


class DecisionModel(Base):
    __tablename__ = "agent_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False)
    iteration = Column(Integer, nullable=False, default=0)
    market_analysis = Column(Text, nullable=False)  # JSON string
    decision = Column(Text, nullable=False)
    actions_taken = Column(Text, nullable=False)  # JSON string
    account_value = Column(Float, nullable=False, default=0.0)
    positions_count = Column(Integer, nullable=False, default=0)


class PositionModel(Base):
    __tablename__ = "positions"

    symbol = Column(String, primary_key=True)
    side = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    leverage = Column(Float, nullable=False)
    opened_at = Column(DateTime, nullable=False)


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        kwargs = {"echo": False}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
            else:
                db_path = database_url.split("///", 1)[-1]
                if db_path:
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        else:
            kwargs["pool_pre_ping"] = True
        self.engine = create_engine(database_url, **kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _trade_from_row(row: TradeModel) -> TradeRecord:
    return TradeRecord(
        id=row.id,
        order_id=row.order_id or "",
        symbol=row.symbol,
        side=Side(row.side),
        type=TradeType(row.type),
        price=float(row.price) if row.price is not None else 0.0,
        quantity=float(row.quantity),
        leverage=float(row.leverage),
        pnl=float(row.pnl) if row.pnl is not None else 0.0,
        fee=float(row.fee) if row.fee is not None else 0.0,
        timestamp=row.timestamp,
        status=TradeStatus(row.status),
    )


class TradeRepository:
    """Reads and writes TradeRecord/DecisionRecord/position rows."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # --- trades -----------------------------------------------------------
    def insert_trade(self, trade: TradeRecord) -> int:
        row = TradeModel(
            order_id=trade.order_id,
            symbol=trade.symbol,
            side=Side(trade.side).value,
            type=TradeType(trade.type).value,
            price=float(trade.price),
            quantity=float(trade.quantity),
            leverage=float(trade.leverage),
            pnl=float(trade.pnl),
            fee=float(trade.fee),
            timestamp=_utc_naive(trade.timestamp),
            status=TradeStatus(trade.status).value,
        )
        with self.db.get_session() as session:
            session.add(row)
            session.flush()
            trade.id = row.id
        return trade.id

    def get_trade(self, trade_id: int) -> Optional[TradeRecord]:
        with self.db.get_session() as session:
            row = session.get(TradeModel, trade_id)
            return _trade_from_row(row) if row is not None else None

    def latest_close(self, symbol: str) -> Optional[TradeRecord]:
        stmt = (
            select(TradeModel)
            .where(TradeModel.symbol == symbol, TradeModel.type == TradeType.CLOSE.value)
            .order_by(TradeModel.timestamp.desc(), TradeModel.id.desc())
            .limit(1)
        )
        with self.db.get_session() as session:
            row = session.execute(stmt).scalars().first()
            return _trade_from_row(row) if row is not None else None

    def open_before(self, symbol: str, before: datetime) -> Optional[TradeRecord]:
        stmt = (
            select(TradeModel)
            .where(
                TradeModel.symbol == symbol,
                TradeModel.type == TradeType.OPEN.value,
                TradeModel.timestamp < _utc_naive(before),
            )
            .order_by(TradeModel.timestamp.desc(), TradeModel.id.desc())
            .limit(1)
        )
        with self.db.get_session() as session:
            row = session.execute(stmt).scalars().first()
            return _trade_from_row(row) if row is not None else None

    def update_trade_values(self, trade_id: int, *, price: float, pnl: float, fee: float) -> None:
        try:
            with self.db.get_session() as session:
                row = session.get(TradeModel, trade_id)
                if row is None:
                    raise ReconciliationError(f"trade {trade_id} vanished before update")
                row.price = float(price)
                row.pnl = float(pnl)
                row.fee = float(fee)
        except SQLAlchemyError as exc:
            raise ReconciliationError(f"failed to update trade {trade_id}: {exc}") from exc

    def symbols_closed_since(self, since: datetime) -> List[str]:
        stmt = (
            select(TradeModel.symbol)
            .where(TradeModel.type == TradeType.CLOSE.value, TradeModel.timestamp >= _utc_naive(since))
            .distinct()
            .order_by(TradeModel.symbol)
        )
        with self.db.get_session() as session:
            return list(session.execute(stmt).scalars().all())

    def list_trades(self, symbol: Optional[str] = None) -> List[TradeRecord]:
        stmt = select(TradeModel).order_by(TradeModel.timestamp, TradeModel.id)
        if symbol is not None:
            stmt = stmt.where(TradeModel.symbol == symbol)
        with self.db.get_session() as session:
            return [_trade_from_row(row) for row in session.execute(stmt).scalars().all()]

    # --- decisions --------------------------------------------------------
    def insert_decision(self, decision: DecisionRecord) -> int:
        row = DecisionModel(
            timestamp=_utc_naive(decision.timestamp),
            iteration=int(decision.iteration),
            market_analysis=json.dumps(decision.market_analysis, ensure_ascii=False, sort_keys=True, default=str),
            decision=decision.decision,
            actions_taken=json.dumps(decision.actions_taken, ensure_ascii=False, default=str),
            account_value=float(decision.account_value),
            positions_count=int(decision.positions_count),
        )
        with self.db.get_session() as session:
            session.add(row)
            session.flush()
            decision.id = row.id
        return decision.id

    def list_decisions(self) -> List[DecisionRecord]:
        stmt = select(DecisionModel).order_by(DecisionModel.timestamp, DecisionModel.id)
        with self.db.get_session() as session:
            return [
                DecisionRecord(
                    id=row.id,
                    timestamp=row.timestamp,
                    iteration=row.iteration,
                    market_analysis=json.loads(row.market_analysis),
                    decision=row.decision,
                    actions_taken=json.loads(row.actions_taken),
                    account_value=row.account_value,
                    positions_count=row.positions_count,
                )
                for row in session.execute(stmt).scalars().all()
            ]

    # --- local position rows ----------------------------------------------
    def save_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        entry_price: float,
        leverage: float,
        opened_at: Optional[datetime] = None,
    ) -> None:
        with self.db.get_session() as session:
            session.merge(
                PositionModel(
                    symbol=symbol,
                    side=Side(side).value,
                    quantity=float(quantity),
                    entry_price=float(entry_price),
                    leverage=float(leverage),
                    opened_at=_utc_naive(opened_at or utc_now()),
                )
            )

    def has_position(self, symbol: str) -> bool:
        with self.db.get_session() as session:
            return session.get(PositionModel, symbol) is not None

    def delete_position(self, symbol: str) -> None:
        with self.db.get_session() as session:
            row = session.get(PositionModel, symbol)
            if row is not None:
                session.delete(row)


def open_repository(database_url: Optional[str] = None) -> TradeRepository:
    if database_url is None:
        import config

        database_url = config.DATABASE_URL
    db = Database(database_url)
    db.create_all()
    return TradeRepository(db)
