"""SQL-backed durable ledger for user balances and creator earnings.

This is the store of record. Balances and earnings are only ever mutated by
``apply_settlement`` (plus the operator top-up path), and every settlement is
journaled as one ``settlements`` row written in the same transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)

MONEY = Numeric(18, 6)
SECONDS = Numeric(18, 3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerError(Exception):
    """Raised when a durable ledger mutation cannot be applied."""


class Base(DeclarativeBase):
    metadata = metadata


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    last_recharge_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Creator(Base):
    __tablename__ = "creators"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    watch_time_seconds: Mapped[Decimal] = mapped_column(SECONDS, default=Decimal("0"))
    amount_earned: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    video_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("creators.id", ondelete="CASCADE"), index=True)


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    creator_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    watch_time_seconds: Mapped[Decimal] = mapped_column(SECONDS)
    earnings: Mapped[Decimal] = mapped_column(MONEY)
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


@dataclass
class SettlementEntry:
    settlement_id: str
    user_id: str
    creator_id: str
    amount: Decimal
    watch_time_seconds: Decimal
    earnings: Decimal


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, isolation_level="SERIALIZABLE", pool_pre_ping=True)


class DurableLedger:
    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "DurableLedger":
        return cls(build_engine(database_url))

    def read_balance(self, user_id: str) -> Optional[Decimal]:
        with self._sessions() as session:
            balance = session.execute(select(User.balance).where(User.id == user_id)).scalar_one_or_none()
        return Decimal(balance) if balance is not None else None

    def apply_settlement(self, entry: SettlementEntry) -> None:
        """Apply one settlement atomically: debit the user, credit the creator, journal it."""
        with self._sessions.begin() as session:
            if entry.amount > 0:
                result = session.execute(
                    update(User)
                    .where(User.id == entry.user_id)
                    .values(balance=User.balance - entry.amount, updated_at=utcnow())
                )
                if result.rowcount != 1:
                    raise LedgerError(f"user {entry.user_id} not found")
            if entry.earnings > 0 or entry.watch_time_seconds > 0:
                result = session.execute(
                    update(Creator)
                    .where(Creator.id == entry.creator_id)
                    .values(
                        watch_time_seconds=Creator.watch_time_seconds + entry.watch_time_seconds,
                        amount_earned=Creator.amount_earned + entry.earnings,
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount != 1:
                    raise LedgerError(f"creator {entry.creator_id} not found")
            session.add(
                Settlement(
                    id=entry.settlement_id,
                    user_id=entry.user_id,
                    creator_id=entry.creator_id,
                    amount=entry.amount,
                    watch_time_seconds=entry.watch_time_seconds,
                    earnings=entry.earnings,
                    settled_at=utcnow(),
                )
            )
        logger.info(
            "Settlement %s committed user=%s creator=%s amount=%s watch_time=%s",
            entry.settlement_id,
            entry.user_id,
            entry.creator_id,
            entry.amount,
            entry.watch_time_seconds,
        )

    def has_settlement(self, settlement_id: str) -> bool:
        with self._sessions() as session:
            return session.get(Settlement, settlement_id) is not None

    def settlements_for_user(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        with self._sessions() as session:
            rows = session.execute(
                select(Settlement)
                .where(Settlement.user_id == user_id)
                .order_by(Settlement.settled_at.desc())
                .limit(limit)
            ).scalars()
            return [
                {
                    "settlement_id": row.id,
                    "user_id": row.user_id,
                    "creator_id": row.creator_id,
                    "amount": str(row.amount),
                    "watch_time_seconds": str(row.watch_time_seconds),
                    "earnings": str(row.earnings),
                    "settled_at": row.settled_at.isoformat() if row.settled_at else None,
                }
                for row in rows
            ]

    def find_video(self, video_id: str) -> Optional[Dict[str, str]]:
        with self._sessions() as session:
            video = session.execute(select(Video).where(Video.video_id == video_id)).scalar_one_or_none()
            if video is None:
                return None
            return {"id": video.id, "video_id": video.video_id, "creator_id": video.creator_id}

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._sessions() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return {
                "id": user.id,
                "name": user.name,
                "balance": Decimal(user.balance),
                "last_recharge_amount": Decimal(user.last_recharge_amount),
            }

    def get_creator(self, creator_id: str) -> Optional[Dict[str, Any]]:
        with self._sessions() as session:
            creator = session.get(Creator, creator_id)
            if creator is None:
                return None
            return {
                "id": creator.id,
                "name": creator.name,
                "watch_time_seconds": Decimal(creator.watch_time_seconds),
                "amount_earned": Decimal(creator.amount_earned),
            }

    def create_user(self, user_id: str, *, balance: Decimal = Decimal("0"), name: str = "") -> None:
        with self._sessions.begin() as session:
            session.add(User(id=user_id, name=name, balance=balance, last_recharge_amount=Decimal("0")))

    def create_creator(self, creator_id: str, *, name: str = "") -> None:
        with self._sessions.begin() as session:
            session.add(
                Creator(
                    id=creator_id,
                    name=name,
                    watch_time_seconds=Decimal("0"),
                    amount_earned=Decimal("0"),
                )
            )

    def register_video(self, video_id: str, creator_id: str) -> None:
        with self._sessions.begin() as session:
            session.add(Video(id=video_id, video_id=video_id, creator_id=creator_id))

    def credit_user(self, user_id: str, amount: Decimal) -> Decimal:
        """Top up a user's balance and return the new balance."""
        if amount <= 0:
            raise LedgerError("top-up amount must be positive")
        with self._sessions.begin() as session:
            result = session.execute(
                update(User)
                .where(User.id == user_id)
                .values(balance=User.balance + amount, last_recharge_amount=amount, updated_at=utcnow())
            )
            if result.rowcount != 1:
                raise LedgerError(f"user {user_id} not found")
            balance = session.execute(select(User.balance).where(User.id == user_id)).scalar_one()
        return Decimal(balance)
