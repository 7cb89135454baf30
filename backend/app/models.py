from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .db import Base


class RaceStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    COMPLETED = "completed"


class DepositStatus(str, Enum):
    WAITING = "waiting"
    CONFIRMED = "confirmed"
    REJECTED_TOO_SMALL = "rejected_too_small"
    REJECTED_OVER_MAX = "rejected_over_max"
    REJECTED_RACE_CLOSED = "rejected_race_closed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not DepositStatus.WAITING


class TransferStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BetPayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes that survive backends which drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _sol_amount() -> Numeric:
    return Numeric(20, 9, asdecimal=False)


class Race(Base):
    __tablename__ = "races"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=RaceStatus.PENDING.value, index=True)
    winner: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    horses: Mapped[list["Horse"]] = relationship(
        "Horse", back_populates="race", cascade="all, delete-orphan", order_by="Horse.horse_number"
    )


class Horse(Base):
    __tablename__ = "horses"
    __table_args__ = (UniqueConstraint("race_id", "horse_number", name="uq_horse_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    race_id: Mapped[str] = mapped_column(String, ForeignKey("races.id"), nullable=False)
    horse_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)

    race: Mapped[Race] = relationship("Race", back_populates="horses")


class DepositAddress(Base):
    __tablename__ = "deposit_addresses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    address: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    private_key: Mapped[str] = mapped_column(Text, nullable=False)
    race_id: Mapped[str] = mapped_column(String, ForeignKey("races.id"), nullable=False, index=True)
    horse_number: Mapped[int] = mapped_column(Integer, nullable=False)
    user_wallet: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=DepositStatus.WAITING.value, index=True)
    amount_received: Mapped[float] = mapped_column(_sol_amount(), nullable=False, default=0.0)
    transaction_signature: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    collection_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    collected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    race: Mapped[Race] = relationship("Race")
    bet: Mapped["Bet | None"] = relationship("Bet", back_populates="deposit", uselist=False)


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    race_id: Mapped[str] = mapped_column(String, ForeignKey("races.id"), nullable=False, index=True)
    horse_number: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_address_id: Mapped[str] = mapped_column(
        String, ForeignKey("deposit_addresses.id"), nullable=False, unique=True
    )
    user_wallet: Mapped[str] = mapped_column(String, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(_sol_amount(), nullable=False)
    transaction_signature: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    odds_at_placement: Mapped[float | None] = mapped_column(Numeric(20, 9, asdecimal=False), nullable=True)
    winnings: Mapped[float | None] = mapped_column(_sol_amount(), nullable=True)
    payout_status: Mapped[str] = mapped_column(String, nullable=False, default=BetPayoutStatus.PENDING.value)
    payout_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    deposit: Mapped[DepositAddress] = relationship("DepositAddress", back_populates="bet")


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    bet_id: Mapped[str] = mapped_column(String, ForeignKey("bets.id"), nullable=False, unique=True)
    user_wallet: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(_sol_amount(), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=TransferStatus.PENDING.value, index=True)
    transaction_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    bet: Mapped[Bet] = relationship("Bet")


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    deposit_id: Mapped[str] = mapped_column(
        String, ForeignKey("deposit_addresses.id"), nullable=False, unique=True
    )
    source_signature: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    user_wallet: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(_sol_amount(), nullable=False)
    amount_sent: Mapped[float | None] = mapped_column(_sol_amount(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=TransferStatus.PENDING.value, index=True)
    transaction_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    deposit: Mapped[DepositAddress] = relationship("DepositAddress")


class ConfigEntry(Base):
    __tablename__ = "config"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
