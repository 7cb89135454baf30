"""Outbound transfer bookkeeping for payouts and refunds."""

from __future__ import annotations

from datetime import datetime
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import Bet, BetPayoutStatus, Payout, Refund, TransferStatus, utcnow

TransferRecord = TypeVar("TransferRecord", Payout, Refund)


class PayoutRepository:
    """Encapsulate payout and refund status transitions."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Payouts

    def create_payout(self, *, bet_id: str, user_wallet: str, amount: float) -> Payout:
        payout = Payout(id=str(uuid4()), bet_id=bet_id, user_wallet=user_wallet, amount=amount)
        self._session.add(payout)
        self._session.flush()
        return payout

    def get_payout(self, payout_id: str) -> Payout | None:
        return self._session.get(Payout, payout_id)

    def pending_payouts(self) -> list[Payout]:
        query = (
            select(Payout)
            .where(Payout.status == TransferStatus.PENDING.value)
            .order_by(Payout.created_at, Payout.id)
        )
        return list(self._session.execute(query).scalars().all())

    def payouts_by_status(self, status: TransferStatus | None = None, *, limit: int = 100) -> list[Payout]:
        query = select(Payout).order_by(Payout.created_at.desc(), Payout.id).limit(limit)
        if status is not None:
            query = query.where(Payout.status == status.value)
        return list(self._session.execute(query).scalars().all())

    def payouts_for_race(self, race_id: str) -> list[Payout]:
        query = (
            select(Payout)
            .join(Bet, Bet.id == Payout.bet_id)
            .where(Bet.race_id == race_id)
            .order_by(Payout.created_at, Payout.id)
        )
        return list(self._session.execute(query).scalars().all())

    def mark_bet_paid(self, bet_id: str, signature: str) -> None:
        bet = self._session.get(Bet, bet_id)
        if bet is None:
            return
        bet.payout_status = BetPayoutStatus.PAID.value
        bet.payout_signature = signature
        self._session.flush()

    # ------------------------------------------------------------------
    # Refunds

    def get_refund(self, refund_id: str) -> Refund | None:
        return self._session.get(Refund, refund_id)

    def pending_refunds(self) -> list[Refund]:
        query = (
            select(Refund)
            .where(Refund.status == TransferStatus.PENDING.value)
            .order_by(Refund.created_at, Refund.id)
        )
        return list(self._session.execute(query).scalars().all())

    def refunds_by_status(self, status: TransferStatus | None = None, *, limit: int = 100) -> list[Refund]:
        query = select(Refund).order_by(Refund.created_at.desc(), Refund.id).limit(limit)
        if status is not None:
            query = query.where(Refund.status == status.value)
        return list(self._session.execute(query).scalars().all())

    def status_totals(self, model: type[Payout] | type[Refund]) -> dict[str, tuple[int, float]]:
        """Return ``{status: (count, amount)}`` for payouts or refunds."""

        query = select(model.status, func.count(model.id), func.coalesce(func.sum(model.amount), 0)).group_by(
            model.status
        )
        return {status: (count, float(amount or 0)) for status, count, amount in self._session.execute(query)}

    # ------------------------------------------------------------------
    # Shared status transitions

    def mark_processing(self, record: TransferRecord) -> TransferRecord:
        record.status = TransferStatus.PROCESSING.value
        record.error_message = None
        self._session.flush()
        return record

    def mark_completed(
        self, record: TransferRecord, *, signature: str, at: datetime | None = None
    ) -> TransferRecord:
        record.status = TransferStatus.COMPLETED.value
        record.transaction_signature = signature
        record.processed_at = at or utcnow()
        self._session.flush()
        return record

    def mark_failed(
        self, record: TransferRecord, *, error: str, at: datetime | None = None
    ) -> TransferRecord:
        record.status = TransferStatus.FAILED.value
        record.error_message = error
        record.processed_at = at or utcnow()
        self._session.flush()
        return record

    def mark_unconfirmed(self, record: TransferRecord, *, signature: str, error: str) -> TransferRecord:
        # Stays in processing: the signature may still land.
        record.status = TransferStatus.PROCESSING.value
        record.transaction_signature = signature
        record.error_message = error
        self._session.flush()
        return record

    def release_unconfirmed(self, record: TransferRecord, *, error: str) -> TransferRecord:
        record.status = TransferStatus.PENDING.value
        record.transaction_signature = None
        record.error_message = error
        record.processed_at = None
        self._session.flush()
        return record

    def requeue(self, record: TransferRecord) -> bool:
        if record.status != TransferStatus.FAILED.value:
            return False
        record.status = TransferStatus.PENDING.value
        record.processed_at = None
        self._session.flush()
        return True
