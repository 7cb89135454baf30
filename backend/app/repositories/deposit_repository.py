"""Deposit address, bet and refund persistence."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.domain import BetStake, ClassifiedTransfer
from app.models import Bet, DepositAddress, DepositStatus, Refund, utcnow


class DepositRepository:
    """Encapsulate the write-once deposit lifecycle and the records it produces."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Deposit addresses

    def create_deposit(
        self,
        *,
        address: str,
        stored_key: str,
        race_id: str,
        horse_number: int,
        expires_at: datetime,
        user_wallet: str | None = None,
    ) -> DepositAddress:
        deposit = DepositAddress(
            id=str(uuid4()),
            address=address,
            private_key=stored_key,
            race_id=race_id,
            horse_number=horse_number,
            user_wallet=user_wallet,
            expires_at=expires_at,
            status=DepositStatus.WAITING.value,
        )
        self._session.add(deposit)
        self._session.flush()
        return deposit

    def get_deposit(self, deposit_id: str) -> DepositAddress | None:
        return self._session.get(DepositAddress, deposit_id)

    def get_by_address(self, address: str) -> DepositAddress | None:
        query = select(DepositAddress).where(DepositAddress.address == address)
        return self._session.execute(query).scalar_one_or_none()

    def list_deposits(self, *, status: DepositStatus | None = None, limit: int = 100) -> list[DepositAddress]:
        query = select(DepositAddress).order_by(DepositAddress.created_at.desc(), DepositAddress.id).limit(limit)
        if status is not None:
            query = query.where(DepositAddress.status == status.value)
        return list(self._session.execute(query).scalars().all())

    def waiting_deposits(self) -> list[DepositAddress]:
        query = (
            select(DepositAddress)
            .where(DepositAddress.status == DepositStatus.WAITING.value)
            .order_by(DepositAddress.created_at)
        )
        return list(self._session.execute(query).scalars().all())

    def resolve(
        self,
        deposit_id: str,
        status: DepositStatus,
        *,
        transfer: ClassifiedTransfer | None = None,
        at: datetime | None = None,
    ) -> bool:
        """Move a waiting deposit to a terminal status.

        The update only matches rows still in ``waiting``; a False return means
        the deposit was already resolved and nothing was written.
        """

        if not status.is_terminal:
            raise ValueError("deposits can only be resolved into a terminal status")
        values: dict[str, object] = {"status": status.value, "resolved_at": at or utcnow()}
        if transfer is not None:
            values["amount_received"] = transfer.amount
            values["transaction_signature"] = transfer.signature
            values["user_wallet"] = transfer.sender
        result = self._session.execute(
            update(DepositAddress)
            .where(
                DepositAddress.id == deposit_id,
                DepositAddress.status == DepositStatus.WAITING.value,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def confirmed_uncollected(self) -> list[DepositAddress]:
        query = (
            select(DepositAddress)
            .where(
                DepositAddress.status == DepositStatus.CONFIRMED.value,
                DepositAddress.collection_signature.is_(None),
            )
            .order_by(DepositAddress.created_at)
        )
        return list(self._session.execute(query).scalars().all())

    def mark_collected(self, deposit: DepositAddress, *, signature: str, at: datetime | None = None) -> None:
        deposit.collection_signature = signature
        deposit.collected_at = at or utcnow()
        self._session.flush()

    # ------------------------------------------------------------------
    # Bets

    def create_bet(
        self,
        deposit: DepositAddress,
        transfer: ClassifiedTransfer,
        *,
        odds_at_placement: float,
    ) -> Bet:
        bet = Bet(
            id=str(uuid4()),
            race_id=deposit.race_id,
            horse_number=deposit.horse_number,
            deposit_address_id=deposit.id,
            user_wallet=transfer.sender,
            amount=transfer.amount,
            transaction_signature=transfer.signature,
            odds_at_placement=odds_at_placement,
        )
        self._session.add(bet)
        self._session.flush()
        return bet

    def get_bet_for_deposit(self, deposit_id: str) -> Bet | None:
        query = select(Bet).where(Bet.deposit_address_id == deposit_id)
        return self._session.execute(query).scalar_one_or_none()

    def bets_for_race(self, race_id: str) -> list[Bet]:
        query = select(Bet).where(Bet.race_id == race_id).order_by(Bet.created_at, Bet.id)
        return list(self._session.execute(query).scalars().all())

    def bets_for_wallet(self, wallet: str, *, limit: int = 100) -> list[Bet]:
        query = (
            select(Bet)
            .where(Bet.user_wallet == wallet)
            .order_by(Bet.created_at.desc(), Bet.id)
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())

    def recent_bets(self, *, limit: int = 200) -> list[Bet]:
        query = select(Bet).order_by(Bet.created_at.desc(), Bet.id).limit(limit)
        return list(self._session.execute(query).scalars().all())

    def stakes_for_race(self, race_id: str) -> list[BetStake]:
        return [
            BetStake(
                bet_id=bet.id,
                horse_number=bet.horse_number,
                user_wallet=bet.user_wallet,
                amount=float(bet.amount),
            )
            for bet in self.bets_for_race(race_id)
        ]

    def set_winnings(self, bet_id: str, winnings: float) -> None:
        self._session.execute(
            update(Bet)
            .where(Bet.id == bet_id)
            .values(winnings=winnings)
            .execution_options(synchronize_session="fetch")
        )

    # ------------------------------------------------------------------
    # Refunds

    def create_refund(
        self,
        deposit: DepositAddress,
        transfer: ClassifiedTransfer,
        *,
        reason: str,
    ) -> Refund:
        refund = Refund(
            id=str(uuid4()),
            deposit_id=deposit.id,
            source_signature=transfer.signature,
            user_wallet=transfer.sender,
            amount=transfer.amount,
            reason=reason,
        )
        self._session.add(refund)
        self._session.flush()
        return refund

    # ------------------------------------------------------------------
    # Signature bookkeeping

    def signature_consumed(self, signature: str) -> bool:
        bet_hit = select(Bet.id).where(Bet.transaction_signature == signature).limit(1)
        if self._session.execute(bet_hit).first() is not None:
            return True
        refund_hit = select(Refund.id).where(Refund.source_signature == signature).limit(1)
        if self._session.execute(refund_hit).first() is not None:
            return True
        deposit_hit = select(DepositAddress.id).where(DepositAddress.transaction_signature == signature).limit(1)
        return self._session.execute(deposit_hit).first() is not None

    def recent_consumed_signatures(self, limit: int) -> list[str]:
        """Signatures of the most recently resolved deposits, newest last."""

        query = (
            select(DepositAddress.transaction_signature)
            .where(DepositAddress.transaction_signature.is_not(None))
            .order_by(DepositAddress.resolved_at.desc())
            .limit(limit)
        )
        signatures = [row for row in self._session.execute(query).scalars().all() if row]
        signatures.reverse()
        return signatures
