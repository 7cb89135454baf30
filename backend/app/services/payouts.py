"""Outbound money movement: winner payouts, deposit refunds and deposit sweeps.

Each flow is single-flight per dispatcher instance and walks its queue item by
item. Every item gets its own short transactions around the ledger call so a
failure is recorded against that item and the batch moves on. Failed items
stay failed until an operator requeues them. A transfer whose broadcast
outcome is unknown stays in processing with its signature recorded; requeueing
it asks the ledger what became of that signature before anything is resent.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Sequence

from loguru import logger
from solders.keypair import Keypair
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.keystore import EncryptedKeyStore
from app.db import session_scope
from app.domain import DispatchSummary
from app.errors import DispatchError, KeyStoreIntegrityError
from app.models import Payout, Refund, TransferStatus
from app.repositories import DepositRepository, PayoutRepository
from ledger.gateway import (
    LAMPORTS_PER_SOL,
    SIGNATURE_CONFIRMED,
    SIGNATURE_FAILED,
    LedgerGateway,
    UnconfirmedTransactionError,
    short_address,
    to_lamports,
    to_sol,
)
from ledger.keys import InvalidKeyError, build_transfer, is_valid_address, keypair_from_secret


@contextmanager
def _single_flight(lock: threading.Lock, operation: str) -> Iterator[bool]:
    if not lock.acquire(blocking=False):
        logger.info("{} already in progress", operation)
        yield False
        return
    try:
        yield True
    finally:
        lock.release()


class PayoutDispatcher:
    def __init__(
        self,
        gateway: LedgerGateway,
        session_factory: sessionmaker[Session],
        keystore: EncryptedKeyStore,
        *,
        treasury_secret: str | None = None,
        operations_wallet: str | None = None,
        operations_split_percent: float = 0.0,
        network_fee_lamports: int = 5000,
        require_full_funding: bool = True,
    ) -> None:
        self._gateway = gateway
        self._session_factory = session_factory
        self._keystore = keystore
        self._fee = network_fee_lamports
        self._require_full_funding = require_full_funding
        self._treasury = self._load_treasury(treasury_secret)

        self._operations_wallet: str | None = None
        self._operations_split = 0.0
        if operations_wallet and operations_split_percent > 0:
            if is_valid_address(operations_wallet):
                self._operations_wallet = operations_wallet
                self._operations_split = operations_split_percent
            else:
                logger.error(
                    "Operations wallet {} is not a valid address; collection split disabled",
                    operations_wallet,
                )

        self._payout_lock = threading.Lock()
        self._refund_lock = threading.Lock()
        self._collect_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: LedgerGateway,
        session_factory: sessionmaker[Session],
        keystore: EncryptedKeyStore | None = None,
    ) -> "PayoutDispatcher":
        return cls(
            gateway,
            session_factory,
            keystore or EncryptedKeyStore.from_settings(settings),
            treasury_secret=settings.treasury_private_key,
            operations_wallet=settings.operations_wallet_address,
            operations_split_percent=settings.operations_split_percent,
            network_fee_lamports=settings.network_fee_lamports,
            require_full_funding=settings.payout_require_full_funding,
        )

    @staticmethod
    def _load_treasury(secret: str | None) -> Keypair | None:
        if not secret:
            logger.warning("No treasury private key configured; payouts and collection are disabled")
            return None
        try:
            return keypair_from_secret(secret)
        except InvalidKeyError:
            logger.error("Treasury private key is invalid; payouts and collection are disabled")
            return None

    @property
    def treasury_address(self) -> str | None:
        return str(self._treasury.pubkey()) if self._treasury else None

    def treasury_balance(self) -> float:
        if self._treasury is None:
            raise DispatchError("Treasury wallet not configured")
        return to_sol(self._gateway.get_balance(str(self._treasury.pubkey())))

    # ------------------------------------------------------------------
    # Payouts

    def process_payouts(self) -> DispatchSummary:
        with _single_flight(self._payout_lock, "Payout processing") as acquired:
            if not acquired:
                return DispatchSummary(error="Payout processing already in progress")
            if self._treasury is None:
                logger.error("Treasury wallet not configured; cannot process payouts")
                return DispatchSummary(error="Treasury wallet not configured")
            return self._run_payouts(self._treasury)

    def _run_payouts(self, treasury: Keypair) -> DispatchSummary:
        summary = DispatchSummary()
        with session_scope(self._session_factory) as session:
            pending = [(payout.id, float(payout.amount)) for payout in PayoutRepository(session).pending_payouts()]
        if not pending:
            logger.info("No pending payouts")
            return summary
        logger.info("Processing {} pending payouts...", len(pending))

        required = sum(to_lamports(amount) for _, amount in pending) + len(pending) * self._fee
        try:
            balance = self._gateway.get_balance(str(treasury.pubkey()))
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not read treasury balance: {}", exc)
            summary.error = f"Could not read treasury balance: {exc}"
            return summary
        if balance < required:
            message = (
                f"Insufficient treasury balance: {to_sol(balance)} SOL, need {to_sol(required)} SOL"
            )
            if self._require_full_funding:
                logger.error("{}; payout batch blocked", message)
                summary.error = message
                return summary
            logger.warning(message)

        for payout_id, _ in pending:
            try:
                sent = self._dispatch_payout(payout_id, treasury)
            except UnconfirmedTransactionError:
                summary.unconfirmed += 1
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to process payout {}", payout_id)
                self._record_failure(payout_id, exc, kind="payout")
                summary.failed += 1
                continue
            if sent is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.total_amount += sent

        logger.info(
            "Payout processing complete: {} processed, {} failed, {} unconfirmed",
            summary.processed,
            summary.failed,
            summary.unconfirmed,
        )
        return summary

    def _dispatch_payout(self, payout_id: str, treasury: Keypair) -> float | None:
        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            payout = repo.get_payout(payout_id)
            if payout is None or payout.status != TransferStatus.PENDING.value:
                return None
            repo.mark_processing(payout)
            recipient, amount, bet_id = payout.user_wallet, float(payout.amount), payout.bet_id

        logger.info(
            "Processing payout {}: {} SOL to {}", payout_id, amount, short_address(recipient)
        )
        try:
            signature = self._send(treasury, [(recipient, to_lamports(amount))])
        except UnconfirmedTransactionError as exc:
            self._record_unconfirmed(payout_id, exc, kind="payout")
            raise
        logger.info("Payout {} sent: {}", payout_id, signature)

        try:
            with session_scope(self._session_factory) as session:
                repo = PayoutRepository(session)
                payout = repo.get_payout(payout_id)
                repo.mark_completed(payout, signature=signature)
                repo.mark_bet_paid(bet_id, signature)
        except Exception:  # noqa: BLE001
            # Funds moved; leave the payout in processing rather than failed.
            logger.exception("Payout {} sent as {} but could not be recorded", payout_id, signature)
        return amount

    # ------------------------------------------------------------------
    # Refunds

    def process_refunds(self) -> DispatchSummary:
        with _single_flight(self._refund_lock, "Refund processing") as acquired:
            if not acquired:
                return DispatchSummary(error="Refund processing already in progress")
            return self._run_refunds()

    def _run_refunds(self) -> DispatchSummary:
        summary = DispatchSummary()
        with session_scope(self._session_factory) as session:
            pending = [refund.id for refund in PayoutRepository(session).pending_refunds()]
        if not pending:
            logger.info("No pending refunds")
            return summary
        logger.info("Processing {} pending refunds...", len(pending))

        for refund_id in pending:
            try:
                sent = self._dispatch_refund(refund_id)
            except UnconfirmedTransactionError:
                summary.unconfirmed += 1
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to process refund {}", refund_id)
                self._record_failure(refund_id, exc, kind="refund")
                summary.failed += 1
                continue
            if sent is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.total_amount += sent

        logger.info(
            "Refund processing complete: {} processed, {} failed, {} unconfirmed",
            summary.processed,
            summary.failed,
            summary.unconfirmed,
        )
        return summary

    def _dispatch_refund(self, refund_id: str) -> float | None:
        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            refund = repo.get_refund(refund_id)
            if refund is None or refund.status != TransferStatus.PENDING.value:
                return None
            repo.mark_processing(refund)
            recipient, recorded = refund.user_wallet, float(refund.amount)
            address, stored_key = refund.deposit.address, refund.deposit.private_key

        logger.info("Processing refund {} to {}", refund_id, short_address(recipient))
        # Refunds come out of the deposit address itself, never the treasury.
        keypair = self._deposit_keypair(address, stored_key)
        balance = self._gateway.get_balance(address)
        if balance <= 0:
            raise DispatchError("No funds in deposit address")
        expected = round(recorded * LAMPORTS_PER_SOL)
        if balance > expected:
            logger.warning(
                "Deposit address {} holds {} SOL beyond refund {}; only the recorded amount is returned",
                short_address(address),
                to_sol(balance - expected),
                refund_id,
            )
        lamports = min(balance, expected) - self._fee
        if lamports <= 0:
            raise DispatchError("Balance too low to refund (not enough for fees)")

        try:
            signature = self._send(keypair, [(recipient, lamports)])
        except UnconfirmedTransactionError as exc:
            self._record_unconfirmed(refund_id, exc, kind="refund", amount_sent=to_sol(lamports))
            raise
        logger.info("Refund {} sent: {}", refund_id, signature)

        try:
            with session_scope(self._session_factory) as session:
                repo = PayoutRepository(session)
                refund = repo.get_refund(refund_id)
                refund.amount_sent = to_sol(lamports)
                repo.mark_completed(refund, signature=signature)
        except Exception:  # noqa: BLE001
            logger.exception("Refund {} sent as {} but could not be recorded", refund_id, signature)
        return to_sol(lamports)

    # ------------------------------------------------------------------
    # Collection

    def collect_deposits(self) -> DispatchSummary:
        with _single_flight(self._collect_lock, "Deposit collection") as acquired:
            if not acquired:
                return DispatchSummary(error="Deposit collection already in progress")
            if self._treasury is None:
                logger.error("Treasury wallet not configured; cannot collect deposits")
                return DispatchSummary(error="Treasury wallet not configured")
            return self._run_collection(str(self._treasury.pubkey()))

    def _run_collection(self, treasury_address: str) -> DispatchSummary:
        summary = DispatchSummary()
        with session_scope(self._session_factory) as session:
            targets = [
                (deposit.id, deposit.address, deposit.private_key, float(deposit.amount_received or 0))
                for deposit in DepositRepository(session).confirmed_uncollected()
            ]
        logger.info("Collecting from {} confirmed deposit addresses...", len(targets))

        for deposit_id, address, stored_key, received in targets:
            try:
                collected = self._collect_one(deposit_id, address, stored_key, received, treasury_address)
            except UnconfirmedTransactionError as exc:
                logger.error(
                    "Sweep of deposit {} broadcast as {} but not confirmed; it stays uncollected",
                    deposit_id,
                    exc.signature,
                )
                summary.unconfirmed += 1
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Failed to collect from deposit {}", deposit_id)
                summary.failed += 1
                continue
            if collected is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.total_amount += collected

        logger.info(
            "Collected {} SOL from {} addresses", summary.total_amount, summary.processed
        )
        return summary

    def _collect_one(
        self, deposit_id: str, address: str, stored_key: str, received: float, treasury_address: str
    ) -> float | None:
        keypair = self._deposit_keypair(address, stored_key)
        balance = self._gateway.get_balance(address)
        if balance <= 0:
            logger.info("No funds to collect from {}", short_address(address))
            return None
        recorded = round(received * LAMPORTS_PER_SOL)
        if balance > recorded:
            logger.warning(
                "Deposit address {} holds {} SOL more than deposit {} recorded; sweeping all of it",
                short_address(address),
                to_sol(balance - recorded),
                deposit_id,
            )
        lamports = balance - self._fee
        if lamports <= 0:
            logger.info("Balance too low to collect from {}", short_address(address))
            return None

        recipients = self._collection_split(lamports, treasury_address)
        signature = self._send(keypair, recipients)
        logger.info(
            "Collected {} SOL from {}: {}", to_sol(lamports), short_address(address), signature
        )

        with session_scope(self._session_factory) as session:
            repo = DepositRepository(session)
            deposit = repo.get_deposit(deposit_id)
            repo.mark_collected(deposit, signature=signature)
        return to_sol(lamports)

    def _collection_split(self, lamports: int, treasury_address: str) -> list[tuple[str, int]]:
        if self._operations_wallet is None:
            return [(treasury_address, lamports)]
        operations_share = int(lamports * self._operations_split / 100)
        recipients = [
            (treasury_address, lamports - operations_share),
            (self._operations_wallet, operations_share),
        ]
        return [(address, amount) for address, amount in recipients if amount > 0]

    # ------------------------------------------------------------------
    # Operator actions

    def requeue_payout(self, payout_id: str) -> str:
        """Return a failed payout to the queue, or resolve one stuck on an unconfirmed transfer.

        Returns the payout's resulting status.
        """

        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            payout = repo.get_payout(payout_id)
            if payout is None:
                raise DispatchError("Payout not found")
            if payout.status == TransferStatus.PROCESSING.value and payout.transaction_signature:
                status = self._resolve_unconfirmed(repo, payout, kind="payout")
                if status == TransferStatus.COMPLETED.value:
                    repo.mark_bet_paid(payout.bet_id, payout.transaction_signature)
                return status
            if not repo.requeue(payout):
                raise DispatchError(f"Only failed payouts can be requeued (status: {payout.status})")
        logger.info("Payout {} requeued", payout_id)
        return TransferStatus.PENDING.value

    def requeue_refund(self, refund_id: str) -> str:
        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            refund = repo.get_refund(refund_id)
            if refund is None:
                raise DispatchError("Refund not found")
            if refund.status == TransferStatus.PROCESSING.value and refund.transaction_signature:
                return self._resolve_unconfirmed(repo, refund, kind="refund")
            if not repo.requeue(refund):
                raise DispatchError(f"Only failed refunds can be requeued (status: {refund.status})")
        logger.info("Refund {} requeued", refund_id)
        return TransferStatus.PENDING.value

    def _resolve_unconfirmed(self, repo: PayoutRepository, record: Payout | Refund, *, kind: str) -> str:
        signature = record.transaction_signature
        outcome = self._gateway.get_signature_status(signature)
        if outcome == SIGNATURE_CONFIRMED:
            repo.mark_completed(record, signature=signature)
            logger.info("{} {} confirmed on the ledger as {}", kind.capitalize(), record.id, signature)
        elif outcome == SIGNATURE_FAILED:
            if isinstance(record, Refund):
                record.amount_sent = None
            repo.release_unconfirmed(record, error=f"Transaction {signature} failed on the ledger")
            logger.info(
                "{} {} requeued; transaction {} failed on the ledger", kind.capitalize(), record.id, signature
            )
        else:
            raise DispatchError(
                f"{kind.capitalize()} {record.id} has unconfirmed transaction {signature}; "
                "not requeued until the ledger reports its outcome"
            )
        return record.status

    # ------------------------------------------------------------------
    # Helpers

    def _deposit_keypair(self, address: str, stored_key: str) -> Keypair:
        """Open the stored secret for ``address``; the result lives only for this call."""

        secret = self._keystore.open(stored_key)
        try:
            keypair = keypair_from_secret(secret)
        except InvalidKeyError as exc:
            raise KeyStoreIntegrityError(
                f"Stored key for {short_address(address)} is not a valid keypair"
            ) from exc
        if str(keypair.pubkey()) != address:
            raise KeyStoreIntegrityError(
                f"Stored key does not match deposit address {short_address(address)}"
            )
        return keypair

    def _send(self, payer: Keypair, recipients: Sequence[tuple[str, int]]) -> str:
        blockhash = self._gateway.get_latest_blockhash()
        try:
            signed = build_transfer(payer, recipients, blockhash)
        except ValueError as exc:
            raise DispatchError(str(exc)) from exc
        return self._gateway.submit_and_confirm(signed)

    def _record_unconfirmed(
        self,
        record_id: str,
        exc: UnconfirmedTransactionError,
        *,
        kind: str,
        amount_sent: float | None = None,
    ) -> None:
        logger.error(
            "{} {} broadcast as {} but not confirmed; left in processing",
            kind.capitalize(),
            record_id,
            exc.signature,
        )
        try:
            with session_scope(self._session_factory) as session:
                repo = PayoutRepository(session)
                record = repo.get_payout(record_id) if kind == "payout" else repo.get_refund(record_id)
                if record is None:
                    return
                if amount_sent is not None:
                    record.amount_sent = amount_sent
                repo.mark_unconfirmed(record, signature=exc.signature, error=str(exc))
        except Exception:  # noqa: BLE001
            logger.exception("Could not record unconfirmed {} {}", kind, record_id)

    def _record_failure(self, record_id: str, exc: Exception, *, kind: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                repo = PayoutRepository(session)
                record = repo.get_payout(record_id) if kind == "payout" else repo.get_refund(record_id)
                if record is not None:
                    repo.mark_failed(record, error=str(exc) or type(exc).__name__)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failure for {} {}", kind, record_id)


__all__ = ["PayoutDispatcher"]
