"""Deposit reconciliation loop.

Each cycle reads every waiting deposit address, asks the ledger what arrived
there, and settles the address into exactly one terminal status. Ledger reads
fan out over a small thread pool; every state change is applied serially on
the cycle's own thread.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.core.keystore import EncryptedKeyStore
from app.db import SessionLocal, init_db, session_scope
from app.domain import BetLimits, ClassifiedTransfer, CycleSummary
from app.models import utcnow
from app.repositories import DepositRepository, RaceRepository
from app.services.deposit_state import decide_expiry, decide_transfer
from app.services.notifications import (
    BetPlaced,
    DepositEvent,
    DepositEventChannel,
    DepositExpired,
    RefundQueued,
)
from app.services.signatures import ProcessedSignatureSet
from ledger.classify import classify_transfer
from ledger.client import SolanaRpcClient
from ledger.gateway import LedgerError, LedgerGateway, short_address


@dataclass(slots=True)
class AddressObservation:
    deposit_id: str
    address: str
    expires_at: datetime
    balance: int = 0
    transfer: ClassifiedTransfer | None = None
    error: str | None = None


class DepositReconciler:
    """Drive waiting deposit addresses to a terminal status from ledger observations."""

    def __init__(
        self,
        gateway: LedgerGateway,
        session_factory: sessionmaker[Session],
        settings: Settings,
        *,
        signatures: ProcessedSignatureSet | None = None,
        events: DepositEventChannel | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._session_factory = session_factory
        self.settings = settings
        self.signatures = signatures or ProcessedSignatureSet(settings.signature_cache_size)
        self.events = events or DepositEventChannel()
        self._clock = clock
        self._limits = BetLimits(min_bet=settings.min_bet, max_bet=settings.max_bet)
        self._cycle_lock = threading.Lock()
        self._task: PollingTask | None = None

    # ------------------------------------------------------------------
    # Lifecycle

    def prime_signatures(self) -> int:
        """Seed the in-memory set from persisted signatures so a restart never replays a transfer."""

        with session_scope(self._session_factory) as session:
            recent = DepositRepository(session).recent_consumed_signatures(self.signatures.capacity)
        count = self.signatures.seed(recent)
        logger.info("Primed processed signature set with {} signatures", count)
        return count

    def start(self, interval: float | None = None) -> None:
        if self._task is not None and self._task.running:
            return
        self.prime_signatures()
        self._task = PollingTask(
            self.run_cycle,
            interval or self.settings.poll_interval_seconds,
            name="deposit-watch",
        )
        self._task.start()
        logger.info("Deposit reconciler started (interval={}s)", self._task.interval)

    def stop(self, timeout: float | None = None) -> None:
        if self._task is None:
            return
        self._task.stop(timeout)
        self._task = None
        logger.info("Deposit reconciler stopped")

    # ------------------------------------------------------------------
    # Cycle

    def run_cycle(self) -> CycleSummary:
        now = self._clock()
        summary = CycleSummary(started_at=now)
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Previous reconciliation cycle still running; skipping")
            summary.skipped = True
            return summary
        try:
            self._run(now, summary)
        finally:
            self._cycle_lock.release()
        if summary.confirmed or summary.rejected or summary.expired or summary.errors:
            logger.info(
                "Reconciliation cycle: checked={}, confirmed={}, rejected={}, expired={}, errors={}",
                summary.checked,
                summary.confirmed,
                summary.rejected,
                summary.expired,
                summary.errors,
            )
        return summary

    def _run(self, now: datetime, summary: CycleSummary) -> None:
        with session_scope(self._session_factory) as session:
            waiting = [
                (deposit.id, deposit.address, deposit.expires_at)
                for deposit in DepositRepository(session).waiting_deposits()
            ]
        if not waiting:
            return
        summary.checked = len(waiting)

        workers = max(1, min(self.settings.reconciler_max_workers, len(waiting)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deposit-watch") as executor:
            futures = [
                executor.submit(self._observe, deposit_id, address, expires_at)
                for deposit_id, address, expires_at in waiting
            ]
            for future in futures:
                observation = future.result()
                if observation.error is not None:
                    summary.errors += 1
                    continue
                try:
                    self._apply(observation, now, summary)
                except Exception:  # noqa: BLE001
                    logger.exception(
                        "Failed to apply observation for deposit {}", observation.deposit_id
                    )
                    summary.errors += 1

    def _observe(self, deposit_id: str, address: str, expires_at: datetime) -> AddressObservation:
        """Ledger reads for one address; runs on a worker thread and never touches the database."""

        observation = AddressObservation(deposit_id=deposit_id, address=address, expires_at=expires_at)
        try:
            observation.balance = self._gateway.get_balance(address)
            if observation.balance <= 0:
                return observation
            signatures = self._gateway.get_recent_signatures(
                address, self.settings.recent_transaction_limit
            )
            for signature in signatures:
                if signature in self.signatures:
                    continue
                transaction = self._gateway.get_transaction(signature)
                if transaction is None:
                    continue
                transfer = classify_transfer(transaction, address)
                if transfer is not None:
                    # First valid transfer wins for this address.
                    observation.transfer = transfer
                    break
        except LedgerError as exc:
            logger.warning("Ledger error checking {}: {}", short_address(address), exc)
            observation.error = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error checking {}", short_address(address))
            observation.error = str(exc) or type(exc).__name__
        return observation

    def _apply(self, observation: AddressObservation, now: datetime, summary: CycleSummary) -> None:
        if observation.transfer is not None:
            outcome = self._apply_transfer(observation.deposit_id, observation.transfer, now)
            if outcome is True:
                summary.confirmed += 1
            elif outcome is False:
                summary.rejected += 1
            return
        if now >= observation.expires_at and self._expire(observation.deposit_id, observation.balance, now):
            summary.expired += 1

    def _apply_transfer(self, deposit_id: str, transfer: ClassifiedTransfer, now: datetime) -> bool | None:
        """Resolve one deposit from a classified transfer.

        Returns True when a bet was placed, False when a refund was queued and
        None when nothing changed.
        """

        if transfer.signature in self.signatures:
            return None

        event: DepositEvent
        with session_scope(self._session_factory) as session:
            deposits = DepositRepository(session)
            races = RaceRepository(session)
            if deposits.signature_consumed(transfer.signature):
                logger.warning("Transfer {} was already consumed; ignoring", transfer.signature)
                self.signatures.add(transfer.signature)
                return None

            deposit = deposits.get_deposit(deposit_id)
            if deposit is None:
                return None
            race = races.get_race(deposit.race_id)
            decision = decide_transfer(
                current_status=deposit.status,
                amount=transfer.amount,
                race_status=race.status if race else None,
                limits=self._limits,
                pools=races.pool_stats(deposit.race_id),
                horse_number=deposit.horse_number,
            )
            if decision is None:
                return None
            if not deposits.resolve(deposit_id, decision.status, transfer=transfer, at=now):
                return None
            if not transfer.sender_is_signer:
                logger.warning(
                    "Sender {} of {} did not sign the transfer; using it as the recipient anyway",
                    short_address(transfer.sender),
                    transfer.signature,
                )

            if decision.creates_bet:
                bet = deposits.create_bet(deposit, transfer, odds_at_placement=decision.odds)
                event = BetPlaced(
                    bet_id=bet.id,
                    race_id=bet.race_id,
                    horse_number=bet.horse_number,
                    deposit_id=deposit.id,
                    user_wallet=bet.user_wallet,
                    amount=transfer.amount,
                    odds=decision.odds,
                )
                logger.info(
                    "Bet placed: {} SOL on horse #{} in race {} from {} (odds {:.2f})",
                    transfer.amount,
                    bet.horse_number,
                    bet.race_id,
                    short_address(bet.user_wallet),
                    decision.odds,
                )
            else:
                refund = deposits.create_refund(deposit, transfer, reason=decision.refund_reason)
                event = RefundQueued(
                    refund_id=refund.id,
                    deposit_id=deposit.id,
                    user_wallet=refund.user_wallet,
                    amount=transfer.amount,
                    reason=decision.refund_reason,
                )
                logger.warning(
                    "Deposit {} rejected ({}): {} SOL refund queued",
                    short_address(deposit.address),
                    decision.refund_reason,
                    transfer.amount,
                )

        self.signatures.add(transfer.signature)
        self.events.publish(event)
        return decision.creates_bet

    def _expire(self, deposit_id: str, balance_lamports: int, now: datetime) -> bool:
        with session_scope(self._session_factory) as session:
            deposits = DepositRepository(session)
            deposit = deposits.get_deposit(deposit_id)
            if deposit is None:
                return False
            status = decide_expiry(
                current_status=deposit.status,
                expires_at=deposit.expires_at,
                now=now,
                balance_lamports=balance_lamports,
            )
            if status is None or not deposits.resolve(deposit_id, status, at=now):
                return False
            race_id = deposit.race_id
            address = deposit.address

        logger.info("Deposit address {} expired", short_address(address))
        self.events.publish(DepositExpired(deposit_id=deposit_id, race_id=race_id))
        return True


class PollingTask:
    """Call ``callback`` every ``interval`` seconds on a background thread.

    Cycles never overlap. ``stop`` lets the in-flight cycle finish, then joins.
    """

    def __init__(self, callback: Callable[[], object], interval: float, *, name: str = "polling-task") -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.name = name
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def run_once(self) -> object:
        return self._callback()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._callback()
            except Exception:  # noqa: BLE001
                logger.exception("Polling task {} cycle failed", self.name)
            self._stop_event.wait(self.interval)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch deposit addresses and reconcile incoming transfers")
    parser.add_argument("--once", action="store_true", help="Run a single reconciliation cycle and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Override the polling interval in seconds",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    EncryptedKeyStore.from_settings(settings).warn_if_plaintext()
    init_db()

    client = SolanaRpcClient(
        rpc_url=str(settings.solana_rpc_url),
        timeout=settings.rpc_timeout_seconds,
        confirm_timeout=settings.confirm_timeout_seconds,
    )
    reconciler = DepositReconciler(client, SessionLocal, settings)
    try:
        if args.once:
            reconciler.prime_signatures()
            summary = reconciler.run_cycle()
            print(json.dumps(summary.to_dict(), indent=2))
            return 0

        shutdown = threading.Event()

        def handle_signal(signum, frame):
            logger.info("Received signal {}; finishing the current cycle", signum)
            shutdown.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        reconciler.start(args.interval)
        shutdown.wait()
        reconciler.stop()
        return 0
    finally:
        client.close()


if __name__ == "__main__":
    raise SystemExit(main())
