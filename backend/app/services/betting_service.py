"""Request-layer facade.

Every public method returns an :class:`OperationResult`; domain and ledger
failures become ``ok=False`` results instead of exceptions so callers never
have to know the error taxonomy.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Sequence, TypeVar

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.keystore import EncryptedKeyStore
from app.db import session_scope
from app.errors import DispatchError, RacepoolError
from app.models import (
    Bet,
    DepositAddress,
    DepositStatus,
    Payout,
    Race,
    RaceStatus,
    Refund,
    TransferStatus,
    utcnow,
)
from app.repositories import DepositRepository, PayoutRepository, RaceRepository
from app.services.allocator import AddressAllocator
from app.services.payouts import PayoutDispatcher
from app.services.race_service import RaceService
from app.services.settlement import SettlementService
from ledger.gateway import LedgerError
from ledger.keys import is_valid_address

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


@dataclass(slots=True)
class OperationResult:
    ok: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def success(cls, data: Any = None) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, data: Any = None) -> "OperationResult":
        return cls(ok=False, data=data, error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok, "data": self.data}
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _parse_status(enum_type: type[E], value: str | None, label: str) -> E | None:
    if not value:
        return None
    try:
        return enum_type(value)
    except ValueError as exc:
        raise RacepoolError(f"Unknown {label} status: {value}") from exc


def _bet_dict(bet: Bet) -> dict[str, Any]:
    return {
        "id": bet.id,
        "race_id": bet.race_id,
        "horse_number": bet.horse_number,
        "user_wallet": bet.user_wallet,
        "amount": float(bet.amount),
        "transaction_signature": bet.transaction_signature,
        "odds_at_placement": bet.odds_at_placement,
        "winnings": bet.winnings,
        "payout_status": bet.payout_status,
        "payout_signature": bet.payout_signature,
        "created_at": bet.created_at,
    }


def _transfer_dict(record: Payout | Refund) -> dict[str, Any]:
    payload = {
        "id": record.id,
        "user_wallet": record.user_wallet,
        "amount": float(record.amount),
        "status": record.status,
        "transaction_signature": record.transaction_signature,
        "error_message": record.error_message,
        "created_at": record.created_at,
        "processed_at": record.processed_at,
    }
    if isinstance(record, Payout):
        payload["bet_id"] = record.bet_id
    else:
        payload.update(
            deposit_id=record.deposit_id,
            reason=record.reason,
            amount_sent=None if record.amount_sent is None else float(record.amount_sent),
        )
    return payload


def _race_dict(race: Race) -> dict[str, Any]:
    return {
        "id": race.id,
        "title": race.title,
        "status": race.status,
        "winner": race.winner,
        "start_time": race.start_time,
        "created_at": race.created_at,
        "horses": [{"horse_number": horse.horse_number, "name": horse.name} for horse in race.horses],
    }


def _deposit_dict(deposit: DepositAddress) -> dict[str, Any]:
    bet = deposit.bet
    return {
        "deposit_id": deposit.id,
        "address": deposit.address,
        "race_id": deposit.race_id,
        "horse_number": deposit.horse_number,
        "status": deposit.status,
        "amount_received": float(deposit.amount_received or 0),
        "user_wallet": deposit.user_wallet,
        "transaction_signature": deposit.transaction_signature,
        "expires_at": deposit.expires_at,
        "created_at": deposit.created_at,
        "resolved_at": deposit.resolved_at,
        "collection_signature": deposit.collection_signature,
        "bet": None
        if bet is None
        else {
            "id": bet.id,
            "amount": float(bet.amount),
            "odds_at_placement": bet.odds_at_placement,
            "winnings": bet.winnings,
            "payout_status": bet.payout_status,
        },
    }


class BettingService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings,
        *,
        keystore: EncryptedKeyStore | None = None,
        dispatcher: PayoutDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        self._keystore = keystore or EncryptedKeyStore.from_settings(settings)
        self._dispatcher = dispatcher
        self._clock = clock

    def _execute(self, operation: str, action: Callable[[], T]) -> OperationResult:
        try:
            return OperationResult.success(action())
        except (RacepoolError, LedgerError) as exc:
            logger.warning("{} failed: {}", operation, exc)
            return OperationResult.failure(str(exc))
        except Exception:  # noqa: BLE001
            logger.exception("{} failed unexpectedly", operation)
            return OperationResult.failure(f"{operation} failed")

    def _require_dispatcher(self) -> PayoutDispatcher:
        if self._dispatcher is None:
            raise DispatchError("Payout dispatcher is not configured")
        return self._dispatcher

    # ------------------------------------------------------------------
    # Wagers

    def allocate(self, race_id: str, horse_number: int, *, user_wallet: str | None = None) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                allocator = AddressAllocator(session, self._keystore, clock=self._clock)
                deposit = allocator.allocate(
                    race_id,
                    horse_number,
                    self.settings.deposit_expiry_minutes,
                    user_wallet=user_wallet,
                )
                return {
                    "deposit_id": deposit.id,
                    "address": deposit.address,
                    "race_id": deposit.race_id,
                    "horse_number": deposit.horse_number,
                    "expires_at": deposit.expires_at,
                    "min_bet": self.settings.min_bet,
                    "max_bet": self.settings.max_bet,
                }

        return self._execute("Deposit allocation", action)

    def get_deposit_status(self, deposit_id: str) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                deposit = DepositRepository(session).get_deposit(deposit_id)
                if deposit is None:
                    raise RacepoolError("Deposit not found")
                return _deposit_dict(deposit)

        return self._execute("Deposit status", action)

    def deposit_by_address(self, address: str) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                deposit = DepositRepository(session).get_by_address(address)
                if deposit is None:
                    raise RacepoolError("Deposit not found")
                return _deposit_dict(deposit)

        return self._execute("Deposit lookup", action)

    def race_bets(self, race_id: str) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            with session_scope(self._session_factory) as session:
                if RaceRepository(session).get_race(race_id) is None:
                    raise RacepoolError("Race not found")
                return [_bet_dict(bet) for bet in DepositRepository(session).bets_for_race(race_id)]

        return self._execute("Race bets", action)

    def wallet_bets(self, wallet: str) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            if not is_valid_address(wallet):
                raise RacepoolError("Invalid wallet address")
            with session_scope(self._session_factory) as session:
                return [_bet_dict(bet) for bet in DepositRepository(session).bets_for_wallet(wallet)]

        return self._execute("Wallet bets", action)

    # ------------------------------------------------------------------
    # Races

    def list_races(self, status: str | None = None) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            status_filter = _parse_status(RaceStatus, status, "race")
            with session_scope(self._session_factory) as session:
                return [_race_dict(race) for race in RaceRepository(session).list_races(status=status_filter)]

        return self._execute("Race listing", action)

    def race_pools(self, race_id: str) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                races = RaceRepository(session)
                race = races.get_race(race_id)
                if race is None:
                    raise RacepoolError("Race not found")
                names = {horse.horse_number: horse.name for horse in race.horses}
                pools = races.pool_stats(race_id)
                total = sum(pool.amount for pool in pools.values())
                return {
                    "race_id": race_id,
                    "status": race.status,
                    "total_pool": total,
                    "pools": [
                        {
                            "horse_number": number,
                            "name": names.get(number),
                            "bets": pool.bets,
                            "amount": pool.amount,
                            "odds": total / pool.amount if pool.amount > 0 else None,
                        }
                        for number, pool in sorted(pools.items())
                    ],
                }

        return self._execute("Race pools", action)

    def create_race(
        self,
        title: str,
        horse_names: Sequence[str],
        *,
        start_time: datetime | None = None,
    ) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                race = RaceService(session).create_race(title, horse_names, start_time=start_time)
                return _race_dict(race)

        return self._execute("Race creation", action)

    def open_race(self, race_id: str) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                return _race_dict(RaceService(session).open_race(race_id))

        return self._execute("Open race", action)

    def close_race(self, race_id: str) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                return _race_dict(RaceService(session).close_race(race_id))

        return self._execute("Close race", action)

    def settle(self, race_id: str, winning_horse: int) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                service = SettlementService(session, house_edge=self.settings.house_edge)
                return service.settle(race_id, winning_horse).to_dict()

        return self._execute("Settlement", action)

    # ------------------------------------------------------------------
    # Outbound transfers

    def process_payouts(self) -> OperationResult:
        return self._dispatch("Payout processing", lambda dispatcher: dispatcher.process_payouts())

    def process_refunds(self) -> OperationResult:
        return self._dispatch("Refund processing", lambda dispatcher: dispatcher.process_refunds())

    def collect_deposits(self) -> OperationResult:
        return self._dispatch("Deposit collection", lambda dispatcher: dispatcher.collect_deposits())

    def _dispatch(self, operation: str, run: Callable[[PayoutDispatcher], Any]) -> OperationResult:
        result = self._execute(operation, lambda: run(self._require_dispatcher()))
        if result.ok and result.data.error:
            return OperationResult.failure(result.data.error, data=result.data.to_dict())
        if result.ok:
            result.data = result.data.to_dict()
        return result

    def requeue_payout(self, payout_id: str) -> OperationResult:
        def action() -> dict[str, str]:
            status = self._require_dispatcher().requeue_payout(payout_id)
            return {"payout_id": payout_id, "status": status}

        return self._execute("Payout requeue", action)

    def requeue_refund(self, refund_id: str) -> OperationResult:
        def action() -> dict[str, str]:
            status = self._require_dispatcher().requeue_refund(refund_id)
            return {"refund_id": refund_id, "status": status}

        return self._execute("Refund requeue", action)

    def treasury_balance(self) -> OperationResult:
        def action() -> dict[str, Any]:
            dispatcher = self._require_dispatcher()
            return {"address": dispatcher.treasury_address, "balance": dispatcher.treasury_balance()}

        return self._execute("Treasury balance", action)

    # ------------------------------------------------------------------
    # Operator views

    def list_payouts(self, status: str | None = None, *, limit: int = 100) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            status_filter = _parse_status(TransferStatus, status, "payout")
            with session_scope(self._session_factory) as session:
                payouts = PayoutRepository(session).payouts_by_status(status_filter, limit=limit)
                return [_transfer_dict(payout) for payout in payouts]

        return self._execute("Payout listing", action)

    def list_refunds(self, status: str | None = None, *, limit: int = 100) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            status_filter = _parse_status(TransferStatus, status, "refund")
            with session_scope(self._session_factory) as session:
                refunds = PayoutRepository(session).refunds_by_status(status_filter, limit=limit)
                return [_transfer_dict(refund) for refund in refunds]

        return self._execute("Refund listing", action)

    def list_deposits(self, status: str | None = None, *, limit: int = 100) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            status_filter = _parse_status(DepositStatus, status, "deposit")
            with session_scope(self._session_factory) as session:
                deposits = DepositRepository(session).list_deposits(status=status_filter, limit=limit)
                return [_deposit_dict(deposit) for deposit in deposits]

        return self._execute("Deposit listing", action)

    def list_bets(self, race_id: str | None = None, *, limit: int = 200) -> OperationResult:
        def action() -> list[dict[str, Any]]:
            with session_scope(self._session_factory) as session:
                deposits = DepositRepository(session)
                bets = deposits.bets_for_race(race_id) if race_id else deposits.recent_bets(limit=limit)
                return [_bet_dict(bet) for bet in bets]

        return self._execute("Bet listing", action)

    def admin_stats(self) -> OperationResult:
        def action() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                races = RaceRepository(session)
                transfers = PayoutRepository(session)
                active = races.active_pool()
                return {
                    "races": races.status_counts(),
                    "active_bets": active.bets,
                    "active_pool": active.amount,
                    "payouts": {
                        status: {"count": count, "amount": amount}
                        for status, (count, amount) in transfers.status_totals(Payout).items()
                    },
                    "refunds": {
                        status: {"count": count, "amount": amount}
                        for status, (count, amount) in transfers.status_totals(Refund).items()
                    },
                }

        return self._execute("Admin stats", action)

    # ------------------------------------------------------------------
    # Runtime config

    def set_config(self, key: str, value: str) -> OperationResult:
        def action() -> dict[str, str]:
            if not key.strip():
                raise RacepoolError("Config key is required")
            with session_scope(self._session_factory) as session:
                entry = RaceRepository(session).set_config(key, value)
                return {"key": entry.key, "value": entry.value}

        return self._execute("Config update", action)

    def get_config(self, key: str) -> OperationResult:
        def action() -> dict[str, str | None]:
            with session_scope(self._session_factory) as session:
                return {"key": key, "value": RaceRepository(session).get_config(key)}

        return self._execute("Config lookup", action)


__all__ = ["BettingService", "OperationResult"]
