from __future__ import annotations

import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from solders.keypair import Keypair
from solders.transaction import Transaction
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.core.config import Settings
from app.core.keystore import EncryptedKeyStore
from app.db import Base, create_session_factory, session_scope
from app.models import DepositAddress, Race
from app.services.allocator import AddressAllocator
from app.services.race_service import RaceService
from ledger.gateway import SIGNATURE_CONFIRMED, LedgerError, UnconfirmedTransactionError

FIXED_NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
SYSTEM_PROGRAM = "11111111111111111111111111111111"
BLOCKHASH = "11111111111111111111111111111111"
PASSPHRASE = "correct-horse-battery-staple-0123456789"


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentTransfer:
    signature: str
    source: str
    destination: str
    lamports: int


class FakeLedger:
    """In-memory ledger gateway.

    Deposits are recorded as jsonParsed-style transactions; submitted
    transactions are decoded so tests can assert on who was paid what.
    """

    def __init__(self, fee_lamports: int = 5000) -> None:
        self.fee_lamports = fee_lamports
        self.balances: dict[str, int] = {}
        self.history: dict[str, list[str]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.failing_addresses: set[str] = set()
        self.submit_errors: dict[str, Exception] = {}
        # Recipients whose transfer lands but is reported as unconfirmed.
        self.unconfirmed_recipients: set[str] = set()
        self.signature_statuses: dict[str, str | None] = {}
        # Reject transfers the payer cannot cover together with the fee.
        self.strict = False
        self.sent: list[SentTransfer] = []
        self.balance_calls: list[str] = []
        self._ids = count(1)
        self._lock = threading.Lock()

    # gateway protocol ------------------------------------------------

    def get_balance(self, address: str) -> int:
        with self._lock:
            self.balance_calls.append(address)
        if address in self.failing_addresses:
            raise LedgerError("getBalance request failed: timed out")
        return self.balances.get(address, 0)

    def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        if address in self.failing_addresses:
            raise LedgerError("getSignaturesForAddress request failed: timed out")
        return list(self.history.get(address, []))[:limit]

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        return self.transactions.get(signature)

    def get_latest_blockhash(self) -> str:
        return BLOCKHASH

    def submit_and_confirm(self, signed_transaction: bytes) -> str:
        tx = Transaction.from_bytes(signed_transaction)
        message = tx.message
        keys = [str(key) for key in message.account_keys]
        payer = keys[0]
        for recipient, error in self.submit_errors.items():
            if recipient in keys:
                raise error
        signature = str(tx.signatures[0])
        transfers = []
        for instruction in message.instructions:
            data = bytes(instruction.data)
            transfers.append(
                (
                    keys[instruction.accounts[0]],
                    keys[instruction.accounts[1]],
                    int.from_bytes(data[4:12], "little"),
                )
            )
        with self._lock:
            if self.strict:
                needed = sum(lamports for _, _, lamports in transfers) + self.fee_lamports
                if self.balances.get(payer, 0) < needed:
                    raise LedgerError("sendTransaction failed: insufficient funds for fee")
            for source, destination, lamports in transfers:
                self.balances[source] = self.balances.get(source, 0) - lamports
                self.balances[destination] = self.balances.get(destination, 0) + lamports
                self.sent.append(SentTransfer(signature, source, destination, lamports))
            self.balances[payer] = self.balances.get(payer, 0) - self.fee_lamports
        if self.unconfirmed_recipients.intersection(keys):
            raise UnconfirmedTransactionError(signature)
        return signature

    def get_signature_status(self, signature: str) -> str | None:
        if signature in self.signature_statuses:
            return self.signature_statuses[signature]
        if any(transfer.signature == signature for transfer in self.sent):
            return SIGNATURE_CONFIRMED
        return None

    # test helpers ----------------------------------------------------

    def deposit(
        self,
        address: str,
        lamports: int,
        *,
        sender: str,
        signature: str | None = None,
        sender_signs: bool = True,
    ) -> str:
        signature = signature or f"sig-{next(self._ids)}"
        current = self.balances.get(address, 0)
        sender_balance = 100 * 10**9
        self.transactions[signature] = {
            "meta": {
                "err": None,
                "preBalances": [sender_balance, current, 1],
                "postBalances": [sender_balance - lamports - self.fee_lamports, current + lamports, 1],
            },
            "transaction": {
                "signatures": [signature],
                "message": {
                    "accountKeys": [
                        {"pubkey": sender, "signer": sender_signs, "writable": True},
                        {"pubkey": address, "signer": False, "writable": True},
                        {"pubkey": SYSTEM_PROGRAM, "signer": False, "writable": False},
                    ]
                },
            },
        }
        # Newest first, as the RPC reports history.
        self.history.setdefault(address, []).insert(0, signature)
        self.balances[address] = current + lamports
        return signature

    def sent_to(self, address: str) -> list[SentTransfer]:
        return [transfer for transfer in self.sent if transfer.destination == address]


def new_wallet() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        min_bet=0.01,
        max_bet=20.0,
        house_edge_percent=5.0,
        deposit_expiry_minutes=30,
        recent_transaction_limit=5,
        signature_cache_size=100,
        reconciler_max_workers=4,
        encryption_secret=None,
        treasury_private_key=None,
        admin_api_key=None,
    )


@pytest.fixture
def plaintext_keystore() -> EncryptedKeyStore:
    return EncryptedKeyStore(None)


@pytest.fixture
def keystore() -> EncryptedKeyStore:
    return EncryptedKeyStore(PASSPHRASE)


@pytest.fixture
def make_race(session_factory):
    def factory(
        *,
        horses: int = 3,
        status: str = "open",
        start_time: datetime | None = None,
    ) -> Race:
        with session_scope(session_factory) as session:
            service = RaceService(session)
            race = service.create_race(
                "Test Derby",
                [f"Horse {number}" for number in range(1, horses + 1)],
                start_time=start_time,
            )
            if status in {"open", "closed"}:
                service.open_race(race.id)
            if status == "closed":
                service.close_race(race.id)
            return race

    return factory


@pytest.fixture
def make_deposit(session_factory, plaintext_keystore, clock):
    def factory(
        race_id: str,
        horse_number: int = 1,
        *,
        keystore: EncryptedKeyStore | None = None,
        expiry_minutes: int = 30,
    ) -> DepositAddress:
        with session_scope(session_factory) as session:
            allocator = AddressAllocator(session, keystore or plaintext_keystore, clock=clock)
            return allocator.allocate(race_id, horse_number, expiry_minutes)

    return factory


@pytest.fixture
def place_bet(session_factory, make_deposit):
    """Record a confirmed bet directly, bypassing the ledger."""

    from app.domain import ClassifiedTransfer
    from app.models import DepositStatus
    from app.repositories import DepositRepository

    def factory(race_id: str, horse_number: int, amount: float, *, wallet: str | None = None):
        deposit = make_deposit(race_id, horse_number)
        transfer = ClassifiedTransfer(
            signature=f"bet-{deposit.id}",
            sender=wallet or new_wallet(),
            amount=amount,
        )
        with session_scope(session_factory) as session:
            repo = DepositRepository(session)
            repo.resolve(deposit.id, DepositStatus.CONFIRMED, transfer=transfer)
            return repo.create_bet(repo.get_deposit(deposit.id), transfer, odds_at_placement=1.0)

    return factory


@pytest.fixture
def treasury() -> Keypair:
    return Keypair()
