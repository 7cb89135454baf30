from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from app.core.keystore import EncryptedKeyStore
from app.errors import AllocationError
from app.models import DepositAddress, RaceStatus, utcnow
from app.repositories import DepositRepository, RaceRepository
from ledger.gateway import short_address
from ledger.keys import generate_keypair, is_valid_address


class AddressAllocator:
    """Mint a single-use deposit address for one wager request."""

    def __init__(
        self,
        session: Session,
        keystore: EncryptedKeyStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        keypair_factory: Callable[[], tuple[str, str]] = generate_keypair,
    ) -> None:
        self._races = RaceRepository(session)
        self._deposits = DepositRepository(session)
        self._keystore = keystore
        self._clock = clock
        self._keypair_factory = keypair_factory

    def allocate(
        self,
        race_id: str,
        horse_number: int,
        expiry_minutes: int,
        *,
        user_wallet: str | None = None,
    ) -> DepositAddress:
        race = self._races.get_race(race_id)
        if race is None:
            raise AllocationError("Race not found")
        if race.status != RaceStatus.OPEN.value:
            raise AllocationError(f"Race is not open for betting (status: {race.status})")

        now = self._clock()
        if race.start_time is not None and now >= race.start_time:
            raise AllocationError("Race has already started")

        horse_count = len(race.horses)
        if not 1 <= horse_number <= horse_count:
            raise AllocationError(f"Invalid horse number. Must be 1-{horse_count}")
        if expiry_minutes <= 0:
            raise AllocationError("Deposit expiry must be positive")
        if user_wallet is not None and not is_valid_address(user_wallet):
            raise AllocationError("Invalid wallet address")

        address, secret = self._keypair_factory()
        # Sealing errors propagate: the plaintext secret is never stored as a fallback.
        stored_key = self._keystore.seal(secret)
        deposit = self._deposits.create_deposit(
            address=address,
            stored_key=stored_key,
            race_id=race_id,
            horse_number=horse_number,
            expires_at=now + timedelta(minutes=expiry_minutes),
            user_wallet=user_wallet,
        )
        logger.info(
            "Allocated deposit address {} for race {}, horse #{}",
            short_address(address),
            race_id,
            horse_number,
        )
        return deposit
