"""Repository abstractions for database interactions."""

from .deposit_repository import DepositRepository
from .payout_repository import PayoutRepository
from .race_repository import RaceRepository

__all__ = [
    "DepositRepository",
    "PayoutRepository",
    "RaceRepository",
]
