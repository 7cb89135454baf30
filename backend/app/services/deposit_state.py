"""Transition rules for a single deposit address.

Every function here is pure: callers pass in the current status, the observed
transfer and the pool snapshot, and persist whatever decision comes back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from app.domain import BetLimits, PoolStat
from app.models import DepositStatus, RaceStatus


@dataclass(slots=True, frozen=True)
class DepositDecision:
    status: DepositStatus
    refund_reason: str | None = None
    odds: float | None = None

    @property
    def creates_bet(self) -> bool:
        return self.status is DepositStatus.CONFIRMED

    @property
    def needs_refund(self) -> bool:
        return self.refund_reason is not None


def compute_odds(pools: Mapping[int, PoolStat], horse_number: int, amount: float) -> float:
    """Odds a bettor receives if no more money arrives, counting their own stake."""

    total_pool = sum(pool.amount for pool in pools.values()) + amount
    horse_pool = pools.get(horse_number, PoolStat()).amount + amount
    if horse_pool <= 0:
        raise ValueError("odds are undefined for an empty pool")
    return total_pool / horse_pool


def _is_waiting(status: str | DepositStatus) -> bool:
    return DepositStatus(status) is DepositStatus.WAITING


def decide_transfer(
    *,
    current_status: str | DepositStatus,
    amount: float,
    race_status: str | RaceStatus | None,
    limits: BetLimits,
    pools: Mapping[int, PoolStat],
    horse_number: int,
) -> DepositDecision | None:
    """Decide the terminal status for a waiting deposit that received ``amount``.

    Returns None when the deposit already left ``waiting``. Rules apply in
    order: below minimum, above maximum, race not open, otherwise confirmed.
    """

    if not _is_waiting(current_status):
        return None
    if amount < limits.min_bet:
        return DepositDecision(DepositStatus.REJECTED_TOO_SMALL, refund_reason="Amount below minimum bet")
    if amount > limits.max_bet:
        return DepositDecision(
            DepositStatus.REJECTED_OVER_MAX,
            refund_reason=f"Amount exceeds maximum bet of {limits.max_bet} SOL",
        )
    if race_status is None or RaceStatus(race_status) is not RaceStatus.OPEN:
        return DepositDecision(DepositStatus.REJECTED_RACE_CLOSED, refund_reason="Race is not open for betting")
    return DepositDecision(DepositStatus.CONFIRMED, odds=compute_odds(pools, horse_number, amount))


def decide_expiry(
    *,
    current_status: str | DepositStatus,
    expires_at: datetime,
    now: datetime,
    balance_lamports: int,
) -> DepositStatus | None:
    """Return ``expired`` for a lapsed, still-empty waiting deposit, otherwise None."""

    if not _is_waiting(current_status):
        return None
    if now < expires_at:
        return None
    if balance_lamports > 0:
        return None
    return DepositStatus.EXPIRED


__all__ = ["DepositDecision", "compute_odds", "decide_expiry", "decide_transfer"]
