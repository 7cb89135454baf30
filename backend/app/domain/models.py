"""Plain value types passed between the ledger, reconciler and settlement code."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True, frozen=True)
class ClassifiedTransfer:
    """A native transfer credited to a watched address."""

    signature: str
    sender: str
    amount: float
    sender_is_signer: bool = True


@dataclass(slots=True, frozen=True)
class BetLimits:
    min_bet: float
    max_bet: float


@dataclass(slots=True)
class PoolStat:
    bets: int = 0
    amount: float = 0.0


@dataclass(slots=True, frozen=True)
class BetStake:
    """The slice of a bet the settlement math needs."""

    bet_id: str
    horse_number: int
    user_wallet: str
    amount: float


@dataclass(slots=True, frozen=True)
class WinnerPayout:
    bet_id: str
    user_wallet: str
    bet_amount: float
    winnings: float
    total_payout: float


@dataclass(slots=True)
class SettlementResult:
    race_id: str
    winning_horse: int
    total_pool: float
    winning_pool: float
    losing_pool: float
    house_cut: float
    distributed: float
    winners: list[WinnerPayout] = field(default_factory=list)
    losing_bet_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "race_id": self.race_id,
            "winning_horse": self.winning_horse,
            "total_pool": self.total_pool,
            "winning_pool": self.winning_pool,
            "losing_pool": self.losing_pool,
            "house_cut": self.house_cut,
            "distributed": self.distributed,
            "winners": [
                {
                    "bet_id": winner.bet_id,
                    "user_wallet": winner.user_wallet,
                    "bet_amount": winner.bet_amount,
                    "winnings": winner.winnings,
                    "total_payout": winner.total_payout,
                }
                for winner in self.winners
            ],
        }


@dataclass(slots=True)
class DispatchSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    unconfirmed: int = 0
    total_amount: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unconfirmed": self.unconfirmed,
            "total_amount": self.total_amount,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class CycleSummary:
    started_at: datetime
    checked: int = 0
    confirmed: int = 0
    rejected: int = 0
    expired: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "checked": self.checked,
            "confirmed": self.confirmed,
            "rejected": self.rejected,
            "expired": self.expired,
            "errors": self.errors,
            "skipped": self.skipped,
        }
