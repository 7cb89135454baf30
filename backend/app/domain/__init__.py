"""Domain value types shared across ledger, reconciliation and settlement."""

from .models import (
    BetLimits,
    BetStake,
    ClassifiedTransfer,
    CycleSummary,
    DispatchSummary,
    PoolStat,
    SettlementResult,
    WinnerPayout,
)

__all__ = [
    "BetLimits",
    "BetStake",
    "ClassifiedTransfer",
    "CycleSummary",
    "DispatchSummary",
    "PoolStat",
    "SettlementResult",
    "WinnerPayout",
]
