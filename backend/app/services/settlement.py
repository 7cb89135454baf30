"""Pari-mutuel settlement of a finished race.

``compute_settlement`` is the pure calculation; ``SettlementService`` applies it
to persistence exactly once per race.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import BetStake, SettlementResult, WinnerPayout
from app.errors import SettlementInvariantViolation
from app.models import RaceStatus
from app.repositories import DepositRepository, PayoutRepository, RaceRepository


def compute_settlement(
    race_id: str,
    winning_horse: int,
    stakes: Sequence[BetStake],
    house_edge: float,
) -> SettlementResult:
    if not 0 <= house_edge < 1:
        raise ValueError("house_edge must be within [0, 1)")

    total_pool = sum(stake.amount for stake in stakes)
    winning_pool = sum(stake.amount for stake in stakes if stake.horse_number == winning_horse)
    losing_pool = total_pool - winning_pool

    if winning_pool <= 0:
        # Nobody backed the winner: the whole pool stays with the house.
        return SettlementResult(
            race_id=race_id,
            winning_horse=winning_horse,
            total_pool=total_pool,
            winning_pool=0.0,
            losing_pool=losing_pool,
            house_cut=losing_pool,
            distributed=0.0,
            winners=[],
            losing_bet_ids=[stake.bet_id for stake in stakes],
        )

    distributable = losing_pool * (1 - house_edge)
    winners: list[WinnerPayout] = []
    losing_bet_ids: list[str] = []
    for stake in stakes:
        if stake.horse_number != winning_horse:
            losing_bet_ids.append(stake.bet_id)
            continue
        winnings = distributable * (stake.amount / winning_pool)
        winners.append(
            WinnerPayout(
                bet_id=stake.bet_id,
                user_wallet=stake.user_wallet,
                bet_amount=stake.amount,
                winnings=winnings,
                total_payout=stake.amount + winnings,
            )
        )

    return SettlementResult(
        race_id=race_id,
        winning_horse=winning_horse,
        total_pool=total_pool,
        winning_pool=winning_pool,
        losing_pool=losing_pool,
        house_cut=losing_pool * house_edge,
        distributed=distributable,
        winners=winners,
        losing_bet_ids=losing_bet_ids,
    )


class SettlementService:
    """Declare a winner, record winnings and queue one payout per winning bet."""

    def __init__(self, session: Session, *, house_edge: float) -> None:
        self._races = RaceRepository(session)
        self._deposits = DepositRepository(session)
        self._payouts = PayoutRepository(session)
        self._house_edge = house_edge

    def settle(self, race_id: str, winning_horse: int) -> SettlementResult:
        race = self._races.get_race(race_id)
        if race is None:
            raise SettlementInvariantViolation("Race not found")
        if race.status == RaceStatus.COMPLETED.value:
            raise SettlementInvariantViolation(f"Race {race_id} has already been settled")
        horse_count = len(race.horses)
        if not 1 <= winning_horse <= horse_count:
            raise SettlementInvariantViolation(f"Invalid winner. Must be 1-{horse_count}")

        result = compute_settlement(
            race_id, winning_horse, self._deposits.stakes_for_race(race_id), self._house_edge
        )

        # Claim the race first so a concurrent settle cannot also write payouts.
        if not self._races.mark_completed(race_id, winner=winning_horse):
            raise SettlementInvariantViolation(f"Race {race_id} has already been settled")

        for winner in result.winners:
            self._deposits.set_winnings(winner.bet_id, winner.winnings)
            self._payouts.create_payout(
                bet_id=winner.bet_id,
                user_wallet=winner.user_wallet,
                amount=winner.total_payout,
            )
        for bet_id in result.losing_bet_ids:
            self._deposits.set_winnings(bet_id, 0.0)

        logger.info(
            "Race {} settled. Winner: horse #{}; total pool {} SOL, winning pool {} SOL, losing pool {} SOL",
            race_id,
            winning_horse,
            result.total_pool,
            result.winning_pool,
            result.losing_pool,
        )
        if not result.winners:
            logger.warning("Race {} had no bets on the winner; {} SOL retained", race_id, result.total_pool)
        return result
