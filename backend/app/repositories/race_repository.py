"""Race, horse, pool and runtime config persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from app.domain import PoolStat
from app.models import Bet, ConfigEntry, Horse, Race, RaceStatus, utcnow


class RaceRepository:
    """Encapsulate race lifecycle and pool queries."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create_race(
        self,
        *,
        race_id: str,
        title: str,
        horse_names: Sequence[str],
        start_time: datetime | None,
    ) -> Race:
        race = Race(id=race_id, title=title, start_time=start_time, status=RaceStatus.PENDING.value)
        race.horses = [
            Horse(horse_number=number, name=name)
            for number, name in enumerate(horse_names, start=1)
        ]
        self._session.add(race)
        self._session.flush()
        return race

    def set_status(self, race: Race, status: RaceStatus, *, at: datetime | None = None) -> Race:
        at = at or utcnow()
        race.status = status.value
        if status is RaceStatus.OPEN:
            race.opened_at = at
        elif status is RaceStatus.CLOSED:
            race.closed_at = at
        self._session.flush()
        return race

    def mark_completed(self, race_id: str, *, winner: int, at: datetime | None = None) -> bool:
        """Complete the race unless another caller already did; returns False on a lost race."""

        result = self._session.execute(
            update(Race)
            .where(Race.id == race_id, Race.status != RaceStatus.COMPLETED.value)
            .values(status=RaceStatus.COMPLETED.value, winner=winner, completed_at=at or utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Queries

    def get_race(self, race_id: str) -> Race | None:
        query = select(Race).options(selectinload(Race.horses)).where(Race.id == race_id)
        return self._session.execute(query).scalar_one_or_none()

    def list_races(self, *, status: RaceStatus | None = None) -> list[Race]:
        query = select(Race).options(selectinload(Race.horses)).order_by(Race.created_at.desc())
        if status is not None:
            query = query.where(Race.status == status.value)
        return list(self._session.execute(query).scalars().all())

    def pool_stats(self, race_id: str) -> dict[int, PoolStat]:
        pools: dict[int, PoolStat] = {}
        horse_query = select(Horse.horse_number).where(Horse.race_id == race_id)
        for horse_number in self._session.execute(horse_query).scalars():
            pools[horse_number] = PoolStat()

        bet_query = (
            select(Bet.horse_number, func.count(Bet.id), func.coalesce(func.sum(Bet.amount), 0))
            .where(Bet.race_id == race_id)
            .group_by(Bet.horse_number)
        )
        for horse_number, bet_count, total in self._session.execute(bet_query):
            pools[horse_number] = PoolStat(bets=int(bet_count), amount=float(total or 0))
        return pools

    def status_counts(self) -> dict[str, int]:
        query = select(Race.status, func.count(Race.id)).group_by(Race.status)
        return {status: int(count) for status, count in self._session.execute(query)}

    def active_pool(self) -> PoolStat:
        """Bets and stake across races that are open or closed but not yet settled."""

        query = (
            select(func.count(Bet.id), func.coalesce(func.sum(Bet.amount), 0))
            .join(Race, Race.id == Bet.race_id)
            .where(Race.status.in_([RaceStatus.OPEN.value, RaceStatus.CLOSED.value]))
        )
        bet_count, total = self._session.execute(query).one()
        return PoolStat(bets=int(bet_count), amount=float(total or 0))

    # ------------------------------------------------------------------
    # Runtime config

    def set_config(self, key: str, value: str) -> ConfigEntry:
        entry = self._session.get(ConfigEntry, key)
        if entry is None:
            entry = ConfigEntry(key=key, value=value)
            self._session.add(entry)
        else:
            entry.value = value
        entry.updated_at = utcnow()
        self._session.flush()
        return entry

    def get_config(self, key: str) -> str | None:
        entry = self._session.get(ConfigEntry, key)
        return entry.value if entry else None
