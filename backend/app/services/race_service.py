from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.orm import Session

from app.errors import RaceStateError
from app.models import Race, RaceStatus
from app.repositories import RaceRepository

# Completion is reserved for settlement.
ALLOWED_TRANSITIONS: dict[RaceStatus, frozenset[RaceStatus]] = {
    RaceStatus.PENDING: frozenset({RaceStatus.OPEN}),
    RaceStatus.OPEN: frozenset({RaceStatus.CLOSED}),
    RaceStatus.CLOSED: frozenset(),
    RaceStatus.COMPLETED: frozenset(),
}


class RaceService:
    """Admin lifecycle for races: create, open for betting, close."""

    def __init__(self, session: Session) -> None:
        self._races = RaceRepository(session)

    def create_race(
        self,
        title: str,
        horse_names: Sequence[str],
        *,
        start_time: datetime | None = None,
        race_id: str | None = None,
    ) -> Race:
        title = title.strip()
        names = [name.strip() for name in horse_names]
        if not title:
            raise RaceStateError("Race title is required")
        if len(names) < 2 or not all(names):
            raise RaceStateError("A race needs at least two named horses")
        race = self._races.create_race(
            race_id=race_id or str(uuid4()),
            title=title,
            horse_names=names,
            start_time=start_time,
        )
        logger.info("Created race {} '{}' with {} horses", race.id, title, len(names))
        return race

    def open_race(self, race_id: str) -> Race:
        return self._transition(race_id, RaceStatus.OPEN)

    def close_race(self, race_id: str) -> Race:
        return self._transition(race_id, RaceStatus.CLOSED)

    def _transition(self, race_id: str, target: RaceStatus) -> Race:
        race = self._races.get_race(race_id)
        if race is None:
            raise RaceStateError("Race not found")
        current = RaceStatus(race.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise RaceStateError(f"Cannot move race from {current.value} to {target.value}")
        self._races.set_status(race, target)
        logger.info("Race {} is now {}", race_id, target.value)
        return race
