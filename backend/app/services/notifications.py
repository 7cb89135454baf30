"""Outbound channel for deposit lifecycle events.

The reconciler publishes after each committed transition; transport layers
(websocket broadcasts, chat bots) consume from the channel on their own
schedule.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Union

from loguru import logger


@dataclass(slots=True, frozen=True)
class BetPlaced:
    bet_id: str
    race_id: str
    horse_number: int
    deposit_id: str
    user_wallet: str
    amount: float
    odds: float


@dataclass(slots=True, frozen=True)
class RefundQueued:
    refund_id: str
    deposit_id: str
    user_wallet: str
    amount: float
    reason: str


@dataclass(slots=True, frozen=True)
class DepositExpired:
    deposit_id: str
    race_id: str


DepositEvent = Union[BetPlaced, RefundQueued, DepositExpired]


class DepositEventChannel:
    """Bounded FIFO of deposit events; the oldest event is dropped on overflow."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: queue.Queue[DepositEvent] = queue.Queue(maxsize=maxsize)

    def publish(self, event: DepositEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    dropped = self._queue.get_nowait()
                except queue.Empty:
                    continue
                logger.warning("Deposit event channel full; dropped {}", type(dropped).__name__)

    def get(self, timeout: float | None = None) -> DepositEvent | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[DepositEvent]:
        events: list[DepositEvent] = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    def __len__(self) -> int:
        return self._queue.qsize()
