from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Iterable


class ProcessedSignatureSet:
    """Bounded, thread-safe record of ledger signatures already turned into a bet or refund.

    Oldest entries are evicted once ``capacity`` is reached. Eviction only
    costs a database lookup: the reconciler double-checks persisted
    signatures before acting on anything missing from this set.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, signature: object) -> bool:
        with self._lock:
            if signature not in self._entries:
                return False
            self._entries.move_to_end(signature)  # type: ignore[arg-type]
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, signature: str) -> None:
        with self._lock:
            self._entries[signature] = None
            self._entries.move_to_end(signature)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def seed(self, signatures: Iterable[str]) -> int:
        count = 0
        for signature in signatures:
            if signature:
                self.add(signature)
                count += 1
        return count
