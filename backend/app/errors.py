"""Error taxonomy shared by the deposit, settlement and dispatch services."""

from __future__ import annotations


class RacepoolError(Exception):
    """Base class for failures reported back to the request layer."""


class AllocationError(RacepoolError):
    """A deposit address cannot be issued for the requested race and horse."""


class RaceStateError(RacepoolError):
    """A race lifecycle transition was requested out of order."""


class KeyStoreError(RacepoolError):
    """Secret material could not be sealed for storage."""


class KeyStoreIntegrityError(KeyStoreError):
    """A stored envelope failed to decrypt; the secret must not be used."""


class SettlementInvariantViolation(RacepoolError):
    """Settlement was refused before any state was touched."""


class DispatchError(RacepoolError):
    """An outbound transfer could not be built, broadcast or confirmed."""


__all__ = [
    "AllocationError",
    "DispatchError",
    "KeyStoreError",
    "KeyStoreIntegrityError",
    "RaceStateError",
    "RacepoolError",
    "SettlementInvariantViolation",
]
