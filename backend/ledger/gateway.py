"""Contract of the external ledger the engine observes and writes to."""

from __future__ import annotations

from typing import Any, Protocol

LAMPORTS_PER_SOL = 1_000_000_000


class LedgerError(RuntimeError):
    """Transport, RPC or confirmation failure reported by the ledger."""


class UnconfirmedTransactionError(LedgerError):
    """A transaction may have been broadcast but its outcome is not known yet.

    Callers must not resend: the original signature can still land.
    """

    def __init__(self, signature: str, message: str | None = None) -> None:
        super().__init__(message or f"Transaction {signature} was not confirmed in time")
        self.signature = signature


SIGNATURE_CONFIRMED = "confirmed"
SIGNATURE_FAILED = "failed"


class LedgerGateway(Protocol):
    """Balance, history and broadcast operations against the ledger.

    Balances are integer lamports. Implementations raise :class:`LedgerError`
    for every failure. A broadcast whose outcome is unknown raises
    :class:`UnconfirmedTransactionError` carrying the signature.
    """

    def get_balance(self, address: str) -> int:
        """Return the current balance of ``address`` in lamports."""

    def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        """Return up to ``limit`` signatures touching ``address`` in ledger order."""

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Return the parsed transaction or None when the ledger has not indexed it."""

    def get_latest_blockhash(self) -> str:
        """Return a recent blockhash for building a transaction."""

    def submit_and_confirm(self, signed_transaction: bytes) -> str:
        """Broadcast a signed transaction and block until it is confirmed."""

    def get_signature_status(self, signature: str) -> str | None:
        """Return ``"confirmed"``, ``"failed"`` or None while the outcome is unknown."""


def to_lamports(amount_sol: float) -> int:
    # Floor so rounding never sends more than was accounted for.
    return int(amount_sol * LAMPORTS_PER_SOL)


def to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def short_address(address: str | None) -> str:
    if not address:
        return "<unknown>"
    return f"{address[:8]}..."


__all__ = [
    "LAMPORTS_PER_SOL",
    "LedgerError",
    "LedgerGateway",
    "SIGNATURE_CONFIRMED",
    "SIGNATURE_FAILED",
    "UnconfirmedTransactionError",
    "short_address",
    "to_lamports",
    "to_sol",
]
