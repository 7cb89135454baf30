from __future__ import annotations

import base64
import itertools
import time
from typing import Any, Callable

import httpx
from loguru import logger
from solders.transaction import Transaction

from app.core.config import settings

from .gateway import (
    SIGNATURE_CONFIRMED,
    SIGNATURE_FAILED,
    LedgerError,
    UnconfirmedTransactionError,
)

CONFIRMED_STATES = {"confirmed", "finalized"}


class SolanaRpcClient:
    """Thin JSON-RPC wrapper implementing the ledger gateway over HTTP."""

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        timeout: float | None = None,
        confirm_timeout: float | None = None,
        poll_interval: float = 0.5,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url or str(settings.solana_rpc_url)
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.confirm_timeout = confirm_timeout or settings.confirm_timeout_seconds
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._ids = itertools.count(1)
        self.client = httpx.Client(timeout=self.timeout, transport=transport)

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise LedgerError(f"{method} request failed: {exc}") from exc
        except ValueError as exc:
            raise LedgerError(f"{method} returned a non-JSON body") from exc

        if not isinstance(body, dict):
            raise LedgerError(f"{method} returned an unexpected payload")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LedgerError(f"{method} failed: {message}")
        return body.get("result")

    def get_balance(self, address: str) -> int:
        result = self._call("getBalance", [address, {"commitment": "confirmed"}])
        if isinstance(result, dict):
            result = result.get("value")
        if not isinstance(result, int):
            raise LedgerError("getBalance returned no value")
        return result

    def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        result = self._call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": "confirmed"}],
        )
        if not isinstance(result, list):
            return []
        return [entry["signature"] for entry in result if isinstance(entry, dict) and entry.get("signature")]

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        result = self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        return result if isinstance(result, dict) else None

    def get_latest_blockhash(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as exc:
            raise LedgerError("getLatestBlockhash returned no blockhash") from exc

    def submit_and_confirm(self, signed_transaction: bytes) -> str:
        expected = _transaction_signature(signed_transaction)
        encoded = base64.b64encode(signed_transaction).decode("ascii")
        try:
            signature = self._call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
            )
        except LedgerError as exc:
            # A dropped connection may still have delivered the transaction.
            if isinstance(exc.__cause__, httpx.TransportError):
                raise UnconfirmedTransactionError(
                    expected, f"sendTransaction outcome unknown for {expected}: {exc}"
                ) from exc
            raise
        if not isinstance(signature, str):
            raise LedgerError("sendTransaction returned no signature")
        logger.debug("Submitted transaction {}", signature)
        self._await_confirmation(signature)
        return signature

    def get_signature_status(self, signature: str) -> str | None:
        status = self._signature_status(signature, search_history=True)
        if status is None:
            return None
        if status.get("err"):
            return SIGNATURE_FAILED
        if status.get("confirmationStatus") in CONFIRMED_STATES:
            return SIGNATURE_CONFIRMED
        return None

    def _signature_status(self, signature: str, *, search_history: bool = False) -> dict[str, Any] | None:
        params: list[Any] = [[signature]]
        if search_history:
            params.append({"searchTransactionHistory": True})
        result = self._call("getSignatureStatuses", params)
        statuses = result.get("value") if isinstance(result, dict) else None
        status = statuses[0] if statuses else None
        return status if isinstance(status, dict) else None

    def _await_confirmation(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout
        while True:
            try:
                status = self._signature_status(signature)
            except LedgerError as exc:
                logger.warning("Status check for {} failed: {}", signature, exc)
                status = None
            if status is not None:
                if status.get("err"):
                    raise LedgerError(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in CONFIRMED_STATES:
                    return
            if time.monotonic() >= deadline:
                raise UnconfirmedTransactionError(signature)
            self._sleep(self.poll_interval)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SolanaRpcClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _transaction_signature(signed_transaction: bytes) -> str:
    try:
        return str(Transaction.from_bytes(signed_transaction).signatures[0])
    except Exception as exc:  # noqa: BLE001
        raise LedgerError("Signed transaction could not be decoded") from exc
