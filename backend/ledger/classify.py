from __future__ import annotations

from typing import Any

from loguru import logger

from app.domain import ClassifiedTransfer

from .gateway import to_sol


def _account_entries(message: dict[str, Any]) -> list[tuple[str, bool | None]]:
    """Return ``(address, is_signer)`` for every account key in message order."""

    keys = message.get("accountKeys")
    if not isinstance(keys, list):
        return []

    required_signers = None
    header = message.get("header")
    if isinstance(header, dict) and isinstance(header.get("numRequiredSignatures"), int):
        required_signers = header["numRequiredSignatures"]

    entries: list[tuple[str, bool | None]] = []
    for index, key in enumerate(keys):
        if isinstance(key, dict):
            pubkey = key.get("pubkey")
            signer = key.get("signer")
            entries.append((str(pubkey) if pubkey else "", bool(signer) if signer is not None else None))
        elif isinstance(key, str):
            signer = index < required_signers if required_signers is not None else None
            entries.append((key, signer))
        else:
            entries.append(("", None))
    return entries


def classify_transfer(tx: dict[str, Any] | None, address: str) -> ClassifiedTransfer | None:
    """Reduce a parsed ledger transaction to the credit it made to ``address``.

    Returns None for failed transactions, transactions that do not touch the
    address, or ones that did not increase its balance. The sender is the first
    account whose balance went down, preferring accounts that signed.
    """

    if not tx:
        return None
    meta = tx.get("meta")
    transaction = tx.get("transaction")
    if not isinstance(meta, dict) or not isinstance(transaction, dict) or meta.get("err"):
        return None

    message = transaction.get("message")
    signatures = transaction.get("signatures")
    pre_balances = meta.get("preBalances")
    post_balances = meta.get("postBalances")
    if (
        not isinstance(message, dict)
        or not isinstance(signatures, list)
        or not signatures
        or not isinstance(pre_balances, list)
        or not isinstance(post_balances, list)
    ):
        return None

    entries = _account_entries(message)
    if len(entries) > min(len(pre_balances), len(post_balances)):
        logger.warning("Transaction {} has mismatched balance arrays", signatures[0])
        return None

    target_index = next((i for i, (pubkey, _) in enumerate(entries) if pubkey == address), None)
    if target_index is None:
        return None

    credited = post_balances[target_index] - pre_balances[target_index]
    if credited <= 0:
        return None

    debited = [
        (pubkey, signer)
        for index, (pubkey, signer) in enumerate(entries)
        if index != target_index and pubkey and post_balances[index] - pre_balances[index] < 0
    ]
    if not debited:
        logger.warning("Transaction {} credited {} with no identifiable sender", signatures[0], address)
        return None

    sender, is_signer = next(((pubkey, signer) for pubkey, signer in debited if signer), debited[0])
    return ClassifiedTransfer(
        signature=str(signatures[0]),
        sender=sender,
        amount=to_sol(credited),
        sender_is_signer=bool(is_signer),
    )


__all__ = ["classify_transfer"]
