"""Keypair handling and native transfer construction."""

from __future__ import annotations

from typing import Sequence

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction


class InvalidKeyError(ValueError):
    """A secret key or address string could not be decoded."""


def generate_keypair() -> tuple[str, str]:
    """Return a fresh ``(address, secret)`` pair, both base58 encoded."""

    keypair = Keypair()
    return str(keypair.pubkey()), base58.b58encode(bytes(keypair)).decode("ascii")


def keypair_from_secret(secret: str) -> Keypair:
    try:
        raw = base58.b58decode(secret.strip())
        return Keypair.from_bytes(raw)
    except (ValueError, TypeError) as exc:
        raise InvalidKeyError("secret key is not a valid base58 keypair") from exc


def parse_address(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as exc:
        raise InvalidKeyError(f"Invalid recipient address: {address}") from exc


def is_valid_address(address: str | None) -> bool:
    if not address:
        return False
    try:
        parse_address(address)
    except InvalidKeyError:
        return False
    return True


def build_transfer(
    payer: Keypair,
    recipients: Sequence[tuple[str, int]],
    blockhash: str,
) -> bytes:
    """Sign a transaction moving lamports from ``payer`` to each recipient."""

    if not recipients:
        raise ValueError("at least one recipient is required")
    instructions = []
    for address, lamports in recipients:
        if lamports <= 0:
            raise ValueError("transfer amount must be positive")
        instructions.append(
            transfer(
                TransferParams(
                    from_pubkey=payer.pubkey(),
                    to_pubkey=parse_address(address),
                    lamports=lamports,
                )
            )
        )
    recent = Hash.from_string(blockhash)
    message = Message.new_with_blockhash(instructions, payer.pubkey(), recent)
    return bytes(Transaction([payer], message, recent))


__all__ = [
    "InvalidKeyError",
    "build_transfer",
    "generate_keypair",
    "is_valid_address",
    "keypair_from_secret",
    "parse_address",
]
