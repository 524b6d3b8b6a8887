# app/x402/payment_id.py
"""
Payment identifiers.

A payment id is sha256(route | issued-at | nonce) rendered as 64 lowercase
hex characters. It is the 32-byte ``payment-id`` argument of the escrow
deposit, so the server never needs to remember it: verification reads the
id back from the ledger.
"""
import hashlib
import re
import secrets
import time
from typing import Optional

PAYMENT_ID_PATTERN = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)
NONCE_BYTES = 16


def make_payment_id(route: str, issued_at_ms: int, nonce: bytes) -> str:
    """Derive the payment id for one issuance. Pure; same inputs, same id."""
    material = f"{route}|{issued_at_ms}|{nonce.hex()}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


def new_payment_id(route: str, issued_at_ms: Optional[int] = None) -> str:
    """Mint a fresh payment id for ``route`` using a 128-bit random nonce."""
    if issued_at_ms is None:
        issued_at_ms = int(time.time() * 1000)
    return make_payment_id(route, issued_at_ms, secrets.token_bytes(NONCE_BYTES))


def normalize_hex(value: str) -> str:
    """Strip an optional 0x prefix and lowercase."""
    if value[:2] in ("0x", "0X"):
        value = value[2:]
    return value.lower()


def is_payment_id(value) -> bool:
    return isinstance(value, str) and PAYMENT_ID_PATTERN.match(value) is not None
