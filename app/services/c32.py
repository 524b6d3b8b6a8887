# app/services/c32.py
"""
c32check encoding for Stacks addresses.

A Stacks address is "S" + the c32 character of the version byte + the
c32 encoding of (hash160 || checksum), where checksum is the first four
bytes of sha256(sha256(version || hash160)).
"""
import hashlib
from typing import Tuple

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

# Address version bytes
MAINNET_SINGLE_SIG = 22  # SP...
MAINNET_MULTI_SIG = 20   # SM...
TESTNET_SINGLE_SIG = 26  # ST...
TESTNET_MULTI_SIG = 21   # SN...


class C32Error(ValueError):
    """Raised for malformed c32 input or a bad checksum."""


def _checksum(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()[:4]


def c32_encode(data: bytes) -> str:
    """
    Encode bytes as c32.

    Leading zero bytes are kept as one "0" character each, the rest is
    the base-32 rendering of the remaining big-endian integer.
    """
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    number = int.from_bytes(data, "big")
    chars = []
    while number:
        number, digit = divmod(number, 32)
        chars.append(C32_ALPHABET[digit])
    return "0" * leading_zeros + "".join(reversed(chars))


def c32_decode(text: str) -> bytes:
    """Inverse of c32_encode."""
    text = _normalize(text)
    leading_zeros = len(text) - len(text.lstrip("0"))
    number = 0
    for char in text[leading_zeros:]:
        number = number * 32 + C32_ALPHABET.index(char)
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\x00" * leading_zeros + body


def _normalize(text: str) -> str:
    # c32 is case-insensitive and treats O/L/I as 0/1/1
    text = text.upper().replace("O", "0").replace("L", "1").replace("I", "1")
    for char in text:
        if char not in C32_ALPHABET:
            raise C32Error(f"Invalid c32 character: {char!r}")
    return text


def encode_address(version: int, hash160: bytes) -> str:
    """Render a version byte and 20-byte hash160 as a Stacks address."""
    if not 0 <= version < 32:
        raise C32Error(f"Invalid address version: {version}")
    if len(hash160) != 20:
        raise C32Error(f"hash160 must be 20 bytes, got {len(hash160)}")
    checksum = _checksum(bytes([version]) + hash160)
    return "S" + C32_ALPHABET[version] + c32_encode(hash160 + checksum)


def decode_address(address: str) -> Tuple[int, bytes]:
    """
    Parse a Stacks address into (version, hash160).

    Raises:
        C32Error: If the address is malformed or its checksum does not match
    """
    if len(address) < 5 or address[0] != "S":
        raise C32Error(f"Not a Stacks address: {address!r}")
    version = C32_ALPHABET.index(_normalize(address[1]))
    payload = c32_decode(address[2:])
    if len(payload) != 24:
        raise C32Error(f"Address payload has wrong length: {address!r}")
    hash160, checksum = payload[:20], payload[20:]
    if _checksum(bytes([version]) + hash160) != checksum:
        raise C32Error(f"Address checksum mismatch: {address!r}")
    return version, hash160
