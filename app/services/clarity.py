# app/services/clarity.py
"""
Clarity value wire codec.

The Stacks API exposes contract-call arguments and read-only results as
hex-encoded, type-tagged Clarity values. This module turns them into plain
``ClarityValue(type, value)`` pairs and back.

Decoded value representations:
- int, uint: Python int
- buffer: "0x"-prefixed lowercase hex string
- bool: Python bool
- principal: Stacks address, "ADDRESS.contract-name" for contract principals
- none: None; some / ok / err: the wrapped ClarityValue
- list: list of ClarityValue; tuple: dict of name -> ClarityValue
- string-ascii, string-utf8: Python str
"""
from typing import Any, Dict, List, NamedTuple, Tuple, Union

from app.services.c32 import C32Error, decode_address, encode_address

INT = "int"
UINT = "uint"
BUFFER = "buffer"
BOOL = "bool"
PRINCIPAL = "principal"
RESPONSE_OK = "ok"
RESPONSE_ERR = "err"
NONE = "none"
SOME = "some"
LIST = "list"
TUPLE = "tuple"
STRING_ASCII = "string-ascii"
STRING_UTF8 = "string-utf8"

# Serialization type prefixes
_PREFIX_INT = 0x00
_PREFIX_UINT = 0x01
_PREFIX_BUFFER = 0x02
_PREFIX_TRUE = 0x03
_PREFIX_FALSE = 0x04
_PREFIX_STANDARD_PRINCIPAL = 0x05
_PREFIX_CONTRACT_PRINCIPAL = 0x06
_PREFIX_OK = 0x07
_PREFIX_ERR = 0x08
_PREFIX_NONE = 0x09
_PREFIX_SOME = 0x0A
_PREFIX_LIST = 0x0B
_PREFIX_TUPLE = 0x0C
_PREFIX_STRING_ASCII = 0x0D
_PREFIX_STRING_UTF8 = 0x0E

MAX_NESTING_DEPTH = 32


class ClarityValue(NamedTuple):
    type: str
    value: Any


class ClarityDecodeError(ValueError):
    """Raised when bytes are not a well-formed Clarity value."""


# --- Decoding ---

def deserialize(hex_value: str) -> ClarityValue:
    """
    Decode a hex-encoded Clarity value (with or without 0x prefix).

    Raises:
        ClarityDecodeError: If the input is not exactly one well-formed value
    """
    if not isinstance(hex_value, str):
        raise ClarityDecodeError(f"Expected hex string, got {type(hex_value).__name__}")
    text = hex_value[2:] if hex_value[:2].lower() == "0x" else hex_value
    try:
        data = bytes.fromhex(text)
    except ValueError as e:
        raise ClarityDecodeError(f"Invalid hex: {e}") from e

    value, offset = _read_value(data, 0, 0)
    if offset != len(data):
        raise ClarityDecodeError(f"{len(data) - offset} trailing bytes after Clarity value")
    return value


def _take(data: bytes, offset: int, size: int) -> Tuple[bytes, int]:
    end = offset + size
    if end > len(data):
        raise ClarityDecodeError(f"Unexpected end of data at offset {offset} (need {size} bytes)")
    return data[offset:end], end


def _read_u32(data: bytes, offset: int) -> Tuple[int, int]:
    chunk, offset = _take(data, offset, 4)
    return int.from_bytes(chunk, "big"), offset


def _read_principal(data: bytes, offset: int) -> Tuple[str, int]:
    chunk, offset = _take(data, offset, 21)
    try:
        return encode_address(chunk[0], chunk[1:]), offset
    except C32Error as e:
        raise ClarityDecodeError(f"Invalid principal: {e}") from e


def _read_value(data: bytes, offset: int, depth: int) -> Tuple[ClarityValue, int]:
    if depth > MAX_NESTING_DEPTH:
        raise ClarityDecodeError("Clarity value nested too deeply")
    prefix, offset = _take(data, offset, 1)
    tag = prefix[0]

    if tag in (_PREFIX_INT, _PREFIX_UINT):
        chunk, offset = _take(data, offset, 16)
        signed = tag == _PREFIX_INT
        return ClarityValue(INT if signed else UINT, int.from_bytes(chunk, "big", signed=signed)), offset

    if tag == _PREFIX_BUFFER:
        length, offset = _read_u32(data, offset)
        chunk, offset = _take(data, offset, length)
        return ClarityValue(BUFFER, "0x" + chunk.hex()), offset

    if tag in (_PREFIX_TRUE, _PREFIX_FALSE):
        return ClarityValue(BOOL, tag == _PREFIX_TRUE), offset

    if tag == _PREFIX_STANDARD_PRINCIPAL:
        address, offset = _read_principal(data, offset)
        return ClarityValue(PRINCIPAL, address), offset

    if tag == _PREFIX_CONTRACT_PRINCIPAL:
        address, offset = _read_principal(data, offset)
        name_length, offset = _take(data, offset, 1)
        name, offset = _take(data, offset, name_length[0])
        try:
            contract_name = name.decode("ascii")
        except UnicodeDecodeError as e:
            raise ClarityDecodeError(f"Invalid contract name: {e}") from e
        return ClarityValue(PRINCIPAL, f"{address}.{contract_name}"), offset

    if tag in (_PREFIX_OK, _PREFIX_ERR, _PREFIX_SOME):
        inner, offset = _read_value(data, offset, depth + 1)
        kind = {_PREFIX_OK: RESPONSE_OK, _PREFIX_ERR: RESPONSE_ERR, _PREFIX_SOME: SOME}[tag]
        return ClarityValue(kind, inner), offset

    if tag == _PREFIX_NONE:
        return ClarityValue(NONE, None), offset

    if tag == _PREFIX_LIST:
        count, offset = _read_u32(data, offset)
        items: List[ClarityValue] = []
        for _ in range(count):
            item, offset = _read_value(data, offset, depth + 1)
            items.append(item)
        return ClarityValue(LIST, items), offset

    if tag == _PREFIX_TUPLE:
        count, offset = _read_u32(data, offset)
        fields: Dict[str, ClarityValue] = {}
        for _ in range(count):
            name_length, offset = _take(data, offset, 1)
            name, offset = _take(data, offset, name_length[0])
            field_value, offset = _read_value(data, offset, depth + 1)
            fields[name.decode("ascii", errors="replace")] = field_value
        return ClarityValue(TUPLE, fields), offset

    if tag in (_PREFIX_STRING_ASCII, _PREFIX_STRING_UTF8):
        length, offset = _read_u32(data, offset)
        chunk, offset = _take(data, offset, length)
        encoding = "ascii" if tag == _PREFIX_STRING_ASCII else "utf-8"
        try:
            text = chunk.decode(encoding)
        except UnicodeDecodeError as e:
            raise ClarityDecodeError(f"Invalid {encoding} string: {e}") from e
        return ClarityValue(STRING_ASCII if tag == _PREFIX_STRING_ASCII else STRING_UTF8, text), offset

    raise ClarityDecodeError(f"Unknown Clarity type prefix 0x{tag:02x} at offset {offset - 1}")


# --- Encoding ---

def uint_cv(value: int) -> ClarityValue:
    if value < 0 or value >= 2 ** 128:
        raise ValueError(f"uint out of range: {value}")
    return ClarityValue(UINT, value)


def int_cv(value: int) -> ClarityValue:
    if not -(2 ** 127) <= value < 2 ** 127:
        raise ValueError(f"int out of range: {value}")
    return ClarityValue(INT, value)


def buffer_cv(value: Union[bytes, str]) -> ClarityValue:
    """Build a buffer value from raw bytes or a hex string (0x optional)."""
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value[:2].lower() == "0x" else value)
    return ClarityValue(BUFFER, "0x" + value.hex())


def principal_cv(address: str) -> ClarityValue:
    return ClarityValue(PRINCIPAL, address)


def bool_cv(value: bool) -> ClarityValue:
    return ClarityValue(BOOL, bool(value))


def none_cv() -> ClarityValue:
    return ClarityValue(NONE, None)


def some_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(SOME, value)


def ok_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(RESPONSE_OK, value)


def err_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(RESPONSE_ERR, value)


def list_cv(items: List[ClarityValue]) -> ClarityValue:
    return ClarityValue(LIST, list(items))


def tuple_cv(fields: Dict[str, ClarityValue]) -> ClarityValue:
    return ClarityValue(TUPLE, dict(fields))


def string_ascii_cv(value: str) -> ClarityValue:
    return ClarityValue(STRING_ASCII, value)


def string_utf8_cv(value: str) -> ClarityValue:
    return ClarityValue(STRING_UTF8, value)


def serialize(value: ClarityValue) -> str:
    """Encode a ClarityValue as a 0x-prefixed hex string."""
    return "0x" + _encode(value).hex()


def _encode_principal(address: str) -> bytes:
    if "." in address:
        address, contract_name = address.split(".", 1)
        name = contract_name.encode("ascii")
        version, hash160 = decode_address(address)
        return bytes([_PREFIX_CONTRACT_PRINCIPAL, version]) + hash160 + bytes([len(name)]) + name
    version, hash160 = decode_address(address)
    return bytes([_PREFIX_STANDARD_PRINCIPAL, version]) + hash160


def _encode(cv: ClarityValue) -> bytes:
    kind, value = cv.type, cv.value
    if kind == INT:
        return bytes([_PREFIX_INT]) + value.to_bytes(16, "big", signed=True)
    if kind == UINT:
        return bytes([_PREFIX_UINT]) + value.to_bytes(16, "big")
    if kind == BUFFER:
        raw = bytes.fromhex(value[2:] if value[:2].lower() == "0x" else value)
        return bytes([_PREFIX_BUFFER]) + len(raw).to_bytes(4, "big") + raw
    if kind == BOOL:
        return bytes([_PREFIX_TRUE if value else _PREFIX_FALSE])
    if kind == PRINCIPAL:
        return _encode_principal(value)
    if kind in (RESPONSE_OK, RESPONSE_ERR, SOME):
        prefix = {RESPONSE_OK: _PREFIX_OK, RESPONSE_ERR: _PREFIX_ERR, SOME: _PREFIX_SOME}[kind]
        return bytes([prefix]) + _encode(value)
    if kind == NONE:
        return bytes([_PREFIX_NONE])
    if kind == LIST:
        return bytes([_PREFIX_LIST]) + len(value).to_bytes(4, "big") + b"".join(_encode(item) for item in value)
    if kind == TUPLE:
        # Tuple fields are serialized in sorted name order
        out = bytes([_PREFIX_TUPLE]) + len(value).to_bytes(4, "big")
        for name in sorted(value):
            encoded_name = name.encode("ascii")
            out += bytes([len(encoded_name)]) + encoded_name + _encode(value[name])
        return out
    if kind in (STRING_ASCII, STRING_UTF8):
        prefix = _PREFIX_STRING_ASCII if kind == STRING_ASCII else _PREFIX_STRING_UTF8
        raw = value.encode("ascii" if kind == STRING_ASCII else "utf-8")
        return bytes([prefix]) + len(raw).to_bytes(4, "big") + raw
    raise ValueError(f"Unknown Clarity type: {kind!r}")


def to_python(cv: ClarityValue) -> Any:
    """Strip type tags recursively, e.g. for JSON responses."""
    kind, value = cv.type, cv.value
    if kind in (SOME, RESPONSE_OK, RESPONSE_ERR):
        return to_python(value)
    if kind == LIST:
        return [to_python(item) for item in value]
    if kind == TUPLE:
        return {name: to_python(item) for name, item in value.items()}
    return value
