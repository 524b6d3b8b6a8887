# app/x402/escrow.py
"""
Read-only escrow status lookups.

Calls the escrow contract's ``get-escrow`` read-only function for a payment
id and reports whether the entry is active, expired, claimed or refunded. The answer
always comes from the ledger; there is no local escrow registry.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from app.api.models.payment import EscrowTarget
from app.services import clarity
from app.services.stacks_api import FetchReason, FetchResult, call_read_only

logger = logging.getLogger(__name__)

GET_ESCROW_FUNCTION = "get-escrow"
GET_CURRENT_HEIGHT_FUNCTION = "get-current-height"
EXPIRY_FIELD = "expiry-height"


@dataclass(frozen=True)
class EscrowLookup:
    """Outcome of an escrow lookup: found, absent, or a FetchReason."""
    found: bool = False
    status: Optional[str] = None
    entry: Dict[str, Any] = field(default_factory=dict)
    current_height: Optional[int] = None
    is_expired: bool = False
    reason: Optional[FetchReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None


def is_entry_expired(entry: Dict[str, Any], current_height: Optional[int]) -> bool:
    expiry = entry.get(EXPIRY_FIELD)
    if current_height is None or not isinstance(expiry, int) or isinstance(expiry, bool):
        return False
    return current_height >= expiry


def escrow_status_from_entry(entry: Dict[str, Any], current_height: Optional[int] = None) -> str:
    """Settled states win over expiry; an unsettled entry past its expiry height is expired."""
    if entry.get("claimed") is True:
        return "claimed"
    if entry.get("refunded") is True:
        return "refunded"
    if is_entry_expired(entry, current_height):
        return "expired"
    return "active"


def parse_escrow_result(result_hex: str) -> Optional[Dict[str, Any]]:
    """
    Decode a get-escrow result into a plain dict, or None if there is no entry.

    Accepts (optional (tuple ...)) with or without an (ok ...) wrapper.

    Raises:
        ClarityDecodeError: If the result is not a Clarity value
        ValueError: If the value has an unexpected shape
    """
    value = clarity.deserialize(result_hex)
    if value.type == clarity.RESPONSE_OK:
        value = value.value
    if value.type == clarity.NONE:
        return None
    if value.type == clarity.SOME:
        value = value.value
    if value.type != clarity.TUPLE:
        raise ValueError(f"Unexpected get-escrow result type: {value.type}")
    return clarity.to_python(value)


def parse_height_result(result_hex: str) -> int:
    """Decode a get-current-height result, a uint with or without an (ok ...) wrapper."""
    value = clarity.deserialize(result_hex)
    if value.type == clarity.RESPONSE_OK:
        value = value.value
    if value.type != clarity.UINT:
        raise ValueError(f"Unexpected get-current-height result type: {value.type}")
    return value.value


def _read_only_result(fetched: FetchResult, function_name: str, payment_id: str) -> Optional[str]:
    body = fetched.record
    if not body.get("okay") or not isinstance(body.get("result"), str):
        logger.error(f"{function_name} call failed for {payment_id}: {body.get('cause')}")
        return None
    return body["result"]


def get_escrow_status(
    payment_id: str,
    network: str,
    escrow: EscrowTarget,
    caller: Optional[Callable[..., FetchResult]] = None,
) -> EscrowLookup:
    """
    Look up the escrow entry for ``payment_id``.

    When an entry exists the contract's current height is read as well, so an
    unsettled entry past its expiry height is reported as expired.

    Args:
        payment_id: 64-hex payment id (0x prefix optional)
        network: Ledger network to query
        escrow: Escrow contract to read
        caller: Read-only call function (defaults to the Stacks API client)

    Returns:
        EscrowLookup with found/status/entry/current_height, or a FetchReason on
        failure. A contract-level error or undecodable result is reported as api-error.
    """
    caller = caller or call_read_only
    argument = clarity.serialize(clarity.buffer_cv(payment_id))

    fetched = caller(escrow.address, escrow.name, GET_ESCROW_FUNCTION, [argument], network)
    if not fetched.ok:
        return EscrowLookup(reason=fetched.reason, detail=fetched.detail)

    result_hex = _read_only_result(fetched, GET_ESCROW_FUNCTION, payment_id)
    if result_hex is None:
        cause = fetched.record.get("cause")
        return EscrowLookup(reason=FetchReason.API_ERROR, detail=str(cause or "read-only call failed"))

    try:
        entry = parse_escrow_result(result_hex)
    except ValueError as e:
        logger.error(f"Could not decode get-escrow result for {payment_id}: {e}")
        return EscrowLookup(reason=FetchReason.API_ERROR, detail=f"undecodable result: {e}")

    if entry is None:
        return EscrowLookup(found=False)

    fetched = caller(escrow.address, escrow.name, GET_CURRENT_HEIGHT_FUNCTION, [], network)
    if not fetched.ok:
        return EscrowLookup(reason=fetched.reason, detail=fetched.detail)

    result_hex = _read_only_result(fetched, GET_CURRENT_HEIGHT_FUNCTION, payment_id)
    if result_hex is None:
        cause = fetched.record.get("cause")
        return EscrowLookup(reason=FetchReason.API_ERROR, detail=str(cause or "read-only call failed"))

    try:
        current_height = parse_height_result(result_hex)
    except ValueError as e:
        logger.error(f"Could not decode get-current-height result for {payment_id}: {e}")
        return EscrowLookup(reason=FetchReason.API_ERROR, detail=f"undecodable height: {e}")

    status = escrow_status_from_entry(entry, current_height)
    logger.info(f"Escrow {payment_id} on {escrow.contract_id}: {status} at height {current_height}")
    return EscrowLookup(
        found=True,
        status=status,
        entry=entry,
        current_height=current_height,
        is_expired=is_entry_expired(entry, current_height),
    )
