# app/x402/receipt.py
"""
Fulfillment receipts.

A receipt's hash is sha256 over compact JSON of the payload with fields in a
fixed order, so anyone holding the same payload recomputes the same hash
regardless of how their JSON library orders keys.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

RECEIPT_FIELDS = ("premium", "message", "paymentId", "settlementRef", "timestamp")
HASH_FIELD = "receiptHash"
DEFAULT_MESSAGE = "✅ fulfilled"


def _canonical(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _canonical(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    return value


def canonical_receipt_bytes(payload: Mapping[str, Any]) -> bytes:
    """
    Serialize a receipt payload canonically.

    Known fields come first in RECEIPT_FIELDS order (missing ones as null),
    then any extra fields sorted by name. Objects nested inside any field
    have their keys sorted at every depth. receiptHash itself is excluded.
    """
    ordered = {name: _canonical(payload.get(name)) for name in RECEIPT_FIELDS}
    for name in sorted(payload):
        if name not in ordered and name != HASH_FIELD:
            ordered[name] = _canonical(payload[name])
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_receipt_hash(payload: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonical_receipt_bytes(payload)).hexdigest()


def build_receipt(
    payment_id: Optional[str],
    settlement_ref: Optional[str],
    message: str = DEFAULT_MESSAGE,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble a fulfillment payload and attach its receiptHash."""
    payload = {
        "premium": True,
        "message": message,
        "paymentId": payment_id,
        "settlementRef": settlement_ref,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }
    payload[HASH_FIELD] = compute_receipt_hash(payload)
    return payload


def verify_receipt(receipt: Mapping[str, Any]) -> bool:
    """True if the receipt's receiptHash matches its content."""
    claimed = receipt.get(HASH_FIELD)
    if not isinstance(claimed, str):
        return False
    expected = compute_receipt_hash(receipt)
    return hmac.compare_digest(claimed.lower().encode("utf-8"), expected.encode("utf-8"))
