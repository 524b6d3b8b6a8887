# app/x402/proof.py
"""
Payment proof decoding.

The client retries a gated request with a JSON proof in the X402-Payment
header: {"paymentId": "<64 hex>", "settlementRef": "0x<txid>"}. Decoding is
pure validation; nothing here touches the network.
"""
import json
from dataclasses import dataclass
from typing import Optional

from app.x402.payment_id import is_payment_id

# Field names accepted for the settlement reference, in priority order.
# "txid" is what earlier clients sent.
SETTLEMENT_REF_FIELDS = ("settlementRef", "txid")


class ProofDecodeError(ValueError):
    """The proof is malformed; maps to 400 Bad Request."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


@dataclass(frozen=True)
class PaymentProof:
    payment_id: str
    settlement_ref: Optional[str] = None

    @property
    def has_settlement_ref(self) -> bool:
        return self.settlement_ref is not None


def decode_proof(raw: str) -> PaymentProof:
    """
    Parse and validate a raw proof string.

    Gates, in order:
    1. Must be a JSON object -> "invalid proof encoding"
    2. paymentId must be 64 hex chars -> "invalid paymentId"
    3. settlementRef, if present and not null, must be a string -> "bad settlement reference"

    A proof without a settlement reference (missing, null or blank) is valid;
    the returned proof has settlement_ref=None, meaning payment not yet made.

    Raises:
        ProofDecodeError: On the first failed gate
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ProofDecodeError("invalid proof encoding") from None
    if not isinstance(data, dict):
        raise ProofDecodeError("invalid proof encoding")

    payment_id = data.get("paymentId")
    if not is_payment_id(payment_id):
        raise ProofDecodeError("invalid paymentId")

    settlement_ref = None
    for field_name in SETTLEMENT_REF_FIELDS:
        if data.get(field_name) is not None:
            settlement_ref = data[field_name]
            break

    if settlement_ref is not None and not isinstance(settlement_ref, str):
        raise ProofDecodeError("bad settlement reference")
    if settlement_ref is not None and not settlement_ref.strip():
        settlement_ref = None

    return PaymentProof(
        payment_id=payment_id.lower(),
        settlement_ref=settlement_ref.strip() if settlement_ref else None,
    )
