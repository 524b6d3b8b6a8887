# app/api/endpoints/premium.py
import logging
from fastapi import APIRouter, Request

from app.api.models.payment import FulfillmentReceipt
from app.x402 import audit
from app.x402.middleware import PROOF_STATE_ATTR, get_client_ip
from app.x402.receipt import build_receipt

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/premium", response_model=FulfillmentReceipt)
async def get_premium(request: Request) -> FulfillmentReceipt:
    """
    The paid resource.

    Reached only after the x402 middleware has verified an escrow deposit
    (or when X402_ENABLED=false). Returns a receipt whose receiptHash lets the
    client prove what was served.
    """
    proof = getattr(request.state, PROOF_STATE_ATTR, None)
    payment_id = proof.payment_id if proof else None
    settlement_ref = proof.settlement_ref if proof else None

    receipt = build_receipt(payment_id=payment_id, settlement_ref=settlement_ref)
    logger.info(f"Serving premium content for payment {payment_id}, receipt {receipt['receiptHash']}")
    audit.log_receipt_issued(
        client_ip=get_client_ip(request),
        payment_id=payment_id,
        receipt_hash=receipt["receiptHash"],
    )
    return FulfillmentReceipt(**receipt)
