# app/api/endpoints/receipts.py
import logging
from typing import Any, Dict
from fastapi import APIRouter, Body

from app.api.models.payment import ReceiptVerifyResponse
from app.x402.receipt import HASH_FIELD, compute_receipt_hash, verify_receipt

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/verify", response_model=ReceiptVerifyResponse)
async def verify_receipt_hash(
    receipt: Dict[str, Any] = Body(..., description="A receipt as returned by a fulfilled request")
) -> ReceiptVerifyResponse:
    """
    Recompute a receipt's hash and compare it with the receiptHash it carries.

    Anyone holding the receipt can do the same computation; this endpoint is
    a convenience for clients that do not want to reimplement it.
    """
    expected = compute_receipt_hash(receipt)
    claimed = receipt.get(HASH_FIELD)
    valid = verify_receipt(receipt)
    if not valid:
        logger.info(f"Receipt hash mismatch: claimed {claimed}, expected {expected}")
    return ReceiptVerifyResponse(
        valid=valid,
        expectedHash=expected,
        receiptHash=claimed if isinstance(claimed, str) else None,
    )
