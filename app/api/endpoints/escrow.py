# app/api/endpoints/escrow.py
import logging
from fastapi import APIRouter, HTTPException, Path, status

from app.api.models.payment import EscrowStatusResponse
from app.core.config import settings
from app.services.stacks_api import FetchReason
from app.x402.challenge import get_escrow_target
from app.x402.escrow import get_escrow_status
from app.x402.payment_id import is_payment_id, normalize_hex

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get(
    "/{payment_id}",
    response_model=EscrowStatusResponse,
    summary="Escrow Status for a Payment"
)
def read_escrow_status(
    payment_id: str = Path(..., description="Payment id from the challenge (64 hex chars, 0x optional)")
) -> EscrowStatusResponse:
    """
    Look up the escrow entry for a payment id on the ledger.

    Returns:
        EscrowStatusResponse with status active, expired, claimed or refunded

    Raises:
        HTTPException: 400 for a malformed id, 404 if no entry exists,
        503 if the ledger cannot be read
    """
    normalized = normalize_hex(payment_id)
    if not is_payment_id(normalized):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid paymentId")

    escrow = get_escrow_target()
    lookup = get_escrow_status(normalized, settings.STACKS_NETWORK, escrow)

    if not lookup.ok:
        logger.error(f"Escrow lookup for {normalized} failed: {lookup.reason.value} ({lookup.detail})")
        headers = None
        if lookup.reason in (FetchReason.TIMEOUT, FetchReason.RATE_LIMITED):
            headers = {"Retry-After": str(settings.X402_RETRY_AFTER_SECONDS)}
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Ledger unavailable: {lookup.reason.value}",
            headers=headers,
        )

    if not lookup.found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Escrow not found")

    return EscrowStatusResponse(
        paymentId=normalized,
        contractId=escrow.contract_id,
        network=settings.STACKS_NETWORK,
        status=lookup.status,
        currentHeight=lookup.current_height,
        isExpired=lookup.is_expired,
        escrow=lookup.entry,
    )
