# app/x402/challenge.py
"""
Payment challenge construction.

Every 402 response carries a freshly minted challenge. Challenges are never
cached: a replayed challenge would still require payment, but a fresh one
always reflects the current price and escrow configuration.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from app.api.models.payment import EscrowTarget, PaymentChallenge, RefundPolicy
from app.core.config import settings
from app.x402.payment_id import new_payment_id

logger = logging.getLogger(__name__)

PROOF_HEADER = "X402-Payment"
DEPOSIT_FUNCTION = "deposit"


def build_challenge(
    route: str,
    amount: int,
    expiry_seconds: int,
    network: str,
    escrow: EscrowTarget,
    provider: str,
    issued_at: Optional[datetime] = None,
) -> PaymentChallenge:
    """
    Build a PaymentChallenge for one gated request attempt.

    Args:
        route: Route identifier the challenge gates (part of the payment id preimage)
        amount: Required deposit in micro-STX
        expiry_seconds: Seconds until the escrow entry becomes refundable
        network: devnet, testnet or mainnet
        escrow: Escrow contract the deposit must target
        provider: Principal that receives funds on claim
        issued_at: Issuance time (defaults to now, UTC)

    Returns:
        A new PaymentChallenge with a unique paymentId
    """
    issued_at = issued_at or datetime.now(timezone.utc)
    payment_id = new_payment_id(route, int(issued_at.timestamp() * 1000))

    return PaymentChallenge(
        paymentId=payment_id,
        amount=amount,
        network=network,
        escrow=escrow,
        contractId=escrow.contract_id,
        depositFunction=DEPOSIT_FUNCTION,
        provider=provider,
        expiry=expiry_seconds,
        refundPolicy=RefundPolicy(expirySeconds=expiry_seconds),
        resource=route,
        issuedAt=issued_at.isoformat(),
        proofHeader=PROOF_HEADER,
    )


def get_escrow_target() -> EscrowTarget:
    """The escrow contract configured for this deployment."""
    return EscrowTarget(
        address=settings.ESCROW_CONTRACT_ADDRESS,
        name=settings.ESCROW_CONTRACT_NAME,
    )


def build_challenge_from_settings(route: str) -> PaymentChallenge:
    """Build a challenge for ``route`` using the configured price, expiry and escrow."""
    challenge = build_challenge(
        route=route,
        amount=settings.X402_PRICE_USTX,
        expiry_seconds=settings.X402_EXPIRY_SECONDS,
        network=settings.STACKS_NETWORK,
        escrow=get_escrow_target(),
        provider=settings.provider_address,
    )
    logger.debug(f"Built challenge {challenge.paymentId} for {route}")
    return challenge
