# app/x402/middleware.py
"""
FastAPI middleware for x402 escrow payments.

This module provides HTTP middleware that:
1. Intercepts requests to protected endpoints
2. Returns 402 Payment Required with a fresh challenge when no proof is sent
3. Decodes the X402-Payment proof header
4. Verifies the referenced deposit transaction on the Stacks ledger
5. Maps the verification outcome to a response class the client can act on

Outcome mapping:
    no proof / no settlement ref   402  (pay, then retry with proof)
    malformed proof                400
    pending                        409  + Retry-After
    timeout / rate-limited /
    api-error                      503  + Retry-After
    mismatch / not-found           403  (terminal for this proof)
    ok                             route handler runs, receipt returned
"""
import json
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.x402 import audit
from app.x402.challenge import PROOF_HEADER, build_challenge_from_settings, get_escrow_target
from app.x402.proof import PaymentProof, ProofDecodeError, decode_proof
from app.x402.verifier import VerificationReason, VerificationResult, verify_deposit

logger = logging.getLogger(__name__)

X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
PROOF_STATE_ATTR = "x402_proof"

# Protected endpoints configuration
# These endpoints require an escrow deposit when X402_ENABLED=true
PROTECTED_ENDPOINTS = [
    ("GET", f"{settings.API_V1_STR}/premium"),
]

REJECTED_REASONS = (VerificationReason.MISMATCH, VerificationReason.NOT_FOUND)
UNAVAILABLE_REASONS = (
    VerificationReason.TIMEOUT,
    VerificationReason.RATE_LIMITED,
    VerificationReason.API_ERROR,
)


def is_protected_endpoint(method: str, path: str) -> bool:
    """Check if the request matches a protected endpoint."""
    for protected_method, protected_path in PROTECTED_ENDPOINTS:
        if method == protected_method and path.rstrip("/") == protected_path.rstrip("/"):
            return True
    return False


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(route: str, client_ip: str) -> JSONResponse:
    """Issue a fresh challenge as a 402 Payment Required response."""
    challenge = build_challenge_from_settings(route)
    audit.log_challenge_issued(
        client_ip=client_ip,
        payment_id=challenge.paymentId,
        amount=challenge.amount,
        contract_id=challenge.contractId,
        resource=route,
    )
    return JSONResponse(status_code=402, content=challenge.model_dump())


def create_verification_response(result: VerificationResult, proof: PaymentProof) -> JSONResponse:
    """
    Build the response for a failed verification.

    Raises:
        ValueError: If called with a successful result
    """
    if result.ok:
        raise ValueError("create_verification_response called with a successful result")

    content = {
        "error": "payment not accepted",
        "paymentId": proof.payment_id,
        "settlementRef": proof.settlement_ref,
        "retryable": result.retryable,
        **result.to_dict(),
    }
    retry_headers = {"Retry-After": str(settings.X402_RETRY_AFTER_SECONDS)}

    if result.reason == VerificationReason.PENDING:
        content["error"] = "payment pending confirmation"
        return JSONResponse(status_code=409, content=content, headers=retry_headers)
    if result.reason in UNAVAILABLE_REASONS:
        content["error"] = "ledger unavailable"
        return JSONResponse(status_code=503, content=content, headers=retry_headers)
    content["error"] = "payment rejected"
    return JSONResponse(status_code=403, content=content)


def encode_payment_response(proof: PaymentProof) -> str:
    """Compact JSON for the X-PAYMENT-RESPONSE header."""
    return json.dumps(
        {"paymentId": proof.payment_id, "settlementRef": proof.settlement_ref, "verified": True},
        separators=(",", ":"),
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    Escrow payment gate for FastAPI.

    When X402_ENABLED=true, this middleware:
    - Returns HTTP 402 with a payment challenge if no proof is presented
    - Verifies the proof's settlement reference against the ledger
    - Passes verified requests on with the proof in request.state.x402_proof

    When X402_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(self, app, verifier: Optional[Callable[..., VerificationResult]] = None):
        super().__init__(app)
        self._verifier = verifier

    @property
    def verifier(self) -> Callable[..., VerificationResult]:
        return self._verifier or verify_deposit

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        if not is_protected_endpoint(request.method, request.url.path):
            return await call_next(request)

        client_ip = get_client_ip(request)
        route = request.url.path
        logger.info(f"x402: Processing protected request from {client_ip}: {request.method} {route}")

        proof_header = request.headers.get(PROOF_HEADER)
        if not proof_header:
            logger.info(f"x402: No {PROOF_HEADER} header, returning 402")
            return create_402_response(route, client_ip)

        try:
            proof = decode_proof(proof_header)
        except ProofDecodeError as e:
            logger.warning(f"x402: Rejected proof from {client_ip}: {e.detail}")
            audit.log_proof_rejected(client_ip=client_ip, detail=e.detail)
            return JSONResponse(status_code=400, content={"error": "bad-request", "detail": e.detail})

        if not proof.has_settlement_ref:
            logger.info(f"x402: Proof for {proof.payment_id} has no settlement reference, returning 402")
            audit.log_payment_required_sent(client_ip=client_ip, payment_id=proof.payment_id)
            return JSONResponse(
                status_code=402,
                content={
                    "paymentRequired": True,
                    "error": "settlement reference missing",
                    "reason": "settlement-ref-missing",
                    "paymentId": proof.payment_id,
                },
            )

        # Ledger reads block; keep them off the event loop
        result = await run_in_threadpool(
            self.verifier,
            settlement_ref=proof.settlement_ref,
            payment_id=proof.payment_id,
            provider=settings.provider_address,
            amount=settings.X402_PRICE_USTX,
            escrow=get_escrow_target(),
            network=settings.STACKS_NETWORK,
        )

        if not result.ok:
            logger.warning(
                f"x402: Verification failed for {proof.payment_id}: {result.reason.value} ({result.note})"
            )
            audit.log_verification_failed(
                client_ip=client_ip,
                payment_id=proof.payment_id,
                settlement_ref=proof.settlement_ref,
                reason=result.reason.value,
                note=result.note,
                retryable=result.retryable,
            )
            return create_verification_response(result, proof)

        logger.info(f"x402: Payment {proof.payment_id} verified (tx {proof.settlement_ref})")
        audit.log_payment_verified(
            client_ip=client_ip,
            payment_id=proof.payment_id,
            settlement_ref=proof.settlement_ref,
        )

        if settings.X402_SIMULATE_FAILURE:
            # Funds stay in escrow and become refundable after expiry
            logger.warning(f"x402: Simulated failure, not fulfilling {proof.payment_id}")
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Simulated failure: no fulfillment.",
                    "paymentId": proof.payment_id,
                    "refundPolicy": "escrow-timeout",
                },
            )

        setattr(request.state, PROOF_STATE_ATTR, proof)
        response = await call_next(request)
        if 200 <= response.status_code < 300:
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(proof)
        return response
