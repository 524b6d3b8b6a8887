# app/x402/audit.py
"""
Audit logging for x402 payment decisions.

Every challenge issued and every verification outcome is appended to a JSON
lines file, so a disputed payment or a refund claim can be traced back to
what the gate saw and decided.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH (disable with X402_AUDIT_ENABLED=false)

Events logged:
- Challenge issued (paymentId, amount, escrow contract)
- Proof rejected before any ledger call (bad encoding, bad paymentId, ...)
- Payment required: proof carried no settlement reference
- Verification failed (reason, note, retryable)
- Payment verified (paymentId, settlementRef)
- Receipt issued (receiptHash)
- Error (type, message, context)

Writing is best effort: a failed write is logged and never fails the request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    CHALLENGE_ISSUED = "challenge_issued"
    PROOF_REJECTED = "proof_rejected"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    VERIFICATION_FAILED = "verification_failed"
    PAYMENT_VERIFIED = "payment_verified"
    RECEIPT_ISSUED = "receipt_issued"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payment_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build the dictionary written for one audit event."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "payment_id": payment_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payment_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None if auditing is disabled
        or the write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_challenge_issued(
    client_ip: str,
    payment_id: str,
    amount: int,
    contract_id: str,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 challenge being issued."""
    return log_audit_event(
        event_type=AuditEventType.CHALLENGE_ISSUED,
        data={
            "amount": amount,
            "contract_id": contract_id,
            "resource": resource,
        },
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_proof_rejected(
    client_ip: str,
    detail: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a proof rejected before verification."""
    return log_audit_event(
        event_type=AuditEventType.PROOF_REJECTED,
        data={"detail": detail},
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_required_sent(
    client_ip: str,
    payment_id: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a proof that arrived without a settlement reference."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={"reason": "settlement-ref-missing"},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_verification_failed(
    client_ip: str,
    payment_id: str,
    settlement_ref: str,
    reason: str,
    note: Optional[str],
    retryable: bool,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a verification that did not succeed."""
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_FAILED,
        data={
            "settlement_ref": settlement_ref,
            "reason": reason,
            "note": note,
            "retryable": retryable,
        },
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    payment_id: str,
    settlement_ref: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a deposit verified on the ledger."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"settlement_ref": settlement_ref},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_receipt_issued(
    client_ip: str,
    payment_id: Optional[str],
    receipt_hash: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a fulfillment receipt being served."""
    return log_audit_event(
        event_type=AuditEventType.RECEIPT_ISSUED,
        data={"receipt_hash": receipt_hash},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    payment_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    payment_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        payment_id: Filter by payment id (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if payment_id and event.get("payment_id") != payment_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]
