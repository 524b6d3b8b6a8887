# app/x402/verifier.py
"""
On-chain deposit verification.

Given a settlement reference (txid) from a payment proof, fetch the
transaction from the ledger and check that it is a successful call to the
escrow contract's ``deposit`` function with arguments matching the
challenge. The ledger is the only source of truth; nothing is remembered
between requests.

Every path ends in exactly one VerificationResult:

- ok
- pending       transaction not yet confirmed; poll again (retry-safe)
- timeout       ledger API did not answer in time (retry-safe)
- rate-limited  ledger API returned 429 (retry-safe)
- api-error     ledger API unreachable or returned garbage (retry-safe)
- not-found     no such transaction (terminal for this proof)
- mismatch      transaction does not pay this challenge (terminal for this proof)

The verifier makes a single ledger call per invocation and never retries.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from app.api.models.payment import EscrowTarget
from app.services import clarity
from app.services.clarity import ClarityValue
from app.services.stacks_api import FetchResult, fetch_transaction
from app.x402.challenge import DEPOSIT_FUNCTION
from app.x402.payment_id import normalize_hex

logger = logging.getLogger(__name__)

TX_STATUS_SUCCESS = "success"
TX_STATUS_PENDING = "pending"
TX_TYPE_CONTRACT_CALL = "contract_call"

# deposit argument names; must track the escrow contract's signature
ARG_PAYMENT_ID = "payment-id"
ARG_PROVIDER = "provider"
ARG_AMOUNT = "amount"
ARG_EXPIRY = "expiry"
ARG_META_HASH = "meta-hash"

Fetcher = Callable[..., FetchResult]
ArgDecoder = Callable[[str], ClarityValue]


class VerificationReason(str, Enum):
    NOT_FOUND = "not-found"
    PENDING = "pending"
    MISMATCH = "mismatch"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate-limited"
    API_ERROR = "api-error"


RETRYABLE_REASONS = frozenset({
    VerificationReason.PENDING,
    VerificationReason.TIMEOUT,
    VerificationReason.RATE_LIMITED,
    VerificationReason.API_ERROR,
})


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: Optional[VerificationReason] = None
    note: Optional[str] = None

    @classmethod
    def success(cls) -> "VerificationResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: VerificationReason, note: Optional[str] = None) -> "VerificationResult":
        return cls(ok=False, reason=reason, note=note)

    @property
    def retryable(self) -> bool:
        """True if the same proof may succeed on a later attempt."""
        return self.reason in RETRYABLE_REASONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "note": self.note,
        }


def _mismatch(note: str) -> VerificationResult:
    return VerificationResult.failure(VerificationReason.MISMATCH, note)


def _has_tx_shape(tx: Any) -> bool:
    """Check the record looks like a contract-call transaction from the Stacks API."""
    if not isinstance(tx, dict):
        return False
    if not isinstance(tx.get("tx_status"), str) or tx.get("tx_type") != TX_TYPE_CONTRACT_CALL:
        return False
    call = tx.get("contract_call")
    if not isinstance(call, dict):
        return False
    if not isinstance(call.get("contract_id"), str) or not isinstance(call.get("function_name"), str):
        return False
    args = call.get("function_args")
    if not isinstance(args, list):
        return False
    return all(
        isinstance(arg, dict) and isinstance(arg.get("name"), str) and isinstance(arg.get("hex"), str)
        for arg in args
    )


def decode_function_args(function_args, decoder: ArgDecoder = clarity.deserialize) -> Dict[str, ClarityValue]:
    """
    Decode contract-call arguments into a name -> ClarityValue mapping.

    Raises:
        ClarityDecodeError (a ValueError): If any argument fails to decode
    """
    decoded = {}
    for arg in function_args:
        decoded[arg["name"]] = decoder(arg["hex"])
    return decoded


def _is_type(value: Optional[ClarityValue], expected_type: str) -> bool:
    return value is not None and value.type == expected_type


def check_deposit_args(
    args: Dict[str, ClarityValue],
    payment_id: str,
    provider: str,
    amount: int,
) -> VerificationResult:
    """Compare decoded deposit arguments against the challenge, first failure wins."""
    actual_payment_id = args.get(ARG_PAYMENT_ID)
    if not _is_type(actual_payment_id, clarity.BUFFER) or \
            normalize_hex(actual_payment_id.value) != normalize_hex(payment_id):
        return _mismatch("payment-id mismatch")

    actual_provider = args.get(ARG_PROVIDER)
    if not _is_type(actual_provider, clarity.PRINCIPAL) or actual_provider.value != provider:
        return _mismatch("provider mismatch")

    # Strict equality: overpayment is rejected like underpayment
    actual_amount = args.get(ARG_AMOUNT)
    if not _is_type(actual_amount, clarity.UINT) or actual_amount.value != amount:
        return _mismatch("amount mismatch")

    # expiry and meta-hash are not compared, but must be present and well-formed
    if not _is_type(args.get(ARG_EXPIRY), clarity.UINT):
        return _mismatch("invalid expiry")
    if not _is_type(args.get(ARG_META_HASH), clarity.BUFFER):
        return _mismatch("invalid meta-hash")

    return VerificationResult.success()


def adjudicate_transaction(
    tx: Any,
    payment_id: str,
    provider: str,
    amount: int,
    escrow: EscrowTarget,
    decoder: ArgDecoder = clarity.deserialize,
) -> VerificationResult:
    """Check an already-fetched transaction record against a challenge."""
    if not _has_tx_shape(tx):
        return _mismatch("unexpected tx shape")

    status = tx["tx_status"]
    if status == TX_STATUS_PENDING:
        return VerificationResult.failure(VerificationReason.PENDING, "transaction not yet confirmed")
    if status != TX_STATUS_SUCCESS:
        return _mismatch(f"tx_status={status}")

    call = tx["contract_call"]
    if call["contract_id"] != escrow.contract_id:
        return _mismatch("contract mismatch")
    if call["function_name"] != DEPOSIT_FUNCTION:
        return _mismatch("function mismatch")

    try:
        args = decode_function_args(call["function_args"], decoder)
    except ValueError as e:
        logger.warning(f"Failed to parse contract args for tx {tx.get('tx_id')}: {e}")
        return _mismatch("failed to parse contract args")

    return check_deposit_args(args, payment_id, provider, amount)


def verify_deposit(
    settlement_ref: str,
    payment_id: str,
    provider: str,
    amount: int,
    escrow: EscrowTarget,
    network: str,
    fetcher: Optional[Fetcher] = None,
    decoder: Optional[ArgDecoder] = None,
    timeout: Optional[float] = None,
) -> VerificationResult:
    """
    Verify that ``settlement_ref`` is a confirmed escrow deposit for a challenge.

    Args:
        settlement_ref: Transaction id from the payment proof
        payment_id: Expected payment-id (hex, 0x prefix optional)
        provider: Expected provider principal
        amount: Expected amount in micro-STX (exact)
        escrow: Expected escrow contract
        network: Ledger network to query
        fetcher: Transaction fetcher (defaults to the Stacks API client)
        decoder: Clarity argument decoder
        timeout: Ledger call budget in seconds

    Returns:
        VerificationResult; never raises for ledger or transaction content problems
    """
    logger.info(f"Verifying deposit: txid={settlement_ref}, paymentId={payment_id}")

    fetcher = fetcher or fetch_transaction
    decoder = decoder or clarity.deserialize

    fetched = fetcher(settlement_ref, network, timeout=timeout)
    if not fetched.ok:
        logger.warning(f"Could not fetch tx {settlement_ref}: {fetched.reason.value} ({fetched.detail})")
        return VerificationResult.failure(VerificationReason(fetched.reason.value), fetched.detail)

    result = adjudicate_transaction(fetched.record, payment_id, provider, amount, escrow, decoder)
    if result.ok:
        logger.info(f"Deposit verified: txid={settlement_ref}, paymentId={payment_id}")
    else:
        logger.warning(f"Deposit not accepted: txid={settlement_ref}, reason={result.reason.value}, note={result.note}")
    return result
