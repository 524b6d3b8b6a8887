"""
Unit tests for on-chain deposit verification.
"""
import pytest
from unittest.mock import patch, MagicMock

from app.api.models.payment import EscrowTarget
from app.services import clarity
from app.services.clarity import ClarityValue
from app.services.stacks_api import FetchReason, FetchResult
from app.x402.verifier import (
    VerificationReason,
    VerificationResult,
    adjudicate_transaction,
    check_deposit_args,
    decode_function_args,
    verify_deposit,
)

ESCROW = EscrowTarget(address="ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM", name="refund-escrow")
PROVIDER = "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"
PAYMENT_ID = "5f1c0d2b8e6a4f3c9b7d2e1a0c8f6e4d3b2a19087f6e5d4c3b2a1908f7e6d5c4"
TXID = "0x" + "cd" * 32
AMOUNT = 100000


def deposit_args(payment_id=PAYMENT_ID, provider=PROVIDER, amount=AMOUNT, expiry=None, meta_hash=None):
    """Serialized deposit arguments as the Stacks API reports them."""
    values = {
        "payment-id": clarity.buffer_cv(payment_id),
        "provider": clarity.principal_cv(provider),
        "amount": clarity.uint_cv(amount),
        "expiry": expiry if expiry is not None else clarity.uint_cv(90),
        "meta-hash": meta_hash if meta_hash is not None else clarity.buffer_cv(b"\x00" * 32),
    }
    return [{"name": name, "hex": clarity.serialize(value)} for name, value in values.items()]


def deposit_tx(tx_status="success", contract_id=None, function_name="deposit", function_args=None):
    """A contract-call transaction record."""
    return {
        "tx_id": TXID,
        "tx_status": tx_status,
        "tx_type": "contract_call",
        "contract_call": {
            "contract_id": contract_id or ESCROW.contract_id,
            "function_name": function_name,
            "function_args": function_args if function_args is not None else deposit_args(),
        },
    }


def adjudicate(tx, **kwargs):
    params = {"payment_id": PAYMENT_ID, "provider": PROVIDER, "amount": AMOUNT, "escrow": ESCROW}
    params.update(kwargs)
    return adjudicate_transaction(tx, **params)


class TestVerificationResult:
    """Test the verification result type."""

    def test_success(self):
        """Success has no reason and is not retryable."""
        result = VerificationResult.success()
        assert result.ok is True
        assert result.reason is None
        assert result.retryable is False
        assert result.to_dict() == {"ok": True, "reason": None, "note": None}

    @pytest.mark.parametrize("reason", [
        VerificationReason.PENDING,
        VerificationReason.TIMEOUT,
        VerificationReason.RATE_LIMITED,
        VerificationReason.API_ERROR,
    ])
    def test_retryable_reasons(self, reason):
        """Transient reasons are retryable."""
        assert VerificationResult.failure(reason).retryable is True

    @pytest.mark.parametrize("reason", [VerificationReason.MISMATCH, VerificationReason.NOT_FOUND])
    def test_terminal_reasons(self, reason):
        """Mismatch and not-found are terminal for a proof."""
        assert VerificationResult.failure(reason).retryable is False

    def test_to_dict(self):
        """Reasons serialize by value."""
        result = VerificationResult.failure(VerificationReason.MISMATCH, "amount mismatch")
        assert result.to_dict() == {"ok": False, "reason": "mismatch", "note": "amount mismatch"}


class TestAdjudicateTransaction:
    """Test checks against an already-fetched transaction."""

    def test_valid_deposit(self):
        """A matching successful deposit verifies."""
        assert adjudicate(deposit_tx()).ok is True

    def test_payment_id_with_prefix(self):
        """A 0x-prefixed expected payment id still matches."""
        assert adjudicate(deposit_tx(), payment_id="0x" + PAYMENT_ID.upper()).ok is True

    def test_pending(self):
        """Unconfirmed transactions are pending."""
        result = adjudicate(deposit_tx(tx_status="pending"))
        assert result.reason == VerificationReason.PENDING
        assert result.note == "transaction not yet confirmed"

    @pytest.mark.parametrize("status", ["abort_by_response", "abort_by_post_condition", "dropped_replace_by_fee"])
    def test_failed_status(self, status):
        """Any other non-success status is a mismatch."""
        result = adjudicate(deposit_tx(tx_status=status))
        assert result.reason == VerificationReason.MISMATCH
        assert result.note == f"tx_status={status}"

    def test_wrong_contract(self):
        """A deposit into another contract does not count."""
        result = adjudicate(deposit_tx(contract_id="ST000000000000000000002AMW42H.refund-escrow"))
        assert result.note == "contract mismatch"

    def test_wrong_function(self):
        """Only the deposit function counts."""
        result = adjudicate(deposit_tx(function_name="claim"))
        assert result.note == "function mismatch"

    def test_wrong_payment_id(self):
        """The payment-id argument must match the challenge."""
        result = adjudicate(deposit_tx(function_args=deposit_args(payment_id="ee" * 32)))
        assert result.reason == VerificationReason.MISMATCH
        assert result.note == "payment-id mismatch"

    def test_wrong_provider(self):
        """The provider argument must match."""
        result = adjudicate(deposit_tx(function_args=deposit_args(provider="ST000000000000000000002AMW42H")))
        assert result.note == "provider mismatch"

    def test_underpayment(self):
        """99999 uSTX does not satisfy a 100000 uSTX challenge."""
        result = adjudicate(deposit_tx(function_args=deposit_args(amount=AMOUNT - 1)))
        assert result.note == "amount mismatch"

    def test_overpayment(self):
        """Amounts must match exactly."""
        result = adjudicate(deposit_tx(function_args=deposit_args(amount=AMOUNT + 1)))
        assert result.note == "amount mismatch"

    def test_expiry_wrong_type(self):
        """expiry must be a uint."""
        result = adjudicate(deposit_tx(function_args=deposit_args(expiry=clarity.int_cv(90))))
        assert result.note == "invalid expiry"

    def test_meta_hash_wrong_type(self):
        """meta-hash must be a buffer."""
        result = adjudicate(deposit_tx(function_args=deposit_args(meta_hash=clarity.uint_cv(1))))
        assert result.note == "invalid meta-hash"

    def test_missing_argument(self):
        """A deposit without an amount argument is a mismatch."""
        args = [arg for arg in deposit_args() if arg["name"] != "amount"]
        result = adjudicate(deposit_tx(function_args=args))
        assert result.note == "amount mismatch"

    def test_undecodable_argument(self):
        """Garbage argument hex is a mismatch, not an exception."""
        args = deposit_args()
        args[0]["hex"] = "0xff"
        result = adjudicate(deposit_tx(function_args=args))
        assert result.reason == VerificationReason.MISMATCH
        assert result.note == "failed to parse contract args"

    @pytest.mark.parametrize("tx", [
        None,
        [],
        {"tx_status": "success", "tx_type": "token_transfer"},
        {"tx_status": "success", "tx_type": "contract_call"},
        {"tx_status": "success", "tx_type": "contract_call",
         "contract_call": {"contract_id": "x.y", "function_name": "deposit", "function_args": "nope"}},
        {"tx_status": "success", "tx_type": "contract_call",
         "contract_call": {"contract_id": "x.y", "function_name": "deposit", "function_args": [{"name": "a"}]}},
    ])
    def test_unexpected_shape(self, tx):
        """Records that are not contract calls are a mismatch."""
        result = adjudicate(tx)
        assert result.reason == VerificationReason.MISMATCH
        assert result.note == "unexpected tx shape"

    def test_custom_decoder(self):
        """The argument decoder can be swapped."""
        decoded = {
            "payment-id": ClarityValue(clarity.BUFFER, "0x" + PAYMENT_ID),
            "provider": ClarityValue(clarity.PRINCIPAL, PROVIDER),
            "amount": ClarityValue(clarity.UINT, AMOUNT),
            "expiry": ClarityValue(clarity.UINT, 90),
            "meta-hash": ClarityValue(clarity.BUFFER, "0x"),
        }
        args = [{"name": name, "hex": name} for name in decoded]
        result = adjudicate(deposit_tx(function_args=args), decoder=lambda hex_value: decoded[hex_value])
        assert result.ok is True

    def test_decoder_value_error(self):
        """A decoder raising ValueError yields a parse mismatch."""
        decoder = MagicMock(side_effect=ValueError("bad"))
        result = adjudicate(deposit_tx(), decoder=decoder)
        assert result.note == "failed to parse contract args"


class TestDecodeFunctionArgs:
    """Test argument decoding."""

    def test_decodes_by_name(self):
        """Arguments are keyed by name."""
        decoded = decode_function_args(deposit_args())
        assert decoded["amount"] == ClarityValue(clarity.UINT, AMOUNT)
        assert decoded["provider"] == ClarityValue(clarity.PRINCIPAL, PROVIDER)
        assert decoded["payment-id"] == ClarityValue(clarity.BUFFER, "0x" + PAYMENT_ID)


class TestCheckDepositArgs:
    """Test comparison of decoded arguments, first failure wins."""

    def test_first_failure_reported(self):
        """With several wrong fields, payment-id is reported first."""
        args = decode_function_args(deposit_args(payment_id="ee" * 32, amount=1))
        assert check_deposit_args(args, PAYMENT_ID, PROVIDER, AMOUNT).note == "payment-id mismatch"

    def test_payment_id_type_checked(self):
        """A payment-id that is not a buffer is a mismatch."""
        args = decode_function_args(deposit_args())
        args["payment-id"] = ClarityValue(clarity.STRING_ASCII, PAYMENT_ID)
        assert check_deposit_args(args, PAYMENT_ID, PROVIDER, AMOUNT).note == "payment-id mismatch"


class TestVerifyDeposit:
    """Test the full fetch-and-check path."""

    def call(self, fetcher, **kwargs):
        params = {
            "settlement_ref": TXID,
            "payment_id": PAYMENT_ID,
            "provider": PROVIDER,
            "amount": AMOUNT,
            "escrow": ESCROW,
            "network": "testnet",
            "fetcher": fetcher,
        }
        params.update(kwargs)
        return verify_deposit(**params)

    def test_verified(self):
        """A confirmed matching deposit verifies."""
        fetcher = MagicMock(return_value=FetchResult.success(deposit_tx()))

        result = self.call(fetcher, timeout=3.0)

        assert result.ok is True
        fetcher.assert_called_once_with(TXID, "testnet", timeout=3.0)

    def test_amount_off_by_one(self):
        """The same transaction against a higher price is a mismatch."""
        fetcher = MagicMock(return_value=FetchResult.success(deposit_tx(function_args=deposit_args(amount=99999))))

        result = self.call(fetcher)

        assert result.ok is False
        assert result.reason == VerificationReason.MISMATCH
        assert result.note == "amount mismatch"

    @pytest.mark.parametrize("fetch_reason,expected", [
        (FetchReason.NOT_FOUND, VerificationReason.NOT_FOUND),
        (FetchReason.TIMEOUT, VerificationReason.TIMEOUT),
        (FetchReason.RATE_LIMITED, VerificationReason.RATE_LIMITED),
        (FetchReason.API_ERROR, VerificationReason.API_ERROR),
    ])
    def test_fetch_failures_propagate(self, fetch_reason, expected):
        """Ledger fetch failures surface with the same reason."""
        fetcher = MagicMock(return_value=FetchResult.failure(fetch_reason, "detail"))

        result = self.call(fetcher)

        assert result.reason == expected
        assert result.note == "detail"

    def test_single_ledger_call(self):
        """Retryable failures are not retried internally."""
        fetcher = MagicMock(return_value=FetchResult.failure(FetchReason.TIMEOUT, "slow"))

        self.call(fetcher)

        assert fetcher.call_count == 1

    @patch("app.x402.verifier.fetch_transaction")
    def test_default_fetcher(self, mock_fetch):
        """The Stacks API client is used when no fetcher is given."""
        mock_fetch.return_value = FetchResult.success(deposit_tx(tx_status="pending"))

        result = self.call(None)

        assert result.reason == VerificationReason.PENDING
        mock_fetch.assert_called_once_with(TXID, "testnet", timeout=None)
