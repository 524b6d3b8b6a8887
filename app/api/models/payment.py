# app/api/models/payment.py
from pydantic import BaseModel, Field, PositiveInt, field_validator
from typing import Optional, Dict, Any, Literal

from app.core.config import CONTRACT_NAME_PATTERN, STACKS_ADDRESS_PATTERN

Network = Literal["devnet", "testnet", "mainnet"]


class EscrowTarget(BaseModel):
    """The escrow contract instance a deposit must be made to."""
    address: str = Field(..., description="Deployer address of the escrow contract")
    name: str = Field(..., description="Contract name", examples=["refund-escrow"])

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not STACKS_ADDRESS_PATTERN.match(v):
            raise ValueError(f"Not a Stacks address: {v!r}")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not CONTRACT_NAME_PATTERN.match(v) or len(v) > 128:
            raise ValueError(f"Not a valid contract name: {v!r}")
        return v

    @property
    def contract_id(self) -> str:
        return f"{self.address}.{self.name}"


class RefundPolicy(BaseModel):
    """Refund terms: the escrow entry becomes refundable once expiry elapses."""
    type: Literal["escrow-timeout"] = "escrow-timeout"
    expirySeconds: int
    refundAfter: Literal["expiry"] = "expiry"
    note: str = "Client deposits to escrow; refund available after expiry."


class PaymentChallenge(BaseModel):
    """
    Body of a 402 Payment Required response.

    Describes what must be deposited, to which escrow contract, and how the
    deposit will be verified.
    """
    paymentRequired: bool = True
    paymentId: str = Field(..., description="64 lowercase hex chars; the deposit's payment-id argument")
    amount: PositiveInt = Field(..., description="Required deposit in micro-STX")
    network: Network
    escrow: EscrowTarget
    contractId: str = Field(..., description="address.name of the escrow contract")
    depositFunction: str = "deposit"
    provider: str = Field(..., description="Principal that receives the funds on claim")
    expiry: int = Field(..., description="Seconds until the escrow entry becomes refundable")
    refundPolicy: RefundPolicy
    resource: str = Field(..., description="Route this challenge gates")
    issuedAt: str = Field(..., description="ISO-8601 UTC issuance time")
    proofHeader: str = Field(..., description="Header carrying the payment proof on retry")

    class Config:
        json_schema_extra = {
            "example": {
                "paymentRequired": True,
                "paymentId": "5f1c0d2b8e6a4f3c9b7d2e1a0c8f6e4d3b2a19087f6e5d4c3b2a1908f7e6d5c4",
                "amount": 100000,
                "network": "testnet",
                "escrow": {"address": "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM", "name": "refund-escrow"},
                "contractId": "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM.refund-escrow",
                "depositFunction": "deposit",
                "provider": "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM",
                "expiry": 90,
                "refundPolicy": {
                    "type": "escrow-timeout",
                    "expirySeconds": 90,
                    "refundAfter": "expiry",
                    "note": "Client deposits to escrow; refund available after expiry."
                },
                "resource": "/api/v1/premium",
                "issuedAt": "2026-01-01T00:00:00+00:00",
                "proofHeader": "X402-Payment"
            }
        }


class FulfillmentReceipt(BaseModel):
    """Response for a fulfilled request; receiptHash covers every other field."""
    premium: bool = True
    message: str
    paymentId: Optional[str] = None
    settlementRef: Optional[str] = None
    timestamp: str
    receiptHash: str


class ReceiptVerifyResponse(BaseModel):
    """Result of recomputing a receipt hash."""
    valid: bool
    expectedHash: str
    receiptHash: Optional[str] = None


class EscrowStatusResponse(BaseModel):
    """Read-only view of an escrow entry as recorded on the ledger."""
    paymentId: str
    contractId: str
    network: Network
    status: Literal["active", "expired", "claimed", "refunded"]
    currentHeight: Optional[int] = Field(default=None, description="Escrow contract height at lookup time")
    isExpired: bool = Field(default=False, description="True once the current height reaches the entry's expiry-height")
    escrow: Dict[str, Any] = Field(default_factory=dict, description="Decoded escrow entry fields")
