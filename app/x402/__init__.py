# app/x402/__init__.py
"""
x402 escrow payment protocol.

Gates resources behind HTTP 402 challenges that are settled by a deposit
into a Stacks escrow contract, then re-validated against the ledger before
the resource is released.

Key components:
- payment_id: payment identifier derivation and hex normalization
- challenge: 402 challenge construction
- proof: X402-Payment proof decoding and validation
- verifier: on-chain deposit verification with a closed failure taxonomy
- receipt: deterministic fulfillment receipt hashes
- escrow: read-only escrow status lookups
- middleware: FastAPI middleware tying the above together
- audit: JSON-lines audit log of payment decisions

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
