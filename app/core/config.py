# app/core/config.py
import re
from typing import Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, PositiveInt, field_validator # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# c32 alphabet used by Stacks addresses (no I, L, O, U)
STACKS_ADDRESS_PATTERN = re.compile(r"^S[0123456789ABCDEFGHJKMNPQRSTVWXYZ]{27,40}$")
CONTRACT_NAME_PATTERN = re.compile(r"^[a-zA-Z]([a-zA-Z0-9]|[-_])*$")

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 RefundShield"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    BACKEND_CORS_ORIGINS: str = "*"  # comma-separated

    # Payment gate
    X402_ENABLED: bool = True
    X402_PRICE_USTX: PositiveInt = 100000
    X402_EXPIRY_SECONDS: PositiveInt = 90
    X402_RETRY_AFTER_SECONDS: PositiveInt = 5
    X402_SIMULATE_FAILURE: bool = False

    # Ledger
    STACKS_NETWORK: Literal["devnet", "testnet", "mainnet"] = "testnet"
    STACKS_API_URL: Optional[AnyHttpUrl] = None  # overrides the per-network default
    STACKS_API_KEY: Optional[str] = None
    STACKS_API_TIMEOUT_SECONDS: float = 5.0

    # Escrow contract
    ESCROW_CONTRACT_ADDRESS: str = "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"
    ESCROW_CONTRACT_NAME: str = "refund-escrow"
    X402_PROVIDER_ADDRESS: Optional[str] = None  # defaults to the escrow deployer

    # Audit log
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    @field_validator("ESCROW_CONTRACT_ADDRESS")
    @classmethod
    def validate_escrow_address(cls, v: str) -> str:
        if not STACKS_ADDRESS_PATTERN.match(v):
            raise ValueError(f"ESCROW_CONTRACT_ADDRESS is not a Stacks address: {v!r}")
        return v

    @field_validator("ESCROW_CONTRACT_NAME")
    @classmethod
    def validate_escrow_name(cls, v: str) -> str:
        if not CONTRACT_NAME_PATTERN.match(v) or len(v) > 128:
            raise ValueError(f"ESCROW_CONTRACT_NAME is not a valid contract name: {v!r}")
        return v

    @field_validator("STACKS_API_TIMEOUT_SECONDS")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("STACKS_API_TIMEOUT_SECONDS must be positive")
        return v

    @property
    def provider_address(self) -> str:
        return self.X402_PROVIDER_ADDRESS or self.ESCROW_CONTRACT_ADDRESS

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
