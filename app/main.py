# app/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.api.endpoints import premium, escrow, receipts
from app.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# Payment gate for protected endpoints (see app.x402.middleware.PROTECTED_ENDPOINTS)
app.add_middleware(X402Middleware)

# Added last so it wraps the payment gate and 402 responses carry CORS headers
origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-PAYMENT-RESPONSE", "Retry-After"],
)

# The prefix ensures all routes start with /api/v1
app.include_router(premium.router, prefix=settings.API_V1_STR, tags=["premium"])
app.include_router(escrow.router, prefix=f"{settings.API_V1_STR}/escrow", tags=["escrow"])
app.include_router(receipts.router, prefix=f"{settings.API_V1_STR}/receipts", tags=["receipts"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

@app.get("/health", summary="Liveness", tags=["default"])
def health():
    return {
        "ok": True,
        "x402Enabled": settings.X402_ENABLED,
        "network": settings.STACKS_NETWORK,
        "escrow": f"{settings.ESCROW_CONTRACT_ADDRESS}.{settings.ESCROW_CONTRACT_NAME}",
    }

logger.info(
    f"{settings.PROJECT_NAME}: escrow {settings.ESCROW_CONTRACT_ADDRESS}.{settings.ESCROW_CONTRACT_NAME} "
    f"on {settings.STACKS_NETWORK}, price {settings.X402_PRICE_USTX} uSTX, expiry {settings.X402_EXPIRY_SECONDS}s"
)
