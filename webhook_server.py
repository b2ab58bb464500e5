"""
FastAPI server for the BountyVault settlement service
Mounts the settlement, crypto, dispute, admin and provider webhook routes.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from caching.simple_cache import SessionStore
from config import Config
from database import SessionLocal, create_tables, check_connection
from routes.admin import router as admin_router
from routes.common import get_crypto_service, get_payment_service
from routes.crypto import router as crypto_router
from routes.disputes import router as disputes_router
from routes.settlement import router as settlement_router
from routes.webhooks import router as webhooks_router
from services.crypto_settlement_service import CryptoSettlementService
from services.payment_service import PaymentService
from utils.exceptions import SettlementError

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def initialize_database() -> None:
    """Create tables and install default reference data"""
    create_tables()
    session = SessionLocal()
    try:
        CryptoSettlementService.seed_default_networks(session)
        PaymentService.seed_default_payment_methods(session)
    finally:
        session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🔧 Settlement server starting...")
    Config.validate()
    Config.log_environment_config()
    initialize_database()
    app.state.started_at = time.time()
    logger.info("✅ Settlement server ready")

    yield

    logger.info("🔄 Settlement server shutting down...")


def create_app(init_database: bool = True) -> FastAPI:
    app = FastAPI(
        title="BountyVault Settlement Service",
        description="Escrow, payouts, deposits and crypto settlement for the bug bounty marketplace",
        lifespan=lifespan if init_database else None,
    )
    app.state.session_store = SessionStore(ttl_seconds=Config.ADMIN_SESSION_TTL_SECONDS)
    app.state.started_at = time.time()

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        if exc.status_code >= 500:
            logger.error(f"❌ {type(exc).__name__}: {request.method} {request.url.path}: {exc.reason}")
        else:
            logger.info(f"⚠️ {type(exc).__name__}: {request.method} {request.url.path}: {exc.reason}")
        return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)

    @app.get("/health")
    async def health_check(
        payments: PaymentService = Depends(get_payment_service),
        crypto: CryptoSettlementService = Depends(get_crypto_service),
    ):
        """Health check endpoint; unconfigured providers are reported but do not fail it"""
        database_ok = check_connection()
        body = {
            "status": "healthy" if database_ok else "degraded",
            "service": "bountyvault-settlement",
            "database": database_ok,
            "providers": {
                "stripe": bool(payments.stripe.is_available()),
                "binance_pay": bool(crypto.binance.is_available()),
            },
            "uptime_seconds": round(time.time() - app.state.started_at, 2),
        }
        return JSONResponse(content=body, status_code=200 if database_ok else 503)

    app.include_router(settlement_router)
    app.include_router(crypto_router)
    app.include_router(disputes_router)
    app.include_router(admin_router)
    app.include_router(webhooks_router)
    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run("webhook_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
