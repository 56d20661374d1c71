"""REST API module for the marketplace.

This module provides HTTP endpoints for:
- Browsing, creating, cancelling and reporting listings
- Buying listings and mystery boxes with x402 payments
- Checking balances and payment history
- Admin review, pinning, tiers and pending transfer reconciliation

Every BazaarError raised below the routers is rendered as
``{"error": {"code", "message", "details"}}`` with its status code.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from errors import BazaarError
from marketplace import Marketplace, create_marketplace
from ratelimit import RateLimitExceededError

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


async def bazaar_error_handler(request: Request, exc: BazaarError) -> JSONResponse:
    """Render marketplace errors with their status code."""
    headers = {}
    if isinstance(exc, RateLimitExceededError):
        headers['Retry-After'] = str(int(exc.retry_after) + 1)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(marketplace: Optional[Marketplace] = None) -> FastAPI:
    """Create the FastAPI app.

    Args:
        marketplace: Prebuilt marketplace; when omitted one is built from
            settings.conf on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Initializing API...")
        owns_marketplace = getattr(app.state, 'marketplace', None) is None
        if owns_marketplace:
            # Import here so importing the api does not read settings
            from config import settings_conf, get_config_summary
            logger.info(get_config_summary(settings_conf))
            app.state.marketplace = await create_marketplace(settings_conf)

        yield

        logger.info("Shutting down API...")
        if owns_marketplace and settings_conf['storage_backend'] == 'postgres':
            from database import close as db_close
            await db_close()

    app = FastAPI(
        title="x402 Bazaar API",
        description="Marketplace for game items paid with USDC over x402",
        version=API_VERSION,
        lifespan=lifespan
    )
    if marketplace is not None:
        app.state.marketplace = marketplace

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BazaarError, bazaar_error_handler)

    from .listings import router as listings_router
    from .mystery_box import router as mystery_box_router
    from .accounts import router as accounts_router
    from .admin import router as admin_router

    app.include_router(listings_router)
    app.include_router(mystery_box_router)
    app.include_router(accounts_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root():
        return {
            "name": "x402 Bazaar API",
            "version": API_VERSION,
            "status": "running"
        }

    return app


app = create_app()

# Export public interface
__all__ = ['app', 'create_app', 'bazaar_error_handler']
