"""REST API for the purchase and settlement service.

This module provides HTTP endpoints for:
- Creating listings and shared links
- Buying listings and paying for monetized links with x402 payment proofs
- Saving shared content to a user's drive
- Managing affiliates and settling their commissions
- Reading transaction history and re-granting purchased content
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic_core import to_jsonable_python
from starlette.requests import Request

from ledger.errors import SettlementError

from .services import Services

logger = logging.getLogger(__name__)


def serialize(value: Any) -> Any:
    """Convert models, Decimals and datetimes to JSON-ready values.

    Amounts become strings so no precision is lost.
    """
    return to_jsonable_python(value)


def create_app(services: Services) -> FastAPI:
    """Create the API application around a built service container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting settlement API...")
        yield
        logger.info("Shutting down settlement API...")
        await services.store.close()

    app = FastAPI(
        title="Settlement API",
        description="Purchases, shared links and affiliate commissions paid in USDC",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-payment-response"],
    )

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        if exc.kind.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind.code}: {exc.message}")
        else:
            logger.debug(f"{request.method} {request.url.path} rejected: {exc.kind.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.kind.http_status,
            content=serialize(exc.to_dict())
        )

    @app.get("/")
    async def root():
        """Service summary."""
        return {
            "service": "settlement",
            "network": services.network,
            "settlement_enabled": services.gateway is not None
        }

    from .affiliates import router as affiliates_router
    from .listings import router as listings_router
    from .profile import router as profile_router
    from .shared_links import router as shared_links_router
    from .transactions import router as transactions_router

    app.include_router(listings_router)
    app.include_router(shared_links_router)
    app.include_router(affiliates_router)
    app.include_router(transactions_router)
    app.include_router(profile_router)

    return app


__all__ = ['create_app', 'serialize', 'Services']
