# src/wish_fountain/main.py
"""Main entry point for the Wish Fountain application."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wish_fountain.api.v1 import fountain_router, realtime_router, stats_router
from wish_fountain.core.settings import settings
from wish_fountain.services.chain import get_rpc_client
from wish_fountain.services.errors import FountainError
from wish_fountain.services.fountain import get_session_manager
from wish_fountain.services.presence import get_presence_hub
from wish_fountain.services.session_store import get_session_store

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DESCRIPTION = "Provably-fair wishing fountain backed by on-chain token burns"

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description=DESCRIPTION,
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Include API routers
app.include_router(fountain_router, prefix="/api")
app.include_router(stats_router, prefix="/api")
app.include_router(realtime_router)


@app.exception_handler(FountainError)
async def fountain_error_handler(request: Request, exc: FountainError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, **exc.details()},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": f"{location}: {message}" if location else message},
    )


@app.on_event("startup")
async def on_startup() -> None:
    await get_presence_hub().start()
    logger.info(
        "%s %s started (store=%s, payouts=%s, mode=%s)",
        settings.app_name,
        settings.app_version,
        settings.store_backend,
        "enabled" if settings.payouts_enabled else "disabled",
        settings.payout_mode,
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await get_session_manager().drain()
    await get_presence_hub().stop()
    await get_rpc_client().close()
    await get_session_store().close()


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint reporting store reachability and RPC call metrics."""
    store_ok = await get_session_store().ping()
    return {
        "status": "ok" if store_ok else "degraded",
        "store": store_ok,
        "rpc": get_rpc_client().get_metrics(),
    }


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": DESCRIPTION,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("wish_fountain.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
