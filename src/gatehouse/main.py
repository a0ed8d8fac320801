# src/gatehouse/main.py
"""Main entry point for the Gatehouse application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from gatehouse.api.v1 import challenge_router, session_router
from gatehouse.core.settings import settings
from gatehouse.db.session import create_tables
from gatehouse.services.sweeper import SweepWorker, get_expiry_sweeper

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Session quotas, request fingerprinting and resource-load challenges",
    version=settings.app_version,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(session_router, prefix="/api/v1")
app.include_router(challenge_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    # Raises ConfigurationError and aborts startup on an unsafe production config
    settings.validate_runtime()
    if settings.is_development:
        create_tables()

    if settings.sweep_interval_seconds > 0:
        worker = SweepWorker(get_expiry_sweeper())
        await worker.start()
        app.state.sweep_worker = worker
    else:
        app.state.sweep_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: SweepWorker | None = getattr(app.state, "sweep_worker", None)
    if worker:
        await worker.stop()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gatehouse.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
