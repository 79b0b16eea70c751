"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from fieldcal.core.config import settings
from fieldcal.db.session import engine

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Field Calendar API",
    description="Worker availability, scheduling and Google Calendar sync",
    version=settings.VERSION,
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

# ============================================================================
# Routers
# ============================================================================

from fieldcal.routers import availability, calendar, integrations, internal  # noqa: E402

# Availability queries and conflict checks
app.include_router(availability.router, tags=["availability"])

# Events, time off, holds and calendar settings
app.include_router(calendar.router)

# Per-worker Google Calendar connection
app.include_router(integrations.router)

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
