from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadimport.api import health, lead_imports
from leadimport.config import settings
from leadimport.db import Base, engine
from leadimport.errors import LeadImportError
from leadimport.models import contact, import_batch, oauth_state, spreadsheet_connection  # noqa: F401

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Lead Import API")

# CORS setup
origins = [settings.frontend_origin]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LeadImportError)
async def lead_import_error_handler(request: Request, exc: LeadImportError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, **exc.details},
    )


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    if settings.database_url.startswith("sqlite"):
        # Local SQLite has no migration history; build the schema directly
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[Startup] Created SQLite schema")
    else:
        logger.info("[Startup] Using Alembic for database migrations")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    await engine.dispose()


# Include API routers
app.include_router(health.router)
app.include_router(lead_imports.router)
