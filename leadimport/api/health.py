from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.config import settings
from leadimport.db import get_db

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/")
@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "message": "Service is running"}


@router.get("/connections")
async def test_connections(session: AsyncSession = Depends(get_db)):
    """Check the database and report whether Google OAuth is configured."""
    try:
        await session.execute(text("SELECT 1"))
        database = {"success": True, "error": None}
    except Exception as e:
        database = {"success": False, "error": e.__class__.__name__}

    return JSONResponse(
        content={
            "database": database,
            "google_oauth_configured": settings.google_configured,
        },
        status_code=200 if database["success"] else 503,
    )
