"""Health and readiness checks for the mirror service."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "healthy", "service": "fieldsync"}


@router.get("/ready")
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {
        "status": "ready",
        "service": "fieldsync",
        "remote_configured": settings.remote_configured,
        "jobs": hasattr(request.app.state, "jobs"),
    }
