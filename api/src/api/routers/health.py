"""Health check."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from storefront.database import get_session

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "storefront-payments"}


@router.get("/health/ready")
async def readiness_check():
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "error": exc.__class__.__name__},
        )
