"""
status.py

Observability: pipeline statistics and health.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text

from whatnext.api.deps import get_orchestrator, get_store
from whatnext.core.database import SessionLocal
from whatnext.core.redis_client import get_redis
from whatnext.utils.timezone import utc_now

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/stats")
async def stats(orchestrator=Depends(get_orchestrator)):
    try:
        return await orchestrator.get_processing_stats()
    except Exception as e:
        logger.exception("Stats failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/health")
async def health_check(store=Depends(get_store)):
    """Redis, database and vector index must all answer."""
    try:
        await get_redis().ping()

        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        index = await asyncio.to_thread(store.describe)
        return {
            "status": "healthy",
            "vectors": index.get("total_vectors", 0),
            "timestamp": utc_now().isoformat(),
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")
