"""
queue.py

Processing-queue management: add, drain, clear, inspect.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from whatnext.api.auth import verify_admin_key
from whatnext.api.deps import get_orchestrator, get_queue_service
from whatnext.schemas import AddToQueueRequest, AdminRequest, ClearQueueRequest, ProcessQueueRequest
from whatnext.services.queue_service import CLEAR_TYPES

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/add-to-queue")
def add_to_queue(request: AddToQueueRequest, x_admin_key: Optional[str] = Header(None), queue=Depends(get_queue_service)):
    verify_admin_key(request.admin_key, x_admin_key)
    if not request.movie_ids:
        raise HTTPException(status_code=400, detail="movieIds is required")
    result = queue.add_to_queue(request.movie_ids, request.priority)
    return {"success": True, **result}


@router.post("/process-queue")
async def process_queue(
    request: ProcessQueueRequest,
    x_admin_key: Optional[str] = Header(None),
    queue=Depends(get_queue_service),
    orchestrator=Depends(get_orchestrator),
):
    verify_admin_key(request.admin_key, x_admin_key)
    limit = min(request.batch_size, request.max_movies or request.batch_size)
    try:
        ids = queue.get_next_batch(limit)
        if not ids:
            return {"success": True, "message": "Queue is empty", "processed": 0, "remaining": queue.get_queue_stats()}
        result = await orchestrator.process_movies(ids, source="queue")
        return {"success": True, "result": result.to_dict(), "remaining": queue.get_queue_stats()}
    except Exception as e:
        logger.exception("Queue processing failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/clear-queue")
def clear_queue(request: ClearQueueRequest, x_admin_key: Optional[str] = Header(None), queue=Depends(get_queue_service)):
    verify_admin_key(request.admin_key, x_admin_key)
    if request.clear_type not in CLEAR_TYPES:
        raise HTTPException(status_code=400, detail=f"clearType must be one of: {', '.join(CLEAR_TYPES)}")
    return {"success": True, "clear_type": request.clear_type, **queue.clear_queue(request.clear_type)}


@router.get("/queue-stats")
def queue_stats(queue=Depends(get_queue_service)):
    stats = queue.get_queue_stats()
    stats["recent_failures"] = queue.get_failed_items(limit=10)
    return stats


@router.post("/reset-failed")
def reset_failed(request: AdminRequest, x_admin_key: Optional[str] = Header(None), queue=Depends(get_queue_service)):
    verify_admin_key(request.admin_key, x_admin_key)
    return {"success": True, "reset": queue.reset_failed()}
