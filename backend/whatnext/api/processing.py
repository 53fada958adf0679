"""
processing.py

Admin triggers for the vectorization pipeline and its repair utilities.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from whatnext.api.auth import verify_admin_key
from whatnext.api.deps import get_mapping_fixer, get_orchestrator, get_process_dispatcher
from whatnext.schemas import AdminRequest, EnrichRequest, FixMappingsRequest, ProcessRequest

router = APIRouter()
logger = logging.getLogger(__name__)

ASYNC_WARNING = (
    "Processing runs in the background and completion is not guaranteed; "
    "use sync=true for exact counts or check /stats later."
)


@router.post("/process")
async def process(
    request: ProcessRequest,
    x_admin_key: Optional[str] = Header(None),
    orchestrator=Depends(get_orchestrator),
    dispatch=Depends(get_process_dispatcher),
):
    verify_admin_key(request.admin_key, x_admin_key)
    try:
        if request.sync:
            result = await orchestrator.process_movies(request.movie_ids)
            return {"success": True, "result": result.to_dict()}
        task_id = dispatch(request.movie_ids)
        return {
            "success": True,
            "message": "Processing started",
            "task_id": task_id,
            "warning": ASYNC_WARNING,
        }
    except Exception as e:
        logger.exception("Process trigger failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/reprocess")
async def reprocess(request: AdminRequest, x_admin_key: Optional[str] = Header(None), orchestrator=Depends(get_orchestrator)):
    verify_admin_key(request.admin_key, x_admin_key)
    try:
        result = await orchestrator.reprocess_failed_movies()
        return {"success": True, "result": result.to_dict()}
    except Exception as e:
        logger.exception("Reprocess failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/enrich")
async def enrich(request: EnrichRequest, x_admin_key: Optional[str] = Header(None), orchestrator=Depends(get_orchestrator)):
    verify_admin_key(request.admin_key, x_admin_key)
    try:
        return {"success": True, "result": await orchestrator.enrich_existing_movies(request.limit)}
    except Exception as e:
        logger.exception("Enrichment failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/fix-mappings")
async def fix_mappings(request: FixMappingsRequest, x_admin_key: Optional[str] = Header(None), fixer=Depends(get_mapping_fixer)):
    verify_admin_key(request.admin_key, x_admin_key)
    try:
        result = await fixer.fix_mappings(request.movie_ids)
        response = {"success": True, "result": result}
        if request.movie_ids:
            response["verification"] = fixer.verify_fix(request.movie_ids)
        return response
    except Exception as e:
        logger.exception("Mapping fix failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/fix-status")
def fix_status(fixer=Depends(get_mapping_fixer)):
    return fixer.get_fix_status()
