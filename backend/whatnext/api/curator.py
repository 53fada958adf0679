"""
curator.py

Single-item curation decisions and catalog coverage reports.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from whatnext.api.auth import verify_admin_key
from whatnext.api.deps import get_curator
from whatnext.schemas import CurationDecisionResponse, CuratorStatsRequest, EvaluateRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/evaluate", response_model=CurationDecisionResponse)
def evaluate(request: EvaluateRequest, x_admin_key: Optional[str] = Header(None), curator=Depends(get_curator)):
    verify_admin_key(request.admin_key, x_admin_key)
    if not request.movie_data:
        raise HTTPException(status_code=400, detail="movieData is required")
    return curator.evaluate_movie(request.movie_data, request.source or "manual").to_dict()


@router.post("/stats")
def curator_stats(request: CuratorStatsRequest, x_admin_key: Optional[str] = Header(None), curator=Depends(get_curator)):
    verify_admin_key(request.admin_key, x_admin_key)
    try:
        return curator.get_stats(request.days)
    except Exception as e:
        logger.exception("Curator stats failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/suggestions")
def suggestions(curator=Depends(get_curator)):
    try:
        return curator.get_suggestions()
    except Exception as e:
        logger.exception("Curator suggestions failed")
        raise HTTPException(status_code=500, detail=str(e))
