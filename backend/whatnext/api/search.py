"""
search.py

Semantic search and preference-based recommendations.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from whatnext.api.deps import get_recommendation_service
from whatnext.schemas import RecommendRequest, SearchRequest
from whatnext.services.recommendations import UserPreferences

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/search")
async def search(request: SearchRequest, service=Depends(get_recommendation_service)):
    query = (request.query or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    try:
        result = await service.search_movies(query, request.limit)
        return {"query": query, **result}
    except Exception as e:
        logger.exception("Search failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/recommend")
async def recommend(request: RecommendRequest, service=Depends(get_recommendation_service)):
    prefs = UserPreferences(
        loved=request.loved,
        liked=request.liked,
        disliked=request.disliked,
        genres=request.genres,
        min_year=request.min_year,
        max_year=request.max_year,
        max_runtime=request.max_runtime,
        min_rating=request.min_rating,
        languages=request.languages,
    )
    try:
        return await service.get_recommendations(prefs, request.top_k)
    except Exception as e:
        logger.exception("Recommendation failed")
        raise HTTPException(status_code=500, detail=str(e))
