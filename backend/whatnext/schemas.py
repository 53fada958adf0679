"""
schemas.py

Pydantic request/response schemas for the HTTP API. Field names are
snake_case in Python and camelCase on the wire.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AdminRequest(CamelModel):
    admin_key: Optional[str] = Field(None, alias="adminKey")


class SearchRequest(CamelModel):
    query: Optional[str] = None
    limit: int = Field(20, ge=1, le=100)


class RecommendRequest(CamelModel):
    loved: List[str] = Field(default_factory=list)
    liked: List[str] = Field(default_factory=list)
    disliked: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    min_year: Optional[int] = Field(None, alias="minYear")
    max_year: Optional[int] = Field(None, alias="maxYear")
    max_runtime: Optional[int] = Field(None, alias="maxRuntime")
    min_rating: Optional[float] = Field(None, alias="minRating")
    top_k: int = Field(10, ge=1, le=50, alias="topK")


class ProcessRequest(AdminRequest):
    movie_ids: Optional[List[int]] = Field(None, alias="movieIds")
    sync: bool = False


class EvaluateRequest(AdminRequest):
    movie_data: Optional[Dict[str, Any]] = Field(None, alias="movieData")
    source: str = "manual"


class CuratorStatsRequest(AdminRequest):
    days: int = Field(7, ge=1, le=365)


class AddToQueueRequest(AdminRequest):
    movie_ids: Optional[List[int]] = Field(None, alias="movieIds")
    priority: int = 0


class ProcessQueueRequest(AdminRequest):
    batch_size: int = Field(10, ge=1, le=100, alias="batchSize")
    max_movies: Optional[int] = Field(None, ge=1, alias="maxMovies")


class ClearQueueRequest(AdminRequest):
    clear_type: str = Field("all", alias="clearType")


class FixMappingsRequest(AdminRequest):
    movie_ids: Optional[List[int]] = Field(None, alias="movieIds")


class EnrichRequest(AdminRequest):
    limit: int = Field(50, ge=1, le=500)


class CurationDecisionResponse(BaseModel):
    action: str
    reason: str
    score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
