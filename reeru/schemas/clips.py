"""
Request/response bodies for the clip job API.

Field names follow the wire format the web app and the Telegram bot already
speak (camelCase responses, snake_case video_url).
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SubmitRequest(BaseModel):
    # Untyped so a missing or malformed URL surfaces as InvalidInput rather than a 422
    video_url: Any = None


class SubmitResponse(BaseModel):
    success: bool = True
    jobId: str
    message: str = "Video processing started"
    checkStatusUrl: str


class JobStatusResponse(BaseModel):
    jobId: str
    status: str
    progress: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    completedAt: Optional[str] = None


class WorkerRequest(BaseModel):
    jobId: str = Field(..., min_length=1, max_length=64)


class WorkerResponse(BaseModel):
    success: bool
    jobId: str
    status: str


class UserShortItem(BaseModel):
    id: int
    job_id: str
    short_id: str
    title: Optional[str] = None
    description: str = ""
    virality_score: Optional[float] = None
    captions: Dict[str, Any] = Field(default_factory=dict)
    download_url: str
    created_at: Optional[str] = None


class UserShortsResponse(BaseModel):
    shorts: List[UserShortItem]
