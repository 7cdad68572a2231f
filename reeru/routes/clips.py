from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from reeru.config import get_settings
from reeru.database import get_db
from reeru.errors import JobNotFound
from reeru.middleware.auth import get_optional_user_id, get_telegram_chat_id, require_worker_caller
from reeru.schemas.clips import (
    JobStatusResponse,
    SubmitRequest,
    SubmitResponse,
    WorkerRequest,
    WorkerResponse,
)
from reeru.services import job_store
from reeru.services.dispatcher import JobDispatcher
from reeru.utils.logger import logger
from reeru.worker import WorkerContext, process_clip_job

router = APIRouter()


def submitter_key(request: Request) -> str:
    """Rate limit per caller identity, falling back to the client address."""
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    chat_id = request.headers.get("x-telegram-chat-id")
    if chat_id:
        return f"chat:{chat_id}"
    return get_remote_address(request)


def submit_limit() -> str:
    return get_settings().submit_rate_limit


limiter = Limiter(key_func=submitter_key)


@router.post("/initiate", status_code=202, response_model=SubmitResponse)
@limiter.limit(submit_limit)
async def initiate_job(
    request: Request,
    data: SubmitRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    chat_id: Optional[int] = Depends(get_telegram_chat_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Start clip generation for a YouTube video.

    Returns a jobId immediately; poll checkStatusUrl for progress and the
    final result.
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    submission = await dispatcher.submit(db, data.video_url, user_id=user_id, chat_id=chat_id)
    return SubmitResponse(jobId=submission.job_id, checkStatusUrl=submission.check_status_url)


@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, db: AsyncSession = Depends(get_db)):
    """Read-only view of the stored job record."""
    view = await job_store.get_job_view(db, job_id)
    if view is None:
        raise JobNotFound()
    return view


@router.post("/worker", response_model=WorkerResponse)
async def run_job(
    request: Request,
    data: WorkerRequest,
    caller: str = Depends(require_worker_caller),
):
    """
    Internal: run one job to completion. Called by QStash (signed) or by the
    direct dispatcher (shared secret). Redelivery of a job that already left
    pending is acknowledged without doing any work.
    """
    ctx: WorkerContext = request.app.state.worker
    logger.info("worker.delivery", extra={"job_id": data.jobId, "backend": caller})
    status = await process_clip_job(ctx, data.jobId)
    return WorkerResponse(success=True, jobId=data.jobId, status=status)
