"""
Durable clip job records.

Usage:
    job = await job_store.create_job(db, user_id, video_url, chat_id)
    claimed = await job_store.mark_processing(db, job.id)
    await job_store.update_progress(db, job.id, 50)
    await job_store.finalize_job(db, job.id, "completed", result=result)

Status only moves forward (pending → processing → completed | failed). The
transitions are compare-and-set updates, so a duplicate delivery or a second
finalize call never rewrites a record.
"""
import random
import string
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from reeru.errors import Internal
from reeru.models.clip_job import (
    ClipJob,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_COMPLETED,
    JOB_FAILED,
    TERMINAL_STATUSES,
    utcnow,
)
from reeru.utils.logger import logger

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_job_id() -> str:
    """job_<epoch-ms>_<9 base36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"job_{int(time.time() * 1000)}_{suffix}"


async def create_job(
    db: AsyncSession,
    user_id: str,
    video_url: str,
    chat_id: Optional[int] = None,
) -> ClipJob:
    """Create a pending job and return it"""
    now = utcnow()
    job = ClipJob(
        id=generate_job_id(),
        user_id=user_id,
        video_url=video_url,
        chat_id=chat_id,
        status=JOB_PENDING,
        progress=0,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.commit()
    logger.info("job.created", extra={"job_id": job.id, "user_id": user_id, "chat_id": chat_id})
    return job


async def get_job(db: AsyncSession, job_id: str) -> Optional[ClipJob]:
    result = await db.execute(select(ClipJob).where(ClipJob.id == job_id))
    return result.scalar_one_or_none()


async def get_job_view(db: AsyncSession, job_id: str) -> Optional[Dict[str, Any]]:
    """Status payload for polling clients. Reads only the stored record."""
    job = await get_job(db, job_id)
    if job is None:
        return None
    return job.to_view()


async def mark_processing(db: AsyncSession, job_id: str) -> bool:
    """Move a pending job to processing. False if someone else already did."""
    result = await db.execute(
        update(ClipJob)
        .where(and_(ClipJob.id == job_id, ClipJob.status == JOB_PENDING))
        .values(status=JOB_PROCESSING, progress=0, updated_at=utcnow())
    )
    await db.commit()
    claimed = result.rowcount == 1
    if claimed:
        logger.info("job.processing", extra={"job_id": job_id})
    return claimed


async def update_progress(db: AsyncSession, job_id: str, progress: int) -> None:
    """Advisory progress, clamped to 0-100. Never lowers the stored value."""
    progress = max(0, min(int(progress), 100))
    await db.execute(
        update(ClipJob)
        .where(
            and_(
                ClipJob.id == job_id,
                ClipJob.status == JOB_PROCESSING,
                ClipJob.progress < progress,
            )
        )
        .values(progress=progress, updated_at=utcnow())
    )
    await db.commit()


async def finalize_job(
    db: AsyncSession,
    job_id: str,
    status: str,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> bool:
    """
    Move a job into a terminal state exactly once.

    Completed jobs carry only a result, failed jobs only an error. Returns
    False without touching the record when the job is already terminal.
    """
    if status == JOB_COMPLETED:
        if result is None:
            raise Internal("Completed job requires a result")
        values = {"status": JOB_COMPLETED, "progress": 100, "result_data": result, "error_message": None}
    elif status == JOB_FAILED:
        values = {"status": JOB_FAILED, "error_message": (error or "Unknown error")[:1000], "result_data": None}
    else:
        raise Internal(f"Not a terminal status: {status}")

    now = utcnow()
    outcome = await db.execute(
        update(ClipJob)
        .where(and_(ClipJob.id == job_id, ClipJob.status.not_in(TERMINAL_STATUSES)))
        .values(completed_at=now, updated_at=now, **values)
    )
    await db.commit()

    if outcome.rowcount != 1:
        logger.info("job.finalize_skipped", extra={"job_id": job_id, "status": status})
        return False

    if status == JOB_COMPLETED:
        logger.info("job.completed", extra={"job_id": job_id})
    else:
        logger.error("job.failed", extra={"job_id": job_id, "error": values["error_message"]})
    return True


async def list_pending_jobs(
    db: AsyncSession,
    older_than_seconds: int = 0,
    limit: int = 20,
) -> List[ClipJob]:
    """Pending jobs, oldest first. Used to pick up jobs whose dispatch was lost."""
    query = select(ClipJob).where(ClipJob.status == JOB_PENDING)
    if older_than_seconds > 0:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        query = query.where(ClipJob.created_at <= cutoff)
    result = await db.execute(query.order_by(ClipJob.created_at.asc()).limit(limit))
    return list(result.scalars().all())


async def cleanup_old_jobs(db: AsyncSession, max_age_hours: int = 72) -> int:
    """Delete completed/failed jobs older than max_age_hours. Returns count deleted."""
    cutoff = utcnow() - timedelta(hours=max_age_hours)
    result = await db.execute(
        delete(ClipJob).where(
            and_(
                ClipJob.status.in_(TERMINAL_STATUSES),
                ClipJob.completed_at < cutoff,
            )
        )
    )
    await db.commit()
    count = result.rowcount
    if count > 0:
        logger.info("job.cleanup", extra={"deleted": count})
    return count
