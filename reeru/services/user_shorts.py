"""User clip library: every exported short a user has received."""
from typing import List

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from reeru.models.user_short import UserShort
from reeru.services.conversion import EXPORT_DONE
from reeru.utils.logger import logger


async def add_job_shorts(db: AsyncSession, user_id: str, job_id: str, result: dict) -> int:
    """Save the exported shorts of a completed job. Returns how many were added."""
    added = 0
    for short in result.get("shorts", []):
        if short.get("export_status") != EXPORT_DONE or not short.get("download_url"):
            continue
        db.add(
            UserShort(
                user_id=user_id,
                job_id=job_id,
                short_id=str(short.get("id")),
                title=short.get("title"),
                description=short.get("description") or "",
                virality_score=short.get("virality_score"),
                captions=short.get("captions") or {},
                download_url=short["download_url"],
            )
        )
        added += 1
    if added:
        await db.commit()
        logger.info("library.shorts_added", extra={"user_id": user_id, "job_id": job_id, "completed": added})
    return added


async def list_user_shorts(db: AsyncSession, user_id: str, limit: int = 100) -> List[UserShort]:
    result = await db.execute(
        select(UserShort)
        .where(UserShort.user_id == user_id)
        .order_by(desc(UserShort.created_at), desc(UserShort.id))
        .limit(limit)
    )
    return list(result.scalars().all())
