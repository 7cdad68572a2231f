from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reeru.database import get_db
from reeru.errors import Unauthorized
from reeru.middleware.auth import get_optional_user_id
from reeru.schemas.clips import UserShortsResponse
from reeru.services import user_shorts

router = APIRouter()


@router.get("", response_model=UserShortsResponse)
async def list_shorts(
    limit: int = Query(100, ge=1, le=500),
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's finished clips, newest first."""
    if not user_id:
        raise Unauthorized()
    shorts = await user_shorts.list_user_shorts(db, user_id, limit=limit)
    return {"shorts": [short.to_dict() for short in shorts]}
