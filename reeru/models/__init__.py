# Database models package
from reeru.models.clip_job import ClipJob
from reeru.models.token_account import TokenAccount
from reeru.models.user_short import UserShort

__all__ = [
    "ClipJob",
    "TokenAccount",
    "UserShort",
]
