from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, CheckConstraint

from reeru.database import Base
from reeru.models.clip_job import utcnow


class TokenAccount(Base):
    """Per-user token balance and the single-flight processing flag."""

    __tablename__ = "token_accounts"
    __table_args__ = (CheckConstraint("token_count >= 0", name="ck_token_count_non_negative"),)

    user_id = Column(String(255), primary_key=True)
    token_count = Column(Integer, nullable=False, default=0)
    is_processing = Column(Boolean, nullable=False, default=False)

    # Linked Telegram chat, used to resolve bot submissions to a user
    telegram_chat_id = Column(BigInteger, nullable=True, unique=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
