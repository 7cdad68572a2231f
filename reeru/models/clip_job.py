"""
SQLAlchemy model for the clip_jobs table: one row per video-to-shorts request.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON

from reeru.database import Base

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClipJob(Base):
    __tablename__ = "clip_jobs"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    video_url = Column(Text, nullable=False)
    chat_id = Column(BigInteger, nullable=True)  # Telegram chat that asked for the clip

    # Status: pending → processing → completed | failed
    status = Column(String(20), nullable=False, default=JOB_PENDING, index=True)
    progress = Column(Integer, nullable=False, default=0)  # 0-100, advisory

    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_view(self) -> dict:
        """Client-facing status payload"""
        return {
            "jobId": self.id,
            "status": self.status,
            "progress": self.progress or 0,
            "result": self.result_data if self.status == JOB_COMPLETED else None,
            "error": self.error_message if self.status == JOB_FAILED else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
