from sqlalchemy import Column, Integer, Float, String, Text, DateTime, JSON

from reeru.database import Base
from reeru.models.clip_job import utcnow


class UserShort(Base):
    """A finished clip saved to the user's library"""

    __tablename__ = "user_shorts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    job_id = Column(String(64), nullable=False, index=True)
    short_id = Column(String(255), nullable=False)

    title = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    virality_score = Column(Float, nullable=True)
    captions = Column(JSON, nullable=True)  # per-platform publication captions
    download_url = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "short_id": self.short_id,
            "title": self.title,
            "description": self.description or "",
            "virality_score": self.virality_score,
            "captions": self.captions or {},
            "download_url": self.download_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
