"""
Folds a job's fan-out into one terminal outcome.

Result shape stored on completed jobs:

    {
        "project_id": ..., "task_id": ...,
        "total_shorts": N, "completed_shorts": K, "partial": K < N,
        "shorts": [every candidate with its export_status],
        "best": highest virality_score among exported candidates,
    }

Every candidate is kept so callers can tell a full success from a partial one;
"best" is only a convenience for clients that show a single clip.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reeru.models.clip_job import JOB_COMPLETED, JOB_FAILED
from reeru.services import job_store
from reeru.services.conversion import EXPORT_DONE, CandidateResult, FanOutResult

NO_CLIPS_ERROR = "No clips could be exported"


@dataclass(frozen=True)
class JobOutcome:
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _score(candidate: CandidateResult) -> float:
    try:
        return float(candidate.virality_score)
    except (TypeError, ValueError):
        return float("-inf")


def select_best(fan_out: FanOutResult) -> Optional[CandidateResult]:
    """Highest virality score among exported clips; provider order breaks ties"""
    best = None
    for candidate in fan_out.candidates:
        if candidate.export_status != EXPORT_DONE:
            continue
        if best is None or _score(candidate) > _score(best):
            best = candidate
    return best


def aggregate(fan_out: FanOutResult) -> JobOutcome:
    done = [c for c in fan_out.candidates if c.export_status == EXPORT_DONE]
    if not done:
        return JobOutcome(status=JOB_FAILED, error=NO_CLIPS_ERROR)

    best = select_best(fan_out)
    total = len(fan_out.candidates)
    return JobOutcome(
        status=JOB_COMPLETED,
        result={
            "task_id": fan_out.task_id,
            "project_id": fan_out.project_id,
            "total_shorts": total,
            "completed_shorts": len(done),
            "partial": len(done) < total,
            "shorts": [c.to_dict() for c in fan_out.candidates],
            "best": best.to_dict() if best else None,
        },
    )


async def apply_outcome(db: AsyncSession, job_id: str, outcome: JobOutcome) -> bool:
    """Persist the outcome. No-op (False) when the job is already terminal."""
    return await job_store.finalize_job(
        db,
        job_id,
        outcome.status,
        result=outcome.result,
        error=outcome.error,
    )
