"""
Job submission: validate, reserve the user's single processing slot, create
the job, take a token, and hand the job to the background dispatch backend.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reeru.errors import AlreadyProcessing, DispatchError, InsufficientBalance, Unauthorized
from reeru.models.clip_job import JOB_FAILED
from reeru.services import job_store, token_ledger
from reeru.services.dispatch import JobDispatchBackend
from reeru.utils.logger import get_logger
from reeru.utils.metrics import inc
from reeru.utils.url_validator import VideoURLValidator

logger = get_logger("dispatcher")

STATUS_URL_TEMPLATE = "/api/klap/status/{job_id}"


@dataclass(frozen=True)
class Submission:
    job_id: str
    user_id: str

    @property
    def check_status_url(self) -> str:
        return STATUS_URL_TEMPLATE.format(job_id=self.job_id)


class JobDispatcher:
    def __init__(self, backend: JobDispatchBackend):
        self.backend = backend

    async def resolve_user(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        chat_id: Optional[int],
    ) -> str:
        if user_id:
            return user_id
        if chat_id is not None:
            found = await token_ledger.resolve_user_id(db, chat_id)
            if not found:
                raise Unauthorized("Telegram account not linked")
            return found
        raise Unauthorized()

    async def submit(
        self,
        db: AsyncSession,
        video_url: Optional[str],
        user_id: Optional[str] = None,
        chat_id: Optional[int] = None,
    ) -> Submission:
        video_url = VideoURLValidator.validate(video_url)
        user_id = await self.resolve_user(db, user_id, chat_id)

        if await token_ledger.get_balance(db, user_id) <= 0:
            inc("submit.rejected.balance")
            raise InsufficientBalance()

        if not await token_ledger.claim_processing(db, user_id):
            inc("submit.rejected.busy")
            raise AlreadyProcessing()

        job_id = None
        try:
            job = await job_store.create_job(db, user_id, video_url, chat_id)
            job_id = job.id
            if not await token_ledger.deduct_token(db, user_id):
                # Balance was spent elsewhere between the check and the deduction
                raise InsufficientBalance()
        except Exception as e:
            await db.rollback()
            try:
                # A committed job without its token must never reach the worker
                if job_id is not None:
                    error = "Insufficient tokens" if isinstance(e, InsufficientBalance) else "Submission failed"
                    await job_store.finalize_job(db, job_id, JOB_FAILED, error=error)
                    logger.error(
                        "submit.job_abandoned",
                        extra={"job_id": job_id, "user_id": user_id, "error": f"{type(e).__name__}: {e}"[:500]},
                    )
            finally:
                await token_ledger.release_processing(db, user_id)
            raise

        submission = Submission(job_id=job_id, user_id=user_id)
        inc("submit.accepted")
        await self._dispatch(submission)
        return submission

    async def _dispatch(self, submission: Submission) -> None:
        """A failed hand-off leaves the job pending for the sweep to pick up."""
        try:
            await self.backend.dispatch(submission.job_id)
        except DispatchError as e:
            inc("dispatch.failed")
            logger.error(
                "dispatch.failed",
                extra={"job_id": submission.job_id, "backend": self.backend.name, "error": e.message},
            )
