"""
Background clip worker.

Can run as:
  1. The /api/klap/worker route (QStash delivery, direct call, or inline task)
  2. Standalone sweeper (separate service): python -m reeru.worker

process_clip_job takes a pending job through the conversion pipeline and
writes its terminal state. The standalone process re-drives pending jobs whose
dispatch was lost and prunes old terminal jobs.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Awaitable

import httpx
from sqlalchemy.exc import SQLAlchemyError

from reeru.config import Settings, get_settings
from reeru.database import Database
from reeru.errors import JobNotFound, ReeruError
from reeru.models.clip_job import JOB_COMPLETED, JOB_FAILED
from reeru.services import job_store, token_ledger, user_shorts
from reeru.services.aggregator import JobOutcome, aggregate, apply_outcome
from reeru.services.conversion import ClipConversionPipeline
from reeru.services.gateway import ServiceGateway
from reeru.services.klap_client import KlapClient
from reeru.services.notifier import TelegramNotifier
from reeru.utils.logger import logger
from reeru.utils.metrics import in_flight, inc, observe

OUTCOME_SKIPPED = "skipped"


@dataclass
class WorkerContext:
    settings: Settings
    database: Database
    pipeline: ClipConversionPipeline
    notifier: TelegramNotifier


def build_worker_context(
    settings: Settings,
    database: Database,
    http: httpx.AsyncClient,
    gateway: ServiceGateway,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> WorkerContext:
    client = KlapClient(settings, http, gateway)
    return WorkerContext(
        settings=settings,
        database=database,
        pipeline=ClipConversionPipeline.from_settings(client, settings, sleep=sleep),
        notifier=TelegramNotifier(settings, http, gateway),
    )


async def process_clip_job(ctx: WorkerContext, job_id: str) -> str:
    """
    Run one job to a terminal state. Returns "completed", "failed" or
    "skipped" (job was not pending, e.g. a duplicate queue delivery).
    """
    async with ctx.database.session() as db:
        job = await job_store.get_job(db, job_id)
        if job is None:
            raise JobNotFound()
        if job.is_terminal or not await job_store.mark_processing(db, job_id):
            logger.info("worker.job_skipped", extra={"job_id": job_id, "status": job.status})
            return OUTCOME_SKIPPED
        user_id, video_url, chat_id = job.user_id, job.video_url, job.chat_id

    async def on_progress(progress: int) -> None:
        try:
            async with ctx.database.session() as pdb:
                await job_store.update_progress(pdb, job_id, progress)
        except SQLAlchemyError as e:
            logger.warning("worker.progress_failed", extra={"job_id": job_id, "error": str(e)[:200]})

    logger.info("worker.job_started", extra={"job_id": job_id, "user_id": user_id})
    started = time.monotonic()
    try:
        async with in_flight("worker.jobs_running"):
            fan_out = await ctx.pipeline.process(video_url, on_progress)
        outcome = aggregate(fan_out)
    except ReeruError as e:
        outcome = JobOutcome(status=JOB_FAILED, error=e.message)
    except Exception as e:
        logger.error(
            "worker.handler_error",
            extra={"job_id": job_id, "error": str(e)[:500], "error_type": type(e).__name__},
            exc_info=True,
        )
        outcome = JobOutcome(status=JOB_FAILED, error=str(e) or type(e).__name__)

    try:
        async with ctx.database.session() as db:
            written = await apply_outcome(db, job_id, outcome)
            if written and outcome.status == JOB_COMPLETED:
                await user_shorts.add_job_shorts(db, user_id, job_id, outcome.result)
    finally:
        async with ctx.database.session() as db:
            await token_ledger.release_processing(db, user_id)

    observe("worker.job.duration_ms", (time.monotonic() - started) * 1000)
    inc(f"worker.job.{outcome.status}")
    if written and chat_id is not None:
        if outcome.status == JOB_COMPLETED:
            await ctx.notifier.job_completed(chat_id, outcome.result)
        else:
            await ctx.notifier.job_failed(chat_id, outcome.error)

    return outcome.status if written else OUTCOME_SKIPPED


async def sweep_pending_jobs(ctx: WorkerContext, limit: int = 10) -> int:
    """Process pending jobs older than the grace period. Returns how many ran."""
    async with ctx.database.session() as db:
        stale = await job_store.list_pending_jobs(
            db,
            older_than_seconds=ctx.settings.pending_job_grace_seconds,
            limit=limit,
        )
        job_ids = [job.id for job in stale]

    processed = 0
    for job_id in job_ids:
        logger.info("worker.sweep_pickup", extra={"job_id": job_id})
        if await process_clip_job(ctx, job_id) != OUTCOME_SKIPPED:
            processed += 1
    return processed


async def worker_loop(ctx: WorkerContext, poll_interval: float = 30.0, max_idle_interval: float = 120.0) -> None:
    """
    Sweep for lost pending jobs with adaptive polling: back off while idle,
    reset when something was picked up.
    """
    current_interval = poll_interval
    logger.info("worker.started")

    while True:
        try:
            processed = await sweep_pending_jobs(ctx)
            if processed:
                current_interval = poll_interval
            else:
                current_interval = min(current_interval * 1.5, max_idle_interval)
        except SQLAlchemyError as exc:
            logger.error("worker.poll_error", extra={"error": str(exc)[:500]})
            current_interval = max_idle_interval

        await asyncio.sleep(current_interval)


async def run_cleanup(ctx: WorkerContext, interval_hours: int = 6) -> None:
    """Periodically clean up old completed/failed jobs."""
    while True:
        await asyncio.sleep(interval_hours * 3600)
        try:
            async with ctx.database.session() as db:
                await job_store.cleanup_old_jobs(db, max_age_hours=ctx.settings.job_retention_hours)
        except SQLAlchemyError as exc:
            logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})


async def main() -> None:
    """Run worker as standalone process."""
    settings = get_settings()
    database = Database(settings.database_url, echo=settings.debug)
    await database.open()

    async with httpx.AsyncClient() as http:
        ctx = build_worker_context(settings, database, http, ServiceGateway())
        try:
            await asyncio.gather(worker_loop(ctx), run_cleanup(ctx))
        finally:
            await database.close()


if __name__ == "__main__":
    asyncio.run(main())
