from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select, update

from reeru.errors import AlreadyProcessing, JobNotFound
from reeru.models.clip_job import ClipJob, JOB_COMPLETED, JOB_FAILED, JOB_PENDING, utcnow
from reeru.services import job_store, token_ledger, user_shorts
from reeru.services.aggregator import NO_CLIPS_ERROR
from reeru.services.dispatcher import JobDispatcher
from reeru.worker import build_worker_context, process_clip_job, sweep_pending_jobs

from conftest import RecordingDispatchBackend, no_sleep


@pytest.fixture
def worker(settings, database, http, gateway):
    return build_worker_context(
        settings.model_copy(update={"telegram_bot_token": "bot-token"}),
        database,
        http,
        gateway,
        sleep=no_sleep,
    )


async def _submit(database, user_id="user_1", chat_id=None):
    async with database.session() as db:
        await token_ledger.credit_tokens(db, user_id, 1)
        if chat_id is not None:
            await token_ledger.link_chat(db, user_id, chat_id)
        submission = await JobDispatcher(RecordingDispatchBackend()).submit(
            db, "https://youtu.be/abc123", user_id=user_id, chat_id=chat_id
        )
    return submission.job_id


async def _view(database, job_id):
    async with database.session() as db:
        return await job_store.get_job_view(db, job_id)


async def _is_processing(database, user_id="user_1"):
    async with database.session() as db:
        return await token_ledger.is_processing(db, user_id)


@pytest.mark.anyio
async def test_job_completes_and_fills_library(worker, database, fake_klap):
    job_id = await _submit(database, chat_id=321)

    assert await process_clip_job(worker, job_id) == JOB_COMPLETED

    view = await _view(database, job_id)
    assert view["status"] == JOB_COMPLETED
    assert view["progress"] == 100
    assert view["result"]["completed_shorts"] == 2
    assert view["result"]["best"]["id"] == "short_b"
    assert await _is_processing(database) is False

    async with database.session() as db:
        library = await user_shorts.list_user_shorts(db, "user_1")
    assert {short.short_id for short in library} == {"short_a", "short_b"}

    [message] = fake_klap.sent_to("api.telegram.org")
    body = fake_klap.body_of(message)
    assert body["chat_id"] == 321
    assert "Video Ready" in body["text"]
    assert "https://cdn.klap.app/short_b.mp4" in body["text"]


@pytest.mark.anyio
async def test_phase_one_timeout_fails_job_and_releases_guard(worker, database, fake_klap):
    fake_klap.task_statuses = ["processing"]
    job_id = await _submit(database, chat_id=321)

    assert await process_clip_job(worker, job_id) == JOB_FAILED

    view = await _view(database, job_id)
    assert view["status"] == JOB_FAILED
    assert view["error"] == "Video analysis timed out"
    assert view["result"] is None
    assert await _is_processing(database) is False
    [message] = fake_klap.sent_to("api.telegram.org")
    assert "Processing Failed" in fake_klap.body_of(message)["text"]


@pytest.mark.anyio
async def test_no_exported_clips_fails_job(worker, database, fake_klap):
    fake_klap.export_create_fail.update({"short_a", "short_b"})
    job_id = await _submit(database)

    assert await process_clip_job(worker, job_id) == JOB_FAILED

    view = await _view(database, job_id)
    assert view["error"] == NO_CLIPS_ERROR
    # No chat attached, nothing to notify
    assert fake_klap.sent_to("api.telegram.org") == []


@pytest.mark.anyio
async def test_duplicate_delivery_is_a_noop(worker, database, fake_klap):
    job_id = await _submit(database)
    await process_clip_job(worker, job_id)
    first = await _view(database, job_id)

    assert await process_clip_job(worker, job_id) == "skipped"

    assert fake_klap.count("POST", r"/tasks/video-to-shorts") == 1
    assert await _view(database, job_id) == first


@pytest.mark.anyio
async def test_abandoned_submission_never_runs(worker, database, fake_klap, monkeypatch):
    async with database.session() as db:
        await token_ledger.credit_tokens(db, "user_1", 2)

    async def broken_deduct(_db, _user_id):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(token_ledger, "deduct_token", broken_deduct)
    with pytest.raises(RuntimeError):
        async with database.session() as db:
            await JobDispatcher(RecordingDispatchBackend()).submit(db, "https://youtu.be/abc123", user_id="user_1")
    monkeypatch.undo()

    async with database.session() as db:
        [abandoned_id] = (await db.execute(select(ClipJob.id))).scalars().all()
        assert await job_store.list_pending_jobs(db) == []
        next_job = await JobDispatcher(RecordingDispatchBackend()).submit(
            db, "https://youtu.be/next", user_id="user_1"
        )

    assert await process_clip_job(worker, abandoned_id) == "skipped"

    assert fake_klap.count("POST", r"/tasks/video-to-shorts") == 0
    assert (await _view(database, next_job.job_id))["status"] == JOB_PENDING
    assert await _is_processing(database) is True
    async with database.session() as db:
        assert await token_ledger.get_balance(db, "user_1") == 1
        with pytest.raises(AlreadyProcessing):
            await JobDispatcher(RecordingDispatchBackend()).submit(db, "https://youtu.be/third", user_id="user_1")


@pytest.mark.anyio
async def test_unknown_job(worker):
    with pytest.raises(JobNotFound):
        await process_clip_job(worker, "job_0_doesnotexist")


@pytest.mark.anyio
async def test_unexpected_error_is_recorded(worker, database, monkeypatch):
    job_id = await _submit(database)

    async def explode(*args, **kwargs):
        raise RuntimeError("pipeline exploded")

    monkeypatch.setattr(worker.pipeline, "process", explode)

    assert await process_clip_job(worker, job_id) == JOB_FAILED
    assert (await _view(database, job_id))["error"] == "pipeline exploded"
    assert await _is_processing(database) is False


@pytest.mark.anyio
async def test_notification_failure_does_not_change_outcome(settings, database, gateway, fake_klap):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.telegram.org":
            return httpx.Response(500, json={"ok": False})
        return fake_klap.handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        worker = build_worker_context(
            settings.model_copy(update={"telegram_bot_token": "bot-token"}), database, http, gateway, sleep=no_sleep
        )
        job_id = await _submit(database, chat_id=321)
        assert await process_clip_job(worker, job_id) == JOB_COMPLETED

    assert (await _view(database, job_id))["status"] == JOB_COMPLETED


@pytest.mark.anyio
async def test_sweep_picks_up_only_stale_pending_jobs(worker, database):
    stale_id = await _submit(database, user_id="user_stale")
    fresh_id = await _submit(database, user_id="user_fresh")
    async with database.session() as db:
        await db.execute(
            update(ClipJob).where(ClipJob.id == stale_id).values(created_at=utcnow() - timedelta(minutes=10))
        )
        await db.commit()

    assert await sweep_pending_jobs(worker) == 1

    assert (await _view(database, stale_id))["status"] == JOB_COMPLETED
    assert (await _view(database, fresh_id))["status"] == JOB_PENDING
