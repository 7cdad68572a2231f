import pytest

from reeru.errors import AlreadyProcessing, InsufficientBalance, InvalidInput, Unauthorized
from reeru.models.clip_job import JOB_FAILED, JOB_PENDING, ClipJob
from reeru.services import job_store, token_ledger
from reeru.services.dispatcher import JobDispatcher
from reeru.utils.metrics import counter
from sqlalchemy import func, select

from conftest import RecordingDispatchBackend


async def _job_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(ClipJob))).scalar_one()


@pytest.mark.anyio
async def test_accepted_submission(db, recording_backend):
    await token_ledger.credit_tokens(db, "user_1", 1)
    dispatcher = JobDispatcher(recording_backend)

    submission = await dispatcher.submit(db, "https://youtu.be/abc123", user_id="user_1")

    view = await job_store.get_job_view(db, submission.job_id)
    assert view["status"] == JOB_PENDING
    assert view["progress"] == 0
    assert await token_ledger.get_balance(db, "user_1") == 0
    assert await token_ledger.is_processing(db, "user_1") is True
    assert recording_backend.dispatched == [submission.job_id]
    assert submission.check_status_url == f"/api/klap/status/{submission.job_id}"


@pytest.mark.anyio
async def test_zero_balance_rejected_without_side_effects(db, recording_backend):
    await token_ledger.ensure_account(db, "user_1", initial_tokens=0)
    dispatcher = JobDispatcher(recording_backend)

    with pytest.raises(InsufficientBalance):
        await dispatcher.submit(db, "https://youtu.be/abc123", user_id="user_1")

    assert await _job_count(db) == 0
    assert await token_ledger.is_processing(db, "user_1") is False
    assert recording_backend.dispatched == []


@pytest.mark.anyio
async def test_second_submission_while_processing(db, recording_backend):
    await token_ledger.credit_tokens(db, "user_1", 5)
    dispatcher = JobDispatcher(recording_backend)
    await dispatcher.submit(db, "https://youtu.be/first", user_id="user_1")

    with pytest.raises(AlreadyProcessing):
        await dispatcher.submit(db, "https://youtu.be/second", user_id="user_1")

    assert await _job_count(db) == 1
    assert await token_ledger.get_balance(db, "user_1") == 4
    assert counter("submit.rejected.busy") == 1


@pytest.mark.anyio
@pytest.mark.parametrize(
    "url, message",
    [
        (None, "Missing video_url"),
        ("   ", "Missing video_url"),
        ("https://vimeo.com/12345", "Currently only YouTube videos are supported"),
        (123, "Invalid video_url"),
        (["https://youtu.be/abc123"], "Invalid video_url"),
        ("https://youtu.be/" + "a" * 2048, "Invalid video_url"),
    ],
)
async def test_invalid_urls(db, recording_backend, url, message):
    await token_ledger.credit_tokens(db, "user_1", 1)

    with pytest.raises(InvalidInput) as exc_info:
        await JobDispatcher(recording_backend).submit(db, url, user_id="user_1")

    assert exc_info.value.message == message
    assert await token_ledger.get_balance(db, "user_1") == 1


@pytest.mark.anyio
async def test_chat_id_resolves_linked_user(db, recording_backend):
    await token_ledger.credit_tokens(db, "user_1", 1)
    await token_ledger.link_chat(db, "user_1", 555)

    submission = await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123", chat_id=555)

    assert submission.user_id == "user_1"
    job = await job_store.get_job(db, submission.job_id)
    assert job.chat_id == 555


@pytest.mark.anyio
async def test_unlinked_chat_is_unauthorized(db, recording_backend):
    with pytest.raises(Unauthorized) as exc_info:
        await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123", chat_id=999)
    assert exc_info.value.message == "Telegram account not linked"


@pytest.mark.anyio
async def test_anonymous_is_unauthorized(db, recording_backend):
    with pytest.raises(Unauthorized):
        await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123")


@pytest.mark.anyio
async def test_dispatch_failure_leaves_job_pending(db):
    await token_ledger.credit_tokens(db, "user_1", 1)
    backend = RecordingDispatchBackend(fail=True)

    submission = await JobDispatcher(backend).submit(db, "https://youtu.be/abc123", user_id="user_1")

    assert (await job_store.get_job_view(db, submission.job_id))["status"] == JOB_PENDING
    assert counter("dispatch.failed") == 1


@pytest.mark.anyio
async def test_lost_deduction_race_releases_guard(db, recording_backend, monkeypatch):
    await token_ledger.credit_tokens(db, "user_1", 1)

    async def balance_spent_elsewhere(_db, _user_id):
        return False

    monkeypatch.setattr(token_ledger, "deduct_token", balance_spent_elsewhere)

    with pytest.raises(InsufficientBalance):
        await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123", user_id="user_1")

    jobs = (await db.execute(select(ClipJob))).scalars().all()
    assert [job.status for job in jobs] == [JOB_FAILED]
    assert await token_ledger.is_processing(db, "user_1") is False
    assert recording_backend.dispatched == []


@pytest.mark.anyio
async def test_storage_error_after_claim_releases_guard(db, recording_backend, monkeypatch):
    await token_ledger.credit_tokens(db, "user_1", 1)

    async def broken_create(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(job_store, "create_job", broken_create)

    with pytest.raises(RuntimeError):
        await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123", user_id="user_1")

    assert await token_ledger.is_processing(db, "user_1") is False
    assert await token_ledger.get_balance(db, "user_1") == 1


@pytest.mark.anyio
async def test_deduction_error_fails_created_job(db, recording_backend, monkeypatch):
    await token_ledger.credit_tokens(db, "user_1", 2)

    async def broken_deduct(_db, _user_id):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(token_ledger, "deduct_token", broken_deduct)

    with pytest.raises(RuntimeError):
        await JobDispatcher(recording_backend).submit(db, "https://youtu.be/abc123", user_id="user_1")

    [job] = (await db.execute(select(ClipJob))).scalars().all()
    assert job.status == JOB_FAILED
    assert job.error_message == "Submission failed"
    assert await job_store.list_pending_jobs(db) == []
    assert await token_ledger.is_processing(db, "user_1") is False
    assert await token_ledger.get_balance(db, "user_1") == 2
    assert recording_backend.dispatched == []
