"""Shared fixtures: temp SQLite database, fake Klap API, recording dispatcher."""

import json
import re
from typing import Dict, List, Optional

import httpx
import pytest

from reeru.config import Settings
from reeru.database import Database
from reeru.errors import DispatchError
from reeru.services.conversion import ClipConversionPipeline, PollPolicy
from reeru.services.gateway import ServiceGateway
from reeru.services.klap_client import KlapClient
from reeru.utils import metrics


async def no_sleep(_seconds: float) -> None:
    return None


def make_short(short_id: str, score: Optional[float] = 80, project_id: str = "proj_1") -> dict:
    return {
        "id": short_id,
        "folder_id": project_id,
        "name": f"Clip {short_id}",
        "virality_score": score,
        "virality_score_explanation": f"Why {short_id} works",
        "duration": 42,
        "transcript": "hello world",
        "publication_captions": {"tiktok": f"#{short_id} caption", "youtube": "yt"},
    }


def _json(status: int, body) -> httpx.Response:
    return httpx.Response(status, json=body)


class FakeKlap:
    """
    In-memory stand-in for the Klap API plus the other hosts the service
    talks to (QStash, Telegram, our own worker URL). Status sequences are
    consumed one per poll; the last entry repeats. A status of "!<code>" answers
    that HTTP error instead.
    """

    def __init__(self) -> None:
        self.task_id = "task_1"
        self.project_id = "proj_1"
        self.task_statuses: List[str] = ["processing", "ready"]
        self.task_create_status = 200
        self.shorts: List[dict] = [make_short("short_a", 80), make_short("short_b", 95)]
        self.project_responses: List[List[dict]] = []
        self.export_create_fail: set = set()
        self.export_statuses: Dict[str, List[str]] = {}
        self.non_json_paths: set = set()
        self.requests: List[httpx.Request] = []

    def _next(self, sequence: List[str]) -> str:
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]

    def count(self, method: str, pattern: str) -> int:
        return sum(1 for r in self.requests if r.method == method and re.search(pattern, r.url.path))

    def sent_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "api.telegram.org":
            return _json(200, {"ok": True})
        if host == "qstash.upstash.io":
            return _json(201, {"messageId": "msg_1"})
        if host != "api.klap.app":
            return _json(200, {"success": True})

        path = request.url.path.replace("/v2", "", 1)
        if path in self.non_json_paths:
            return httpx.Response(502, text="<html>Bad Gateway</html>", headers={"content-type": "text/html"})

        if request.method == "POST" and path == "/tasks/video-to-shorts":
            if self.task_create_status != 200:
                return _json(self.task_create_status, {"error": "upstream"})
            return _json(200, {"id": self.task_id, "status": "processing"})

        if request.method == "GET" and path == f"/tasks/{self.task_id}":
            status = self._next(self.task_statuses)
            if status.startswith("!"):
                return _json(int(status[1:]), {"error": "upstream"})
            body = {"id": self.task_id, "status": status}
            if status == "ready":
                body["output_id"] = self.project_id
            return _json(200, body)

        if request.method == "GET" and path == f"/projects/{self.project_id}":
            if self.project_responses:
                return _json(200, self.project_responses.pop(0))
            return _json(200, self.shorts)

        match = re.fullmatch(rf"/projects/{self.project_id}/([^/]+)/exports(?:/([^/]+))?", path)
        if match:
            short_id, export_id = match.groups()
            if request.method == "POST":
                if short_id in self.export_create_fail:
                    return _json(500, {"error": "export quota"})
                return _json(200, {"id": f"exp_{short_id}", "status": "processing"})
            statuses = self.export_statuses.setdefault(short_id, ["ready"])
            status = self._next(statuses)
            if status.startswith("!"):
                return _json(int(status[1:]), {"error": "upstream"})
            body = {"id": export_id, "status": status}
            if status == "ready":
                body.update(
                    src_url=f"https://cdn.klap.app/{short_id}.mp4",
                    file_size=1024,
                    resolution="1080x1920",
                )
            return _json(200, body)

        return _json(404, {"error": "not found"})

    def body_of(self, request: httpx.Request) -> dict:
        return json.loads(request.content or b"{}")


class RecordingDispatchBackend:
    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.dispatched: List[str] = []

    async def dispatch(self, job_id: str) -> None:
        if self.fail:
            raise DispatchError("Queue unavailable")
        self.dispatched.append(job_id)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        redis_url="",
        klap_api_key="test-klap-key",
        jwt_secret="test-jwt-secret-0123456789abcdef0123",
        internal_secret="test-internal-secret",
        qstash_token="",
        qstash_current_signing_key="sig-current-0123456789abcdef01234567",
        qstash_next_signing_key="sig-next-0123456789abcdef0123456789ab",
        telegram_bot_token="",
        dispatch_backend="direct",
        rate_limit_enabled=False,
        task_poll_max_attempts=5,
        project_fetch_max_attempts=3,
        export_poll_max_attempts=4,
    )


@pytest.fixture
def fake_klap():
    return FakeKlap()


@pytest.fixture
def recording_backend():
    return RecordingDispatchBackend()


@pytest.fixture
async def database(settings):
    database = Database(settings.database_url)
    await database.open()
    yield database
    await database.close()


@pytest.fixture
async def db(database):
    async with database.session() as session:
        yield session


@pytest.fixture
async def http(fake_klap):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_klap.handler)) as client:
        yield client


@pytest.fixture
def gateway():
    return ServiceGateway(sleep=no_sleep)


@pytest.fixture
def klap_client(settings, http, gateway):
    return KlapClient(settings, http, gateway)


@pytest.fixture
def pipeline(klap_client, settings):
    return ClipConversionPipeline(
        klap_client,
        task_policy=PollPolicy(settings.task_poll_max_attempts, 15.0),
        project_policy=PollPolicy(settings.project_fetch_max_attempts, 20.0),
        export_policy=PollPolicy(settings.export_poll_max_attempts, 10.0),
        sleep=no_sleep,
    )
