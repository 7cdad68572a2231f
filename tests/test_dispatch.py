import httpx
import pytest

from reeru.errors import DispatchError
from reeru.services.dispatch import (
    DirectDispatchBackend,
    FallbackDispatchBackend,
    InlineDispatchBackend,
    QStashDispatchBackend,
    build_dispatch_backend,
)
from reeru.services.gateway import ServiceGateway

from conftest import no_sleep


@pytest.fixture
def qstash_settings(settings):
    return settings.model_copy(
        update={"dispatch_backend": "auto", "qstash_token": "qstash-token", "api_base_url": "https://reeru.example"}
    )


@pytest.mark.anyio
async def test_qstash_publish(qstash_settings, http, gateway, fake_klap):
    backend = QStashDispatchBackend(qstash_settings, http, gateway)

    await backend.dispatch("job_1_abc")

    [request] = fake_klap.sent_to("qstash.upstash.io")
    assert request.url.path.startswith("/v2/publish/")
    assert str(request.url).endswith("reeru.example/api/klap/worker")
    assert request.headers["authorization"] == "Bearer qstash-token"
    assert request.headers["upstash-retries"] == "3"
    assert request.headers["upstash-delay"] == "1s"
    assert fake_klap.body_of(request) == {"jobId": "job_1_abc"}


@pytest.mark.anyio
async def test_qstash_without_token_is_dispatch_error(settings, http, gateway):
    with pytest.raises(DispatchError):
        await QStashDispatchBackend(settings, http, gateway).dispatch("job_1_abc")


@pytest.mark.anyio
async def test_qstash_rejection_is_dispatch_error(qstash_settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "bad token"}))
    async with httpx.AsyncClient(transport=transport) as http:
        backend = QStashDispatchBackend(qstash_settings, http, ServiceGateway(sleep=no_sleep))
        with pytest.raises(DispatchError):
            await backend.dispatch("job_1_abc")


@pytest.mark.anyio
async def test_direct_dispatch_sends_internal_secret(settings, http, fake_klap):
    backend = DirectDispatchBackend(settings, http)

    await backend.dispatch("job_1_abc")
    await backend.drain()

    [request] = fake_klap.sent_to("localhost")
    assert request.url.path == "/api/klap/worker"
    assert request.headers["x-internal-secret"] == "test-internal-secret"
    assert fake_klap.body_of(request) == {"jobId": "job_1_abc"}


@pytest.mark.anyio
async def test_fallback_to_direct_when_queue_is_down(qstash_settings, fake_klap):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "qstash.upstash.io":
            return httpx.Response(503, json={"error": "down"})
        return fake_klap.handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        backend = build_dispatch_backend(qstash_settings, http, ServiceGateway(sleep=no_sleep))
        assert isinstance(backend, FallbackDispatchBackend)

        await backend.dispatch("job_1_abc")
        await backend.drain()

    [request] = fake_klap.sent_to("reeru.example")
    assert request.headers["x-internal-secret"] == "test-internal-secret"


@pytest.mark.anyio
async def test_inline_runs_job_in_process(settings, http, gateway):
    ran = []

    async def runner(job_id: str) -> None:
        ran.append(job_id)

    backend = build_dispatch_backend(
        settings.model_copy(update={"dispatch_backend": "inline"}), http, gateway, inline_runner=runner
    )
    assert isinstance(backend, InlineDispatchBackend)

    await backend.dispatch("job_1_abc")
    await backend.drain()

    assert ran == ["job_1_abc"]


def test_auto_without_token_is_direct(settings):
    backend = build_dispatch_backend(settings.model_copy(update={"dispatch_backend": "auto"}), None, None)
    assert isinstance(backend, DirectDispatchBackend)


def test_unknown_backend_is_rejected(settings):
    with pytest.raises(ValueError):
        build_dispatch_backend(settings.model_copy(update={"dispatch_backend": "carrier-pigeon"}), None, None)
