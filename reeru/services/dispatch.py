"""
Background dispatch: hands a created job to the worker endpoint.

Strategies behind one interface, chosen by DISPATCH_BACKEND:
  qstash  publish to Upstash QStash (at-least-once, fixed retries, short delay)
  direct  fire-and-forget POST to the worker route (at-most-once)
  inline  run the worker in this process (local development)
  auto    qstash with direct fallback when a QStash token is set, else direct
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Set

import httpx

from reeru.config import Settings
from reeru.errors import DispatchError, ExternalTransient
from reeru.middleware.correlation import get_correlation_id
from reeru.services.gateway import ServiceGateway
from reeru.utils.logger import get_logger
from reeru.utils.metrics import inc

logger = get_logger("dispatch")

JobRunner = Callable[[str], Awaitable[None]]


class JobDispatchBackend(Protocol):
    """Interface for handing a job to background processing."""

    name: str

    async def dispatch(self, job_id: str) -> None:
        """Schedule processing of job_id. Raises DispatchError if it could not be handed off."""
        ...


class _BackgroundTasks:
    """Keeps fire-and-forget tasks referenced until they finish"""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class QStashDispatchBackend:
    name = "qstash"

    def __init__(self, settings: Settings, http: httpx.AsyncClient, gateway: ServiceGateway) -> None:
        self.settings = settings
        self._http = http
        self._gateway = gateway

    async def _publish(self, job_id: str) -> httpx.Response:
        url = f"{self.settings.qstash_url.rstrip('/')}/v2/publish/{self.settings.worker_url}"
        headers = {
            "Authorization": f"Bearer {self.settings.qstash_token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.settings.qstash_retries),
            "Upstash-Delay": self.settings.qstash_delay,
            "Upstash-Forward-X-Correlation-ID": get_correlation_id(),
        }
        try:
            response = await self._http.post(url, json={"jobId": job_id}, headers=headers, timeout=10.0)
        except httpx.HTTPError as e:
            raise ExternalTransient(f"QStash unreachable: {type(e).__name__}") from e
        if response.status_code >= 500:
            raise ExternalTransient(f"QStash returned HTTP {response.status_code}", upstream_status=response.status_code)
        return response

    async def dispatch(self, job_id: str) -> None:
        if not self.settings.qstash_token:
            raise DispatchError("QStash is not configured")
        try:
            response = await self._gateway.execute("qstash", self._publish, job_id)
        except ExternalTransient as e:
            raise DispatchError(e.message) from e

        if not response.is_success:
            logger.error("dispatch.qstash_rejected", extra={"job_id": job_id, "status": response.status_code, "error": response.text[:200]})
            raise DispatchError(f"QStash rejected the message (HTTP {response.status_code})")

        inc("dispatch.qstash.published")
        logger.info("dispatch.published", extra={"job_id": job_id, "backend": self.name})


class DirectDispatchBackend:
    """Best-effort POST to our own worker route. Errors are logged, never retried."""

    name = "direct"

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self.settings = settings
        self._http = http
        self._tasks = _BackgroundTasks()

    async def _post(self, job_id: str) -> None:
        try:
            response = await self._http.post(
                self.settings.worker_url,
                json={"jobId": job_id},
                headers={"x-internal-secret": self.settings.internal_secret, "x-correlation-id": get_correlation_id()},
                # The worker route runs the whole job before answering
                timeout=httpx.Timeout(10.0, read=None),
            )
        except httpx.HTTPError as e:
            inc("dispatch.direct.error")
            logger.error("dispatch.direct_failed", extra={"job_id": job_id, "error": f"{type(e).__name__}: {e}"})
            return
        if not response.is_success:
            inc("dispatch.direct.error")
            logger.error("dispatch.direct_rejected", extra={"job_id": job_id, "status": response.status_code})

    async def dispatch(self, job_id: str) -> None:
        if not self.settings.internal_secret:
            raise DispatchError("Internal secret is not configured")
        self._tasks.spawn(self._post(job_id))
        inc("dispatch.direct.sent")
        logger.info("dispatch.published", extra={"job_id": job_id, "backend": self.name})

    async def drain(self) -> None:
        await self._tasks.drain()


class InlineDispatchBackend:
    """Runs the worker in this process as a background task"""

    name = "inline"

    def __init__(self, runner: JobRunner) -> None:
        self._runner = runner
        self._tasks = _BackgroundTasks()

    async def _run(self, job_id: str) -> None:
        try:
            await self._runner(job_id)
        except Exception as e:
            logger.error("dispatch.inline_failed", extra={"job_id": job_id, "error": str(e)[:500]}, exc_info=True)

    async def dispatch(self, job_id: str) -> None:
        self._tasks.spawn(self._run(job_id))
        logger.info("dispatch.published", extra={"job_id": job_id, "backend": self.name})

    async def drain(self) -> None:
        await self._tasks.drain()


class FallbackDispatchBackend:
    """Queue first; when the queue cannot take the message, call the worker directly"""

    def __init__(self, primary: JobDispatchBackend, fallback: JobDispatchBackend) -> None:
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    async def dispatch(self, job_id: str) -> None:
        try:
            await self.primary.dispatch(job_id)
        except DispatchError as e:
            logger.warning(
                "dispatch.fallback",
                extra={"job_id": job_id, "backend": self.fallback.name, "error": e.message},
            )
            await self.fallback.dispatch(job_id)

    async def drain(self) -> None:
        for backend in (self.primary, self.fallback):
            drain = getattr(backend, "drain", None)
            if drain is not None:
                await drain()


def build_dispatch_backend(
    settings: Settings,
    http: httpx.AsyncClient,
    gateway: ServiceGateway,
    inline_runner: Optional[JobRunner] = None,
) -> JobDispatchBackend:
    """Factory for the configured dispatch strategy."""
    choice = settings.dispatch_backend.lower()

    if choice == "inline":
        if inline_runner is None:
            raise ValueError("Inline dispatch needs a job runner")
        return InlineDispatchBackend(inline_runner)
    if choice == "qstash":
        return QStashDispatchBackend(settings, http, gateway)
    if choice == "direct":
        return DirectDispatchBackend(settings, http)
    if choice == "auto":
        direct = DirectDispatchBackend(settings, http)
        if settings.qstash_token:
            return FallbackDispatchBackend(QStashDispatchBackend(settings, http, gateway), direct)
        return direct
    raise ValueError(f"Unsupported dispatch backend: {settings.dispatch_backend}")
