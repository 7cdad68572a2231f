"""
Video-to-shorts conversion pipeline.

One job runs three strictly sequential phases against Klap:

    1. analysis task    create, then poll until done/failed (long budget, coarse interval)
    2. candidates       list the generated shorts (short retry budget)
    3. exports          for every candidate, concurrently: create an HD export and
                        poll it (short budget, fine interval)

Phase 1 exhausting its budget is a failure. A candidate exhausting its own
budget is left as "processing", and a candidate whose export fails never
affects its siblings.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from reeru.config import Settings
from reeru.errors import (
    ExternalProtocolViolation,
    ExternalTaskFailed,
    ExternalTimeout,
    ExternalTransient,
    ReeruError,
)
from reeru.services.klap_client import KlapClient, normalize_status
from reeru.utils.logger import get_logger
from reeru.utils.metrics import inc, track_duration

logger = get_logger("conversion")

ProgressCallback = Callable[[int], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

EXPORT_DONE = "done"
EXPORT_FAILED = "failed"
EXPORT_PROCESSING = "processing"


@dataclass(frozen=True)
class PollPolicy:
    max_attempts: int
    interval_seconds: float


@dataclass
class CandidateResult:
    """One generated short and where its export ended up"""

    id: str
    project_id: str
    title: Optional[str] = None
    description: str = ""
    virality_score: Optional[float] = None
    duration: Optional[float] = None
    transcript: Optional[str] = None
    captions: Dict[str, str] = field(default_factory=dict)
    export_status: str = EXPORT_PROCESSING
    export_id: Optional[str] = None
    download_url: Optional[str] = None
    file_size: Optional[int] = None
    resolution: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_short(cls, short: Dict[str, Any], project_id: str) -> "CandidateResult":
        captions = short.get("publication_captions") or {}
        return cls(
            id=str(short.get("id")),
            project_id=short.get("folder_id") or project_id,
            title=short.get("name") or short.get("title"),
            description=short.get("virality_score_explanation") or short.get("description") or "",
            virality_score=short.get("virality_score"),
            duration=short.get("duration"),
            transcript=short.get("transcript"),
            captions={
                platform: captions.get(platform) or ""
                for platform in ("tiktok", "youtube", "linkedin", "instagram")
            },
        )

    def mark_failed(self, error: str) -> "CandidateResult":
        self.export_status = EXPORT_FAILED
        self.error = error
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FanOutResult:
    task_id: str
    project_id: str
    candidates: List[CandidateResult]


async def _no_progress(_: int) -> None:
    return None


class ClipConversionPipeline:
    def __init__(
        self,
        client: KlapClient,
        task_policy: PollPolicy,
        project_policy: PollPolicy,
        export_policy: PollPolicy,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.task_policy = task_policy
        self.project_policy = project_policy
        self.export_policy = export_policy
        self._sleep = sleep

    @classmethod
    def from_settings(cls, client: KlapClient, settings: Settings, sleep: Sleep = asyncio.sleep):
        return cls(
            client,
            task_policy=PollPolicy(settings.task_poll_max_attempts, settings.task_poll_interval_seconds),
            project_policy=PollPolicy(settings.project_fetch_max_attempts, settings.project_fetch_interval_seconds),
            export_policy=PollPolicy(settings.export_poll_max_attempts, settings.export_poll_interval_seconds),
            sleep=sleep,
        )

    async def process(self, video_url: str, on_progress: Optional[ProgressCallback] = None) -> FanOutResult:
        report = on_progress or _no_progress

        await report(10)
        task_id = await self.client.create_task(video_url)
        await report(20)

        task = await self._wait_for_task(task_id, report)
        details = task.get("details") or {}
        project_id = task.get("output_id") or details.get("output_id")
        if not project_id:
            raise ExternalProtocolViolation("Video analysis finished without a project")

        shorts = await self._fetch_candidates(project_id)
        await report(75)

        async with track_duration("pipeline", "exports"):
            candidates = await self._export_all(project_id, shorts, report)

        return FanOutResult(task_id=task_id, project_id=project_id, candidates=candidates)

    async def _poll(
        self,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        policy: PollPolicy,
        context: Dict[str, Any],
        on_attempt: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Poll until done/failed or the policy runs out.

        Returns ("done" | "failed", payload) or ("processing", None) on
        exhaustion. Transient errors consume an attempt; protocol violations
        propagate immediately.
        """
        for attempt in range(1, policy.max_attempts + 1):
            try:
                data = await fetch()
            except ExternalTransient as e:
                logger.warning("klap.poll_transient", extra={**context, "attempt": attempt, "error": e.message})
            else:
                status = normalize_status(data.get("status"))
                if status != EXPORT_PROCESSING:
                    return status, data

            if on_attempt is not None:
                await on_attempt(attempt)
            if attempt < policy.max_attempts:
                await self._sleep(policy.interval_seconds)

        return EXPORT_PROCESSING, None

    async def _wait_for_task(self, task_id: str, report: ProgressCallback) -> Dict[str, Any]:
        budget = self.task_policy.max_attempts

        async def on_attempt(attempt: int) -> None:
            await report(20 + (attempt * 50) // budget)

        status, data = await self._poll(
            lambda: self.client.get_task(task_id),
            self.task_policy,
            {"task_id": task_id},
            on_attempt,
        )
        logger.info("klap.task_polled", extra={"task_id": task_id, "status": status})

        if status == EXPORT_FAILED:
            raise ExternalTaskFailed("Video analysis failed")
        if data is None:
            raise ExternalTimeout("Video analysis timed out")
        return data

    async def _fetch_candidates(self, project_id: str) -> List[Dict[str, Any]]:
        policy = self.project_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                shorts = await self.client.list_shorts(project_id)
            except ExternalTransient as e:
                logger.warning("klap.shorts_transient", extra={"project_id": project_id, "attempt": attempt, "error": e.message})
            else:
                if shorts:
                    logger.info("klap.shorts_listed", extra={"project_id": project_id, "candidates": len(shorts)})
                    return shorts
            if attempt < policy.max_attempts:
                await self._sleep(policy.interval_seconds)

        raise ExternalTaskFailed("No shorts generated")

    async def _export_all(
        self,
        project_id: str,
        shorts: List[Dict[str, Any]],
        report: ProgressCallback,
    ) -> List[CandidateResult]:
        total = len(shorts)
        finished = 0

        async def run(short: Dict[str, Any]) -> CandidateResult:
            nonlocal finished
            candidate = CandidateResult.from_short(short, project_id)
            try:
                return await self._export_candidate(candidate)
            finally:
                finished += 1
                await report(85 + (finished * 10) // total)

        results = await asyncio.gather(*(run(short) for short in shorts), return_exceptions=True)

        candidates: List[CandidateResult] = []
        for short, outcome in zip(shorts, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "klap.export_crashed",
                    extra={"short_id": short.get("id"), "error": str(outcome)[:200], "error_type": type(outcome).__name__},
                )
                outcome = CandidateResult.from_short(short, project_id).mark_failed("Unexpected export error")
            candidates.append(outcome)
        return candidates

    async def _export_candidate(self, candidate: CandidateResult) -> CandidateResult:
        context = {"short_id": candidate.id, "project_id": candidate.project_id}
        try:
            export_id = await self.client.create_export(candidate.project_id, candidate.id)
        except ReeruError as e:
            logger.warning("klap.export_create_failed", extra={**context, "error": e.message})
            inc("pipeline.export.create_failed")
            return candidate.mark_failed("Failed to create export")

        candidate.export_id = export_id
        context["export_id"] = export_id

        try:
            status, data = await self._poll(
                lambda: self.client.get_export(candidate.project_id, candidate.id, export_id),
                self.export_policy,
                context,
            )
        except ExternalProtocolViolation as e:
            return candidate.mark_failed(e.message)

        logger.info("klap.export_polled", extra={**context, "status": status})

        if status == EXPORT_FAILED:
            return candidate.mark_failed("Export failed")
        if data is None:
            candidate.export_status = EXPORT_PROCESSING
            candidate.error = "Export still processing"
            return candidate

        download_url = data.get("download_url") or data.get("src_url")
        if not download_url:
            return candidate.mark_failed("Export finished without a download link")

        candidate.export_status = EXPORT_DONE
        candidate.download_url = download_url
        candidate.file_size = data.get("file_size")
        candidate.resolution = data.get("resolution")
        return candidate
