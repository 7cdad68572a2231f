"""
Klap API client for video-to-shorts conversion.

Resource families (all bearer-authenticated, all JSON):
    POST /tasks/video-to-shorts                                  create analysis task
    GET  /tasks/{task_id}                                        task status
    GET  /projects/{project_id}                                  generated shorts
    POST /projects/{project_id}/{short_id}/exports               request HD export
    GET  /projects/{project_id}/{short_id}/exports/{export_id}   export status

Response classification, in order:
    body is not JSON        -> ExternalProtocolViolation (never retried)
    status is not 2xx       -> ExternalTransient(upstream_status)
    network error/timeout   -> ExternalTransient
"""
from typing import Any, Dict, List, Optional

import httpx

from reeru.config import Settings
from reeru.errors import ExternalProtocolViolation, ExternalTransient
from reeru.services.gateway import ServiceGateway
from reeru.utils.logger import get_logger

logger = get_logger("klap")

DONE_STATUSES = frozenset({"ready", "done", "completed"})
FAILED_STATUSES = frozenset({"failed", "error"})


def normalize_status(raw: Optional[str]) -> str:
    """Collapse the provider's status vocabulary into done | failed | processing"""
    value = (raw or "").lower()
    if value in DONE_STATUSES:
        return "done"
    if value in FAILED_STATUSES:
        return "failed"
    return "processing"


class KlapClient:
    """Thin async client; retry policy lives in the conversion pipeline"""

    def __init__(self, settings: Settings, http: httpx.AsyncClient, gateway: ServiceGateway):
        self.settings = settings
        self.base_url = settings.klap_base_url.rstrip("/")
        self._http = http
        self._gateway = gateway

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.klap_api_key}",
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(
                method,
                url,
                json=json,
                headers=self._headers(),
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise ExternalTransient(f"Klap request failed: {type(e).__name__}") from e

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error(
                "klap.non_json_response",
                extra={"path": path, "status": response.status_code, "error": response.text[:200]},
            )
            raise ExternalProtocolViolation()

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalProtocolViolation() from e

        if not response.is_success:
            logger.warning("klap.http_error", extra={"path": path, "status": response.status_code})
            raise ExternalTransient(
                f"Klap returned HTTP {response.status_code}",
                upstream_status=response.status_code,
            )
        return data

    async def _call(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        return await self._gateway.execute("klap", self._send, method, path, json)

    def _task_payload(self, video_url: str) -> Dict[str, Any]:
        s = self.settings
        return {
            "source_video_url": video_url,
            "language": s.klap_language,
            "target_clip_count": s.klap_target_clip_count,
            "max_clip_count": s.klap_max_clip_count,
            "min_duration": s.klap_min_duration,
            "max_duration": s.klap_max_duration,
            "target_duration": s.klap_target_duration,
            "editing_options": {
                "captions": True,
                "reframe": True,
                "emojis": True,
                "intro_title": True,
                "remove_silences": False,
                "width": 1080,
                "height": 1920,
            },
        }

    async def create_task(self, video_url: str) -> str:
        """Submit the source video for analysis. Returns the task id."""
        data = await self._call("POST", "/tasks/video-to-shorts", self._task_payload(video_url))
        task_id = data.get("id") if isinstance(data, dict) else None
        if not task_id:
            raise ExternalProtocolViolation("Video service did not return a task id")
        logger.info("klap.task_created", extra={"task_id": task_id})
        return task_id

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        data = await self._call("GET", f"/tasks/{task_id}")
        if not isinstance(data, dict):
            raise ExternalProtocolViolation()
        return data

    async def list_shorts(self, project_id: str) -> List[Dict[str, Any]]:
        """Generated clip candidates. The provider answers with a list or {"shorts": [...]}"""
        data = await self._call("GET", f"/projects/{project_id}")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return list(data.get("shorts") or [])
        raise ExternalProtocolViolation()

    async def create_export(self, project_id: str, short_id: str) -> str:
        data = await self._call("POST", f"/projects/{project_id}/{short_id}/exports", {})
        export_id = data.get("id") if isinstance(data, dict) else None
        if not export_id:
            raise ExternalProtocolViolation("Video service did not return an export id")
        return export_id

    async def get_export(self, project_id: str, short_id: str, export_id: str) -> Dict[str, Any]:
        data = await self._call("GET", f"/projects/{project_id}/{short_id}/exports/{export_id}")
        if not isinstance(data, dict):
            raise ExternalProtocolViolation()
        return data
