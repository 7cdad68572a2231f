"""
Telegram completion notices for jobs submitted from the bot.

Delivery is best effort: a failed notification is logged and never changes
job state.
"""
from typing import Any, Dict, Optional

import httpx

from reeru.config import Settings
from reeru.services.gateway import ServiceGateway
from reeru.utils.logger import get_logger

logger = get_logger("notifier")

TELEGRAM_API = "https://api.telegram.org"


def format_success(best: Dict[str, Any], completed: int, total: int, dashboard_url: str) -> str:
    lines = [
        "✅ *Video Ready!*",
        "",
        f"🎬 *Title:* {best.get('title') or 'Untitled'}",
    ]
    if best.get("virality_score") is not None:
        lines.append(f"🎯 *Virality Score:* {best['virality_score']}/100")
    if best.get("description"):
        lines += ["💡 *Analysis:*", f"_{best['description']}_"]
    caption = (best.get("captions") or {}).get("tiktok")
    if caption:
        lines += ["", "📝 *Caption:*", caption]
    lines += ["", f"💾 *Download:* {best.get('download_url')}"]
    if total > 1:
        lines.append(f"📦 {completed} of {total} clips exported")
    lines += ["", f"🌐 *View in Dashboard:* {dashboard_url}"]
    return "\n".join(lines)


def format_failure(error: str) -> str:
    return f"❌ *Processing Failed*\n\nError: {error}\n\nPlease try again later."


class TelegramNotifier:
    def __init__(self, settings: Settings, http: httpx.AsyncClient, gateway: Optional[ServiceGateway] = None):
        self.settings = settings
        self._http = http
        self._gateway = gateway

    @property
    def enabled(self) -> bool:
        return bool(self.settings.telegram_bot_token)

    @property
    def dashboard_url(self) -> str:
        return f"{self.settings.api_base_url.rstrip('/')}/your-clip"

    async def _post(self, chat_id: int, text: str) -> httpx.Response:
        url = f"{TELEGRAM_API}/bot{self.settings.telegram_bot_token}/sendMessage"
        response = await self._http.post(
            url,
            json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            timeout=10.0,
        )
        response.raise_for_status()
        return response

    async def send(self, chat_id: int, text: str) -> bool:
        if not self.enabled:
            return False
        try:
            if self._gateway is not None:
                await self._gateway.execute("telegram", self._post, chat_id, text)
            else:
                await self._post(chat_id, text)
        except Exception as e:
            logger.warning("notifier.send_failed", extra={"chat_id": chat_id, "error": str(e)[:200]})
            return False
        logger.info("notifier.sent", extra={"chat_id": chat_id})
        return True

    async def job_completed(self, chat_id: int, result: Dict[str, Any]) -> bool:
        best = result.get("best") or {}
        text = format_success(best, result.get("completed_shorts", 0), result.get("total_shorts", 0), self.dashboard_url)
        return await self.send(chat_id, text)

    async def job_failed(self, chat_id: int, error: str) -> bool:
        return await self.send(chat_id, format_failure(error))
