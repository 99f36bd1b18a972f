"""
Telegram Notifier — Operator alerts for pool exhaustion and cleanup failures.
"""

from __future__ import annotations
from html import escape
import aiohttp
from typing import Optional, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from fleet.models import ReconcileReport

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends messages via Telegram Bot API."""

    def __init__(self, bot_token: str, chat_id: str, enabled: bool = True):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled and bool(bot_token) and bool(chat_id)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, message: str, parse_mode: str = "HTML"):
        """Send a message to the configured chat."""
        if not self.enabled:
            logger.debug(f"[TG] (disabled) Would send: {message[:100]}...")
            return

        try:
            session = await self._get_session()
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            payload = {
                "chat_id": self.chat_id,
                "text": message,
                "parse_mode": parse_mode,
                "disable_web_page_preview": True,
            }

            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"[TG] Send failed ({resp.status}): {body[:200]}")
                else:
                    logger.debug(f"[TG] Sent: {message[:80]}...")

        except (aiohttp.ClientError, OSError) as e:
            logger.warning(f"[TG] Error sending message: {e}")

    async def send_capacity_full(self, active: int, max_instances: int, owner_id: str):
        msg = (
            f"🔴 <b>POOL FULL</b>\n\n"
            f"Rejected: <code>{escape(owner_id)}</code>\n"
            f"Active: {active}/{max_instances}"
        )
        await self.send(msg)

    async def send_allocation_failed(self, owner_id: str, error: str):
        msg = (
            f"❌ <b>START FAILED</b>\n\n"
            f"User: <code>{escape(owner_id)}</code>\n"
            f"Error: <code>{escape(error[:300])}</code>"
        )
        await self.send(msg)

    async def send_reclaim_failed(self, slot_id: int, owner_id: Optional[str]):
        msg = (
            f"⚠️ <b>CLEANUP INCOMPLETE</b>\n\n"
            f"Slot: #{slot_id} (user <code>{escape(owner_id or 'unknown')}</code>)\n"
            f"Slot was released; host may hold leftovers."
        )
        await self.send(msg)

    async def send_reconcile_report(self, report: "ReconcileReport"):
        msg = (
            f"🔁 <b>RECONCILE</b>\n\n"
            f"Live: {len(report.live)}\n"
            f"Freed (workload gone): {report.freed or '-'}\n"
            f"Orphans: {report.orphans or '-'}\n"
            f"Orphans reclaimed: {report.reclaimed or '-'}"
        )
        await self.send(msg)

    async def send_fleet_status(self, status: str):
        """Send process lifecycle status."""
        await self.send(f"🤖 <b>FLEET</b>: {status}")
