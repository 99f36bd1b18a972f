"""
API Server — aiohttp.web endpoints for the trading dashboard backend.
Connect / disconnect / heartbeat for users, slot and capacity views for ops.
"""

from __future__ import annotations
import json
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from aiohttp import web
import logging

if TYPE_CHECKING:
    from instances.registry import InstanceRegistry
    from instances.service import SessionService
    from storage.database import Database

logger = logging.getLogger(__name__)


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime types."""
    def default(self, o):
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=DateTimeEncoder),
        content_type="application/json",
        status=status,
    )


async def _read_json(request: web.Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


class ApiServer:
    """HTTP front for the session service."""

    def __init__(
        self,
        service: "SessionService",
        registry: "InstanceRegistry",
        db: "Database",
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.service = service
        self.registry = registry
        self.db = db
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/health", self._health)
        self.app.router.add_post("/api/mt5/connect", self._connect)
        self.app.router.add_post("/api/mt5/disconnect", self._disconnect)
        self.app.router.add_delete("/api/mt5/disconnect", self._disconnect)
        self.app.router.add_post("/api/mt5/heartbeat", self._heartbeat)
        self.app.router.add_get("/api/slots", self._slots)
        self.app.router.add_get("/api/capacity", self._capacity)
        self.app.router.add_get("/api/events", self._events)

    async def start(self):
        """Start the web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[API] Running on http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ─── Routes ───

    async def _health(self, request: web.Request) -> web.Response:
        return json_response({"status": "ok", "time": datetime.utcnow().isoformat() + "Z"})

    async def _connect(self, request: web.Request) -> web.Response:
        try:
            payload = await _read_json(request)
            result = await self.service.connect(payload)
            if result.success:
                status = 200
            elif result.is_invalid:
                status = 400
            elif result.is_at_capacity:
                status = 503
            else:
                status = 500
            return json_response(result.to_dict(), status=status)
        except Exception as e:
            logger.error(f"[API] Connect error: {e}", exc_info=True)
            return json_response({"success": False, "message": "Internal server error"}, status=500)

    async def _disconnect(self, request: web.Request) -> web.Response:
        try:
            payload = await _read_json(request)
            result = await self.service.disconnect(payload)
            if result.success:
                status = 200
            elif result.is_invalid:
                status = 400
            else:
                status = 500
            return json_response(result.to_dict(), status=status)
        except Exception as e:
            logger.error(f"[API] Disconnect error: {e}", exc_info=True)
            return json_response({"success": False, "message": "Internal server error"}, status=500)

    async def _heartbeat(self, request: web.Request) -> web.Response:
        payload = await _read_json(request)
        owner_id = payload.get("userId") if isinstance(payload, dict) else None
        if not owner_id:
            return json_response({"success": False, "message": "Missing required field: userId"}, status=400)

        slot_id = await self.service.heartbeat(str(owner_id))
        if slot_id is None:
            return json_response({"success": False, "message": "No active instance"}, status=404)
        return json_response({"success": True, "instanceId": slot_id})

    async def _slots(self, request: web.Request) -> web.Response:
        return json_response({
            "slots": self.registry.snapshot(),
            "maxInstances": self.registry.max_instances,
        })

    async def _capacity(self, request: web.Request) -> web.Response:
        return json_response(await self.service.capacity_report())

    async def _events(self, request: web.Request) -> web.Response:
        try:
            n = int(request.query.get("n", 50))
        except ValueError:
            return json_response({"error": "n must be an integer"}, status=400)

        events = [
            {
                "id": e.id,
                "slot_id": e.slot_id,
                "user_id": e.owner_id,
                "event": e.event.value,
                "symbol": e.symbol,
                "timeframe": e.timeframe,
                "detail": e.detail,
                "created_at": e.created_at,
            }
            for e in self.db.get_recent_events(max(1, min(n, 500)))
        ]
        return json_response({"events": events, "total": len(events)})
