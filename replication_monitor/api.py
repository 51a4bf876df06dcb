"""
Replication Monitor - HTTP API.

============================================================
PURPOSE
============================================================
HTTP and websocket surface for snapshot consumers.

ENDPOINTS:
- GET /api/snapshot  On-demand collect (independent of the ticker)
- GET /api/ws        Live subscription: welcome + one per tick
- GET /api/health    Source liveness and subscriber count

PRINCIPLES:
- ALL endpoints are READ-ONLY
- Per-source failures surface inside a 200 response
- Inbound websocket messages are never interpreted

============================================================
"""

import logging
from typing import Any, Dict

from aiohttp import WSMsgType, web

from .broadcast import BroadcastHub, Subscriber
from .collector import SnapshotCollector
from .exceptions import RegistrationError
from .models import utcnow


logger = logging.getLogger(__name__)

COLLECTOR_KEY = web.AppKey("collector", SnapshotCollector)
HUB_KEY = web.AppKey("hub", BroadcastHub)


# ============================================================
# API HANDLERS
# ============================================================

class MonitorAPI:
    """
    HTTP handlers.

    The on-demand snapshot runs its own collect cycle and does not
    touch the hub's cached snapshot or ticker phase.
    """

    def __init__(
        self,
        collector: SnapshotCollector,
        hub: BroadcastHub,
        heartbeat: float = 30.0,
    ):
        """Initialize API."""
        self._collector = collector
        self._hub = hub
        self._heartbeat = heartbeat

    async def get_snapshot(self, request: web.Request) -> web.Response:
        """
        GET /api/snapshot

        200 with the JSON snapshot, 500 with a plain-text error.
        """
        try:
            snapshot = await self._collector.collect()
        except Exception as e:
            logger.error(f"Error getting snapshot: {e}")
            return web.Response(
                text=f"Failed to get snapshot: {e}",
                status=500,
                content_type="text/plain",
            )

        return web.Response(text=snapshot.to_json(), content_type="application/json")

    async def websocket(self, request: web.Request) -> web.StreamResponse:
        """
        GET /api/ws

        Registers the connection with the hub and blocks on inbound
        reads purely to detect disconnection.
        """
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        try:
            await ws.prepare(request)
        except Exception as e:
            error = RegistrationError(f"WebSocket upgrade error: {e}")
            logger.warning(str(error))
            raise web.HTTPBadRequest(text=error.message)

        subscriber = Subscriber(ws, remote=request.remote)
        await self._hub.register(subscriber)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.debug(f"Subscriber {subscriber.id} read error: {ws.exception()}")
                    break
        finally:
            await self._hub.unregister(subscriber)

        return ws

    async def health(self, request: web.Request) -> web.Response:
        """
        GET /api/health

        Liveness of every configured source.
        """
        try:
            sources = await self._collector.check_connectivity()
        except Exception as e:
            logger.error(f"Error checking source connectivity: {e}")
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        data: Dict[str, Any] = {
            "status": "healthy" if all(sources.values()) else "unhealthy",
            "sources": sources,
            "subscribers": self._hub.subscriber_count,
            "timestamp": utcnow().isoformat(),
        }
        return web.json_response(data)


# ============================================================
# APPLICATION FACTORY
# ============================================================

async def _start_hub(app: web.Application) -> None:
    await app[HUB_KEY].start()


async def _stop_hub(app: web.Application) -> None:
    await app[HUB_KEY].stop()


def create_app(
    collector: SnapshotCollector,
    hub: BroadcastHub,
    heartbeat: float = 30.0,
    start_hub: bool = True,
) -> web.Application:
    """
    Create the monitor application.

    Args:
        collector: Snapshot collector for on-demand pulls
        hub: Broadcast hub for live subscribers
        heartbeat: Websocket ping interval in seconds
        start_hub: Tie the hub's ticker to the app lifecycle
    """
    api = MonitorAPI(collector, hub, heartbeat=heartbeat)

    app = web.Application()
    app[COLLECTOR_KEY] = collector
    app[HUB_KEY] = hub

    app.router.add_get("/api/snapshot", api.get_snapshot)
    app.router.add_get("/api/ws", api.websocket)
    app.router.add_get("/api/health", api.health)

    if start_hub:
        app.on_startup.append(_start_hub)
    app.on_cleanup.append(_stop_hub)

    return app
