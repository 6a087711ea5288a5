"""Lightweight HTTP health/status endpoint for external monitoring."""

from __future__ import annotations

import asyncio
import contextlib
from aiohttp import web
from typing import Optional

from .bt_le.engine import PeripheralEngine


class HealthServer:
    """Expose a JSON snapshot of the peripheral for probes."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        engine: PeripheralEngine,
    ) -> None:
        self._host = host
        self._port = port
        self._engine = engine

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([web.get("/health", self._handle_health)])
        return app

    async def start(self) -> None:
        if self._runner is not None:
            return

        self._runner = web.AppRunner(self.make_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        self._site = None
        if runner is None:
            return
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await runner.cleanup()

    async def _handle_health(self, _: web.Request) -> web.Response:
        snapshot = self.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    def snapshot(self) -> dict:
        raw = self._engine.status
        ble_state = {
            "state": raw["state"],
            "server_open": bool(raw["server_open"]),
            "advertising": bool(raw["advertising"]),
            "connected": bool(raw["connected"]),
            "devices": list(raw["devices"]),
            "pending_services": raw["pending_services"],
            "queued_reports": raw["queued_reports"],
            "last_advertise_error": raw["last_advertise_error"],
        }

        degraded_reasons = []

        if not ble_state["server_open"]:
            degraded_reasons.append("ble.server_closed")

        # Usable if connected OR advertising (ready to connect).
        if not ble_state["connected"] and not ble_state["advertising"]:
            degraded_reasons.append("ble.not_advertising")

        if ble_state["last_advertise_error"] is not None:
            degraded_reasons.append("ble.advertise_failed")

        return {
            "status": "ok" if not degraded_reasons else "degraded",
            "degraded_reasons": degraded_reasons,
            "profile": self._engine.profile.name,
            "ble": ble_state,
        }
