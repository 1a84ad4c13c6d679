"""Socket.IO gateway between the wire protocol and the matchmaking engine.

Each inbound event is handed to one synchronous engine operation; the
notices it returns are emitted afterwards, fire-and-forget.  Nothing is
awaited while the engine is mutating state, so a handler can never be
interleaved with another one halfway through a bind or unbind.

Client → server events:
  find-match, cancel-search, skip / next-partner, end-call,
  negotiation-offer / negotiation-answer / negotiation-candidate,
  chat-message, typing, update-profile, block-user, report-user
"""

from __future__ import annotations

import asyncio
from typing import Any

import socketio
import structlog

from tandem.config import Settings
from tandem.schemas.stats import StatsResponse
from tandem.services.engine import MatchmakingEngine
from tandem.services.events import STATS, Outbound
from tandem.services.pairing_service import EndReason
from tandem.services.relay_service import NEGOTIATION_EVENTS

logger = structlog.get_logger("tandem.realtime.gateway")

# Engine.IO disconnect reason for a missed heartbeat.
_PING_TIMEOUT = "ping timeout"


def create_socketio_server(settings: Settings) -> socketio.AsyncServer:
    origins = settings.ALLOWED_ORIGINS.strip()
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins="*" if origins == "*" else settings.allowed_origins_list,
        ping_interval=settings.PING_INTERVAL_SECONDS,
        ping_timeout=settings.PING_TIMEOUT_SECONDS,
        logger=False,
        engineio_logger=False,
    )


class SocketGateway:
    def __init__(self, engine: MatchmakingEngine, sio: socketio.AsyncServer) -> None:
        self.engine = engine
        self.sio = sio
        self._register_handlers()

    def _register_handlers(self) -> None:
        handlers = {
            "connect": self.handle_connect,
            "disconnect": self.handle_disconnect,
            "find-match": self.handle_find_match,
            "cancel-search": self.handle_cancel_search,
            "skip": self.handle_skip,
            "next-partner": self.handle_skip,
            "end-call": self.handle_end_call,
            "chat-message": self.handle_chat_message,
            "typing": self.handle_typing,
            "update-profile": self.handle_update_profile,
            "block-user": self.handle_block_user,
            "report-user": self.handle_report_user,
        }
        for event, handler in handlers.items():
            self.sio.on(event, handler=handler)

        for kind in NEGOTIATION_EVENTS:
            self.sio.on(kind, handler=self._negotiation_handler(kind))

    # ── Delivery ──────────────────────────────────────────────────────────

    async def deliver(self, outbound: list[Outbound]) -> None:
        """Emit notices in order.  No acknowledgement, no retry."""
        for notice in outbound:
            if notice.to is None:
                await self.sio.emit(notice.event, notice.payload)
            else:
                await self.sio.emit(notice.event, notice.payload, to=notice.to)

    async def broadcast_stats(self) -> None:
        payload = StatsResponse(**self.engine.stats()).model_dump(by_alias=True)
        await self.sio.emit(STATS, payload)

    # ── Connection lifecycle ──────────────────────────────────────────────

    async def handle_connect(self, sid: str, environ: dict[str, Any], auth: Any = None) -> None:
        logger.info("socket_connected", sid=sid)
        await self.deliver(self.engine.connect(sid))
        await self.broadcast_stats()

    async def handle_disconnect(self, sid: str, reason: Any = None) -> None:
        end_reason = EndReason.TIMEOUT if reason == _PING_TIMEOUT else EndReason.DISCONNECTED
        logger.info("socket_disconnected", sid=sid, transport_reason=str(reason) if reason else None)
        await self.deliver(self.engine.disconnect(sid, end_reason))
        await self.broadcast_stats()

    # ── Matchmaking ───────────────────────────────────────────────────────

    async def handle_find_match(self, sid: str, data: Any = None) -> None:
        preferences = data.get("preferences") if isinstance(data, dict) else None
        await self.deliver(self.engine.find_match(sid, preferences))
        await self.broadcast_stats()

    async def handle_cancel_search(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.cancel_search(sid))
        await self.broadcast_stats()

    async def handle_skip(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.skip(sid))
        await self.broadcast_stats()

    async def handle_end_call(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.end_call(sid))
        await self.broadcast_stats()

    # ── Relay ─────────────────────────────────────────────────────────────

    def _negotiation_handler(self, kind: str):
        async def handler(sid: str, data: Any = None) -> None:
            await self.deliver(self.engine.relay_signal(sid, kind, data))

        handler.__name__ = f"handle_{kind.replace('-', '_')}"
        return handler

    async def handle_chat_message(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.relay_chat(sid, data))

    async def handle_typing(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.relay_typing(sid))

    # ── Profile & moderation ──────────────────────────────────────────────

    async def handle_update_profile(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.update_profile(sid, data))
        await self.broadcast_stats()

    async def handle_block_user(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.block_partner(sid))
        await self.broadcast_stats()

    async def handle_report_user(self, sid: str, data: Any = None) -> None:
        await self.deliver(self.engine.report_partner(sid, data))
        await self.broadcast_stats()

    # ── Background loops ──────────────────────────────────────────────────

    def is_connected(self, sid: str) -> bool:
        return self.sio.manager.is_connected(sid, "/")

    async def run_housekeeping(self) -> None:
        """One sweep; vanished transports are detected via ``is_connected``."""
        await self.deliver(self.engine.sweep(self.is_connected))

    async def run_periodic(self, name: str, interval: float, step) -> None:
        """Call ``step`` every ``interval`` seconds until cancelled.

        A failing iteration is logged and the loop carries on.
        """
        logger.info("periodic_task_started", task=name, interval=interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await step()
            except Exception:
                logger.exception("periodic_task_failed", task=name)
