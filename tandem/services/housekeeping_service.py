"""
Tandem — Housekeeping Sweep

Periodic reconciliation of registry, queues and sessions:

  1. queue entries whose session is gone, not live, or no longer Searching
     are discarded;
  2. unbound sessions whose connection silently vanished are evicted;
  3. searches older than the configured max wait are cancelled and the
     connection is told ``search-timeout``.

Bound sessions are never touched.
"""

from __future__ import annotations

from typing import Callable

import structlog

from tandem.services.events import SEARCH_TIMEOUT, EventBus, Outbound
from tandem.services.queue_service import QueueSet
from tandem.services.registry import ConnectionRegistry
from tandem.services.session_store import SessionStore

logger = structlog.get_logger("tandem.housekeeping_service")

TransportProbe = Callable[[str], bool]


class HousekeepingService:
    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionStore,
        queues: QueueSet,
        events: EventBus,
        clock: Callable[[], float],
        search_timeout_seconds: float,
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.queues = queues
        self.events = events
        self._clock = clock
        self.search_timeout_seconds = search_timeout_seconds

    def sweep(self, transport_probe: TransportProbe | None = None) -> tuple[list[Outbound], dict[str, int]]:
        """Run one reconciliation pass.

        ``transport_probe`` optionally reports whether the transport still
        considers a connection open; connections it reports as gone are
        unregistered, which cascades into the regular teardown.

        Returns the notices to deliver and a summary of what was done.
        """
        outbound: list[Outbound] = []
        summary = {"stale_entries": 0, "orphans_evicted": 0, "vanished": 0, "timed_out": 0}

        # ── 1. Queue reconciliation ───────────────────────────────────
        for category, connection_id in self.queues.entries():
            session = self.sessions.get(connection_id)
            if session is None or not self.registry.is_live(connection_id) or not session.is_searching:
                self.queues.dequeue_all(connection_id)
                summary["stale_entries"] += 1
                logger.info("stale_queue_entry_swept", connection_id=connection_id, queue=category)

        # ── 2. Vanished connections (unbound only) ────────────────────
        for session in self.sessions.values():
            if session.is_bound:
                continue
            if not self.registry.is_live(session.id):
                self.queues.cancel(session)
                self.sessions.remove(session.id)
                summary["orphans_evicted"] += 1
                logger.info("orphan_session_evicted", connection_id=session.id)
            elif transport_probe is not None and not transport_probe(session.id):
                outbound.extend(self.registry.unregister(session.id))
                summary["vanished"] += 1
                logger.info("vanished_connection_evicted", connection_id=session.id)

        # ── 3. Search timeouts ────────────────────────────────────────
        now = self._clock()
        for session in self.sessions.values():
            if not session.is_searching or session.search_started_at is None:
                continue
            waited = now - session.search_started_at
            if waited <= self.search_timeout_seconds:
                continue

            self.queues.cancel(session)
            summary["timed_out"] += 1
            logger.info("search_timed_out", connection_id=session.id, waited_seconds=round(waited, 1))
            self.events.publish(
                SEARCH_TIMEOUT,
                {"connectionId": session.id, "waitedSeconds": waited},
            )
            outbound.append(
                Outbound(SEARCH_TIMEOUT, {"waitedSeconds": round(waited)}, to=session.id)
            )

        return outbound, summary
