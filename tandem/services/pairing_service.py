"""
Tandem — Pairing Coordinator

The only code that writes partner links.  ``bind`` turns two unbound
sessions into one pair; ``unbind`` dissolves a pair from either side.  Skip,
explicit end, block/report and disconnect all go through ``unbind`` so that
teardown has exactly one implementation.

Partner links are symmetric: A.partner_id == B iff B.partner_id == A.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable

import structlog

from tandem.models.session import LifecycleState, UserSession
from tandem.services.events import SESSION_ENDED, SESSION_STARTED, EventBus
from tandem.services.moderation import BlockList
from tandem.services.queue_service import QueueSet
from tandem.services.session_store import SessionStore

logger = structlog.get_logger("tandem.pairing_service")


class EndReason(str, Enum):
    SKIPPED = "skipped"
    ENDED = "ended"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    REPORTED = "reported"


class PairingCoordinator:
    def __init__(
        self,
        sessions: SessionStore,
        queues: QueueSet,
        block_list: BlockList,
        events: EventBus,
        clock: Callable[[], float],
    ) -> None:
        self.sessions = sessions
        self.queues = queues
        self.block_list = block_list
        self.events = events
        self._clock = clock

    def bind(self, a_id: str, b_id: str) -> bool:
        """Atomically pair two sessions.

        Rejected (no state change) when either session is gone, both ids are
        the same, either side is already Bound, or a block exists in either
        direction.  The block check is repeated here because a block may
        land between finding a candidate and binding it.
        """
        log = logger.bind(connection_id=a_id, partner_id=b_id)

        a = self.sessions.get(a_id)
        b = self.sessions.get(b_id)
        reason: str | None = None
        if a is None or b is None:
            reason = "session_missing"
        elif a_id == b_id:
            reason = "self_bind"
        elif a.is_bound or b.is_bound:
            reason = "already_bound"
        elif self.block_list.is_blocked(a_id, b_id):
            reason = "blocked"

        if reason is not None:
            log.warning("bind_rejected", reason=reason)
            return False

        now = self._clock()
        for session, partner_id in ((a, b_id), (b, a_id)):
            self.queues.dequeue_all(session.id)
            session.state = LifecycleState.BOUND
            session.partner_id = partner_id
            session.queue_category = None
            session.search_started_at = None
            session.call_started_at = now
            session.call_ended_at = None

        log.info("session_bound")
        self.events.publish(
            SESSION_STARTED,
            {"connectionIds": [a_id, b_id], "startedAt": now},
        )
        return True

    def unbind(self, connection_id: str, reason: EndReason = EndReason.ENDED) -> str | None:
        """Dissolve the pair ``connection_id`` belongs to.

        Both sides go back to Idle even though only one side asked.  Returns
        the former partner's id so the caller can notify it, or None when the
        session was not Bound (calling twice is therefore harmless).
        """
        session = self.sessions.get(connection_id)
        if session is None or not session.is_bound:
            return None

        partner_id = session.partner_id
        partner = self.sessions.get(partner_id) if partner_id else None
        if partner is not None and partner.partner_id != connection_id:
            logger.warning("partner_link_asymmetric", connection_id=connection_id, partner_id=partner_id)
            partner = None

        now = self._clock()
        started_at = session.call_started_at
        duration = max(0.0, now - started_at) if started_at is not None else 0.0

        for side in (session, partner):
            if side is None:
                continue
            self._reset(side, now, duration)

        logger.info(
            "session_unbound",
            connection_id=connection_id,
            partner_id=partner_id,
            reason=reason.value,
            duration_seconds=round(duration, 3),
        )
        self.events.publish(
            SESSION_ENDED,
            {
                "connectionIds": [connection_id, partner_id],
                "endedBy": connection_id,
                "reason": reason.value,
                "endedAt": now,
                "durationSeconds": duration,
            },
        )
        return partner_id

    def partner_of(self, connection_id: str) -> UserSession | None:
        session = self.sessions.get(connection_id)
        if session is None or not session.is_bound or session.partner_id is None:
            return None
        return self.sessions.get(session.partner_id)

    @staticmethod
    def _reset(session: UserSession, now: float, duration: float) -> None:
        session.state = LifecycleState.IDLE
        session.partner_id = None
        session.call_started_at = None
        session.call_ended_at = now
        session.total_call_seconds += duration
