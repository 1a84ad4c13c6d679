"""
Tandem — Matchmaking Engine

The owning structure for one server's worth of state: connection registry,
session store, queue set, block list and the services that operate on them.
Nothing here is module-global, so every test builds its own engine.

Every public operation:
  - runs to completion under one re-entrant lock and never awaits, so the
    queue set and partner links are never observed half-updated;
  - performs no I/O and returns the ``Outbound`` notices the transport
    should deliver afterwards.
"""

from __future__ import annotations

import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

import structlog

from tandem.config import Settings
from tandem.models.session import REGIONS, LifecycleState, UserSession
from tandem.services.events import (
    CALL_ENDED,
    INIT,
    MATCH_FOUND,
    PARTNER_LEFT,
    PROFILE_UPDATED,
    REPORT_SUBMITTED,
    SEARCH_CANCELLED,
    SEARCHING,
    USER_BLOCKED,
    USER_CONNECTED,
    USER_DISCONNECTED,
    EventBus,
    Outbound,
)
from tandem.services.housekeeping_service import HousekeepingService, TransportProbe
from tandem.services.matching_service import MatchingService
from tandem.services.moderation import BlockList, ReportLog
from tandem.services.pairing_service import EndReason, PairingCoordinator
from tandem.services.queue_service import QueueSet
from tandem.services.registry import ConnectionRegistry
from tandem.services.relay_service import RelayService
from tandem.services.session_store import SessionStore

logger = structlog.get_logger("tandem.engine")

F = TypeVar("F", bound=Callable[..., Any])


def _locked(method: F) -> F:
    @wraps(method)
    def wrapper(self: "MatchmakingEngine", *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class MatchmakingEngine:
    """Session lifecycle engine: matching, pairing, relay and cleanup."""

    def __init__(
        self,
        *,
        search_timeout_seconds: float = 180.0,
        chat_max_length: int = 500,
        display_name_max_length: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._end_reasons: dict[str, EndReason] = {}

        self.events = EventBus()
        self.block_list = BlockList()
        self.reports = ReportLog(clock=clock)
        self.registry = ConnectionRegistry(clock=clock)
        self.sessions = SessionStore(name_max_length=display_name_max_length)
        self.queues = QueueSet(clock=clock)
        self.matcher = MatchingService(self.registry, self.sessions, self.queues, self.block_list)
        self.pairing = PairingCoordinator(
            self.sessions, self.queues, self.block_list, self.events, clock
        )
        self.relay = RelayService(self.pairing, clock, chat_max_length=chat_max_length)
        self.housekeeping = HousekeepingService(
            self.registry,
            self.sessions,
            self.queues,
            self.events,
            clock,
            search_timeout_seconds=search_timeout_seconds,
        )

        # Unregistering a connection is what tears its session down.
        self.registry.add_teardown_listener(self._teardown)

        logger.info(
            "engine_initialised",
            search_timeout_seconds=search_timeout_seconds,
            chat_max_length=chat_max_length,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchmakingEngine":
        return cls(
            search_timeout_seconds=settings.SEARCH_TIMEOUT_SECONDS,
            chat_max_length=settings.CHAT_MAX_LENGTH,
            display_name_max_length=settings.DISPLAY_NAME_MAX_LENGTH,
        )

    # ── Connection lifecycle ──────────────────────────────────────────────

    @_locked
    def connect(self, connection_id: str) -> list[Outbound]:
        """Register a new connection and create its Idle session."""
        if self.registry.is_live(connection_id):
            return []

        self.registry.register(connection_id)
        session = self.sessions.create(connection_id, connected_at=self._clock())

        logger.info("user_connected", connection_id=connection_id, online=self.registry.count)
        self.events.publish(USER_CONNECTED, {"connectionId": connection_id})

        return [
            Outbound(
                INIT,
                {
                    "user": session.profile.to_public(connection_id),
                    "preferences": session.preferences.to_wire(),
                    "regions": list(REGIONS),
                },
                to=connection_id,
            )
        ]

    @_locked
    def disconnect(self, connection_id: str, reason: EndReason = EndReason.DISCONNECTED) -> list[Outbound]:
        """Unregister the connection; the teardown listener does the rest."""
        self._end_reasons[connection_id] = reason
        try:
            return self.registry.unregister(connection_id)
        finally:
            self._end_reasons.pop(connection_id, None)

    def _teardown(self, connection_id: str) -> list[Outbound]:
        reason = self._end_reasons.get(connection_id, EndReason.DISCONNECTED)
        outbound: list[Outbound] = []
        session = self.sessions.get(connection_id)
        if session is None:
            return outbound

        outbound.extend(self._leave_partner(connection_id, reason))
        self.queues.cancel(session)
        self.sessions.remove(connection_id)

        logger.info("user_disconnected", connection_id=connection_id, online=self.registry.count)
        self.events.publish(USER_DISCONNECTED, {"connectionId": connection_id})
        return outbound

    # ── Searching ─────────────────────────────────────────────────────────

    @_locked
    def find_match(self, connection_id: str, preferences: Any = None) -> list[Outbound]:
        """Bind the requester to a waiting partner, or queue it.

        Ignored while Bound.  While already Searching, the current queue
        position is re-sent unless the request changed the filters, in which
        case the search is re-run against them.
        """
        session = self.sessions.get(connection_id)
        if session is None:
            return []
        log = logger.bind(connection_id=connection_id)

        if session.is_bound:
            log.debug("find_match_ignored", reason="already_bound")
            return []

        applied: list[str] = []
        if isinstance(preferences, dict):
            applied = self.sessions.update_preferences(connection_id, preferences)

        if session.is_searching and not applied:
            return [self._searching_notice(session)]

        return self._search(session)

    def _search(self, session: UserSession) -> list[Outbound]:
        """Match or queue ``session``.

        A session that is already waiting keeps its original
        ``search_started_at``; its queue entry is replaced.
        """
        self.queues.dequeue_all(session.id)
        found = self.matcher.find_match(session.id)
        if found is not None:
            candidate_id, category = found
            if self.pairing.bind(session.id, candidate_id):
                return self._match_notices(initiator_id=session.id, waiting_id=candidate_id)

            candidate = self.sessions.get(candidate_id)
            if candidate is not None and candidate.is_searching:
                self.queues.push_front(candidate, category)

        self.queues.enqueue(session)
        logger.info(
            "search_queued",
            connection_id=session.id,
            queue=session.queue_category,
            position=self.queues.position(session.id),
        )
        return [self._searching_notice(session)]

    @_locked
    def cancel_search(self, connection_id: str) -> list[Outbound]:
        session = self.sessions.get(connection_id)
        if session is None:
            return []
        if self.queues.cancel(session):
            logger.info("search_cancelled", connection_id=connection_id)
        return [Outbound(SEARCH_CANCELLED, None, to=connection_id)]

    # ── Ending sessions ───────────────────────────────────────────────────

    @_locked
    def skip(self, connection_id: str) -> list[Outbound]:
        """Leave the current partner and immediately search again."""
        session = self.sessions.get(connection_id)
        if session is None:
            return []
        outbound = self._leave_partner(connection_id, EndReason.SKIPPED)
        if not session.is_searching:
            outbound.extend(self._search(session))
        return outbound

    @_locked
    def end_call(self, connection_id: str) -> list[Outbound]:
        if self.sessions.get(connection_id) is None:
            return []
        outbound = self._leave_partner(connection_id, EndReason.ENDED)
        outbound.append(Outbound(CALL_ENDED, None, to=connection_id))
        return outbound

    @_locked
    def block_partner(self, connection_id: str) -> list[Outbound]:
        partner = self.pairing.partner_of(connection_id)
        if partner is None:
            return []
        self.block_list.block(connection_id, partner.id)
        outbound = self._leave_partner(connection_id, EndReason.BLOCKED)
        outbound.append(Outbound(USER_BLOCKED, None, to=connection_id))
        return outbound

    @_locked
    def report_partner(self, connection_id: str, data: Any = None) -> list[Outbound]:
        partner = self.pairing.partner_of(connection_id)
        if partner is None:
            return []
        data = data if isinstance(data, dict) else {}
        self.reports.record(connection_id, partner.id, data.get("reason"), data.get("details"))
        self.block_list.block(connection_id, partner.id)
        outbound = self._leave_partner(connection_id, EndReason.REPORTED)
        outbound.append(Outbound(REPORT_SUBMITTED, None, to=connection_id))
        return outbound

    def _leave_partner(self, connection_id: str, reason: EndReason) -> list[Outbound]:
        partner_id = self.pairing.unbind(connection_id, reason)
        if partner_id is None:
            return []
        return [Outbound(PARTNER_LEFT, {"reason": reason.value}, to=partner_id)]

    # ── Relay ─────────────────────────────────────────────────────────────

    @_locked
    def relay_signal(self, connection_id: str, kind: str, payload: Any) -> list[Outbound]:
        return self.relay.relay_negotiation(connection_id, kind, payload)

    @_locked
    def relay_chat(self, connection_id: str, data: Any) -> list[Outbound]:
        return self.relay.relay_chat(connection_id, data)

    @_locked
    def relay_typing(self, connection_id: str) -> list[Outbound]:
        return self.relay.relay_typing(connection_id)

    # ── Profile ───────────────────────────────────────────────────────────

    @_locked
    def update_profile(self, connection_id: str, patch: Any) -> list[Outbound]:
        """Apply profile and filter fields; invalid ones are ignored."""
        session = self.sessions.get(connection_id)
        if session is None:
            return []

        applied = self.sessions.update_profile(connection_id, patch)
        applied += self.sessions.update_preferences(connection_id, patch)
        logger.info("profile_updated", connection_id=connection_id, fields=applied)

        outbound = [
            Outbound(
                PROFILE_UPDATED,
                {
                    "user": session.profile.to_public(connection_id),
                    "preferences": session.preferences.to_wire(),
                },
                to=connection_id,
            )
        ]

        # A waiting session is re-matched against its new filters.
        if session.is_searching and applied:
            outbound.extend(self._search(session))
        return outbound

    # ── Housekeeping & stats ──────────────────────────────────────────────

    @_locked
    def sweep(self, transport_probe: TransportProbe | None = None) -> list[Outbound]:
        outbound, summary = self.housekeeping.sweep(transport_probe)
        logger.info("housekeeping_sweep_complete", **summary)
        return outbound

    @_locked
    def stats(self) -> dict[str, int]:
        bound = sum(1 for s in self.sessions.values() if s.is_bound)
        return {
            "online_count": self.registry.count,
            "searching_count": len(self.queues),
            "active_session_count": bound // 2,
        }

    @_locked
    def invariant_violations(self) -> list[str]:
        """Describe every broken session/queue invariant; empty when sound."""
        problems: list[str] = []
        seen: dict[str, str] = {}

        for category, connection_id in self.queues.entries():
            if connection_id in seen:
                problems.append(
                    f"{connection_id} queued in both {seen[connection_id]} and {category}"
                )
            seen[connection_id] = category

            session = self.sessions.get(connection_id)
            if session is None or not self.registry.is_live(connection_id):
                problems.append(f"{connection_id} queued in {category} without a live session")
            elif not session.is_searching:
                problems.append(f"{connection_id} queued in {category} while {session.state.value}")

        for session in self.sessions.values():
            queued = self.queues.raw_count(session.id)
            if session.state is LifecycleState.BOUND:
                partner = self.sessions.get(session.partner_id) if session.partner_id else None
                if partner is None or partner.partner_id != session.id or not partner.is_bound:
                    problems.append(f"{session.id} bound without a symmetric partner")
            elif session.partner_id is not None:
                problems.append(f"{session.id} has a partner while {session.state.value}")

            if session.state is LifecycleState.SEARCHING and queued != 1:
                problems.append(f"{session.id} searching but queued {queued} times")
            if session.state is not LifecycleState.SEARCHING and queued:
                problems.append(f"{session.id} {session.state.value} but still queued")

        return problems

    # ── Notice builders ───────────────────────────────────────────────────

    def _searching_notice(self, session: UserSession) -> Outbound:
        return Outbound(
            SEARCHING,
            {"queuePosition": self.queues.position(session.id)},
            to=session.id,
        )

    def _match_notices(self, initiator_id: str, waiting_id: str) -> list[Outbound]:
        """``match-found`` for both sides; the new arrival starts negotiation."""
        initiator = self.sessions.get(initiator_id)
        waiting = self.sessions.get(waiting_id)
        return [
            Outbound(
                MATCH_FOUND,
                {
                    "partnerId": waiting_id,
                    "partnerPublicProfile": waiting.profile.to_public(waiting_id),
                    "isInitiator": True,
                },
                to=initiator_id,
            ),
            Outbound(
                MATCH_FOUND,
                {
                    "partnerId": initiator_id,
                    "partnerPublicProfile": initiator.profile.to_public(initiator_id),
                    "isInitiator": False,
                },
                to=waiting_id,
            ),
        ]
