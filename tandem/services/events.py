"""
Tandem — Core event bus.

External collaborators (call history, economy, achievements) subscribe to the
lifecycle events published here.  They receive ids and timestamps only and
must never mutate session state.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

import structlog

logger = structlog.get_logger("tandem.events")

USER_CONNECTED = "user-connected"
USER_DISCONNECTED = "user-disconnected"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"
SEARCH_TIMEOUT = "search-timeout"

Subscriber = Callable[[dict[str, Any]], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> None:
        self._subscribers[event].append(callback)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        """Call every subscriber synchronously.

        A failing subscriber is logged and skipped; it never affects the core
        operation that published the event or the remaining subscribers.
        """
        for callback in list(self._subscribers.get(event, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("event_subscriber_failed", event_name=event)


# ── Notices addressed to connections ────────────────────────────────────────
#
# Core operations never talk to the transport.  They return ``Outbound``
# notices which the gateway delivers after the operation has finished.

INIT = "init"
PROFILE_UPDATED = "profile-updated"
SEARCHING = "searching"
SEARCH_CANCELLED = "search-cancelled"
MATCH_FOUND = "match-found"
PARTNER_LEFT = "partner-left"
CALL_ENDED = "call-ended"
CHAT_MESSAGE = "chat-message"
PARTNER_TYPING = "partner-typing"
USER_BLOCKED = "user-blocked"
REPORT_SUBMITTED = "report-submitted"
STATS = "stats"


@dataclass(frozen=True)
class Outbound:
    """One message for the transport; ``to=None`` means broadcast."""

    event: str
    payload: dict[str, Any] | None = None
    to: str | None = None
