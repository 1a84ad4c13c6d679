"""
Tandem — Matchmaking Queue Set

Named, disjoint FIFO waiting lists of searching connection ids.  A waiting
session is filed under the category named by its own gender interest
(``any``, ``prefers-male``, ``prefers-female``); further categories are
created on first insert.

Invariants maintained here:
  - an id appears in at most one queue, at most once;
  - a session is Searching iff it sits in a queue (``enqueue``/``cancel``
    are the only places that flip the state in or out of Searching).
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Iterator

import structlog

from tandem.models.session import GenderInterest, LifecycleState, UserSession

logger = structlog.get_logger("tandem.queue_service")

ANY_QUEUE = "any"
PREFERS_MALE_QUEUE = "prefers-male"
PREFERS_FEMALE_QUEUE = "prefers-female"

DEFAULT_CATEGORIES: tuple[str, ...] = (ANY_QUEUE, PREFERS_MALE_QUEUE, PREFERS_FEMALE_QUEUE)

_INTEREST_TO_CATEGORY: dict[GenderInterest, str] = {
    GenderInterest.ANY: ANY_QUEUE,
    GenderInterest.MALE: PREFERS_MALE_QUEUE,
    GenderInterest.FEMALE: PREFERS_FEMALE_QUEUE,
}


def category_for(session: UserSession) -> str:
    """Queue a waiting session is filed under."""
    return _INTEREST_TO_CATEGORY[session.preferences.gender_interest]


class QueueSet:
    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._queues: dict[str, deque[str]] = {c: deque() for c in DEFAULT_CATEGORIES}
        self._membership: dict[str, str] = {}

    # ── Mutations ─────────────────────────────────────────────────────

    def enqueue(self, session: UserSession, category: str | None = None) -> str:
        """Append ``session`` to the tail of its queue and mark it Searching.

        Any previous queue entry for the id is removed first.  Returns the
        category it was filed under.
        """
        self.dequeue_all(session.id)

        target = category or category_for(session)
        self._queues.setdefault(target, deque()).append(session.id)
        self._membership[session.id] = target

        session.state = LifecycleState.SEARCHING
        session.queue_category = target
        if session.search_started_at is None:
            session.search_started_at = self._clock()

        logger.debug(
            "session_enqueued",
            connection_id=session.id,
            queue=target,
            queue_length=len(self._queues[target]),
        )
        return target

    def push_front(self, session: UserSession, category: str) -> None:
        """Restore a session to the head of ``category``.

        Used when a candidate taken out by the matcher could not be bound; it
        keeps its place ahead of later arrivals.
        """
        self.dequeue_all(session.id)
        self._queues.setdefault(category, deque()).appendleft(session.id)
        self._membership[session.id] = category
        session.state = LifecycleState.SEARCHING
        session.queue_category = category

    def dequeue_all(self, connection_id: str) -> str | None:
        """Remove ``connection_id`` from whichever queue holds it.

        Returns the category it was removed from, or None if it was not
        queued.  Lifecycle fields are not touched.
        """
        category = self._membership.pop(connection_id, None)
        if category is None:
            return None
        try:
            self._queues[category].remove(connection_id)
        except ValueError:
            logger.warning("queue_membership_out_of_sync", connection_id=connection_id, queue=category)
        return category

    def cancel(self, session: UserSession) -> bool:
        """Stop a search: dequeue and reset the session to Idle.

        Shared by explicit cancel, disconnect and the search timeout.
        Returns True if the session was Searching.
        """
        was_searching = session.is_searching
        self.dequeue_all(session.id)
        if was_searching:
            session.state = LifecycleState.IDLE
        session.queue_category = None
        session.search_started_at = None
        return was_searching

    # ── Queries ───────────────────────────────────────────────────────

    def members(self, category: str) -> list[str]:
        """Snapshot of a queue, front to back."""
        return list(self._queues.get(category, ()))

    def category_of(self, connection_id: str) -> str | None:
        return self._membership.get(connection_id)

    def position(self, connection_id: str) -> int | None:
        """1-based position inside its own queue."""
        category = self._membership.get(connection_id)
        if category is None:
            return None
        return self._queues[category].index(connection_id) + 1

    def categories(self) -> list[str]:
        return list(self._queues)

    def entries(self) -> Iterator[tuple[str, str]]:
        """Yield ``(category, connection_id)`` for every entry."""
        for category, queue in list(self._queues.items()):
            for connection_id in list(queue):
                yield category, connection_id

    def raw_count(self, connection_id: str) -> int:
        """Number of queue slots holding ``connection_id``, across all queues."""
        return sum(queue.count(connection_id) for queue in self._queues.values())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._membership

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())
