"""
Tandem — Matching Algorithm

Finds the first compatible, available partner for a searching connection.

Scan order:
  1. Preferred queue: the waiting sessions whose gender interest names the
     requester's own gender (``prefers-male`` / ``prefers-female``), or the
     ``any`` queue when the requester's gender is unset.
  2. Fallback queue: ``any`` (skipped if it was already scanned).

Within a queue the earliest arrival wins (FIFO).  There is no priority across
queues beyond preferred-before-fallback, so a later arrival in the preferred
queue is served ahead of an earlier arrival in the fallback queue.

Compatibility is checked in both directions: the candidate must satisfy the
requester's filters AND the requester must satisfy the candidate's, and
neither may have blocked the other.
"""

from __future__ import annotations

import structlog

from tandem.models.session import Gender, UserSession
from tandem.services.moderation import BlockList
from tandem.services.queue_service import (
    ANY_QUEUE,
    PREFERS_FEMALE_QUEUE,
    PREFERS_MALE_QUEUE,
    QueueSet,
)
from tandem.services.registry import ConnectionRegistry
from tandem.services.session_store import SessionStore

logger = structlog.get_logger("tandem.matching_service")

_GENDER_TO_QUEUE: dict[Gender, str] = {
    Gender.MALE: PREFERS_MALE_QUEUE,
    Gender.FEMALE: PREFERS_FEMALE_QUEUE,
}


class MatchingService:
    """Queue scanner with bidirectional filter checks.

    Dependencies are injected at construction so that the service can be
    tested against an isolated registry, store and queue set.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionStore,
        queues: QueueSet,
        block_list: BlockList,
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.queues = queues
        self.block_list = block_list

    # ── Public API ────────────────────────────────────────────────────────

    def scan_order(self, requester: UserSession) -> list[str]:
        """Queue categories to scan for ``requester``, in priority order."""
        gender = requester.profile.gender
        preferred = _GENDER_TO_QUEUE.get(gender, ANY_QUEUE) if gender else ANY_QUEUE
        if preferred == ANY_QUEUE:
            return [ANY_QUEUE]
        return [preferred, ANY_QUEUE]

    def is_compatible(self, a: UserSession, b: UserSession) -> bool:
        """Bidirectional filter check plus mutual block check."""
        if a.id == b.id:
            return False
        if not a.preferences.accepts(b.profile):
            return False
        if not b.preferences.accepts(a.profile):
            return False
        if self.block_list.is_blocked(a.id, b.id):
            return False
        return True

    def find_match(self, requester_id: str) -> tuple[str, str] | None:
        """Take the first compatible candidate out of its queue.

        Returns ``(candidate_id, category)`` so that the caller can restore
        the candidate if the bind is rejected, or None when nobody fits.
        Stale entries met on the way are discarded.
        """
        requester = self.sessions.get(requester_id)
        if requester is None:
            return None

        log = logger.bind(connection_id=requester_id)

        for category in self.scan_order(requester):
            for candidate_id in self.queues.members(category):
                if candidate_id == requester_id:
                    continue

                candidate = self.sessions.get(candidate_id)
                if (
                    candidate is None
                    or not self.registry.is_live(candidate_id)
                    or not candidate.is_searching
                ):
                    self.queues.dequeue_all(candidate_id)
                    log.info("stale_queue_entry_dropped", candidate_id=candidate_id, queue=category)
                    continue

                if not self.is_compatible(requester, candidate):
                    continue

                self.queues.dequeue_all(candidate_id)
                log.info("match_candidate_found", candidate_id=candidate_id, queue=category)
                return candidate_id, category

        log.debug("match_candidate_not_found")
        return None
