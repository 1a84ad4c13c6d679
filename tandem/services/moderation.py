"""
Tandem — Block list and abuse reports.

These belong to the moderation collaborator; the matching core only ever
reads ``BlockList.is_blocked``.  Both structures live in memory for the
lifetime of the process.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger("tandem.moderation")

_REASON_MAX_LENGTH = 50
_DETAILS_MAX_LENGTH = 500


class BlockList:
    def __init__(self) -> None:
        self._blocked: dict[str, set[str]] = {}

    def block(self, by_id: str, target_id: str) -> None:
        if by_id == target_id:
            return
        self._blocked.setdefault(by_id, set()).add(target_id)
        logger.info("user_blocked", by=by_id, target=target_id)

    def is_blocked(self, a_id: str, b_id: str) -> bool:
        """True if either side has blocked the other."""
        return b_id in self._blocked.get(a_id, ()) or a_id in self._blocked.get(b_id, ())


@dataclass(frozen=True)
class Report:
    reporter_id: str
    reported_id: str
    reason: str
    details: str
    created_at: float


class ReportLog:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._reports: list[Report] = []

    def record(
        self,
        reporter_id: str,
        reported_id: str,
        reason: object = None,
        details: object = None,
    ) -> Report:
        report = Report(
            reporter_id=reporter_id,
            reported_id=reported_id,
            reason=str(reason or "other")[:_REASON_MAX_LENGTH],
            details=str(details or "")[:_DETAILS_MAX_LENGTH],
            created_at=self._clock(),
        )
        self._reports.append(report)
        logger.info(
            "user_reported",
            reporter=reporter_id,
            reported=reported_id,
            reason=report.reason,
        )
        return report

    def for_user(self, connection_id: str) -> list[Report]:
        return [r for r in self._reports if r.reported_id == connection_id]

    def __len__(self) -> int:
        return len(self._reports)
