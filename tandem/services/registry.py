"""
Tandem — Connection Registry

Tracks which transport connection ids are currently live.  It owns nothing
but liveness; teardown of everything hanging off a connection is delegated
to listeners that run when the connection is unregistered.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Iterable

import structlog

logger = structlog.get_logger("tandem.registry")

TeardownListener = Callable[[str], Iterable[Any] | None]


class ConnectionRegistry:
    """Set of live connection ids with unregister listeners."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._live: dict[str, float] = {}
        self._listeners: list[TeardownListener] = []

    def add_teardown_listener(self, listener: TeardownListener) -> None:
        self._listeners.append(listener)

    def register(self, connection_id: str) -> None:
        if connection_id in self._live:
            return
        self._live[connection_id] = self._clock()
        logger.debug("connection_registered", connection_id=connection_id)

    def unregister(self, connection_id: str) -> list[Any]:
        """Drop a connection and run every teardown listener for it.

        Returns the concatenated results of the listeners.  Unknown ids are a
        no-op and return an empty list.
        """
        if self._live.pop(connection_id, None) is None:
            return []

        logger.debug("connection_unregistered", connection_id=connection_id)

        results: list[Any] = []
        for listener in self._listeners:
            results.extend(listener(connection_id) or ())
        return results

    def is_live(self, connection_id: str) -> bool:
        return connection_id in self._live

    def connected_at(self, connection_id: str) -> float | None:
        return self._live.get(connection_id)

    def ids(self) -> list[str]:
        return list(self._live)

    @property
    def count(self) -> int:
        return len(self._live)
