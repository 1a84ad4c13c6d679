"""
Tandem — User Session Store

Owns one ``UserSession`` per connection.  Preference and profile updates are
validated here, field by field; lifecycle fields are left to the queue set
and the pairing coordinator.
"""

from __future__ import annotations

from typing import Any, Iterator

import structlog

from tandem.models.session import Profile, UserSession

logger = structlog.get_logger("tandem.session_store")

_PREFERENCE_KEYS = frozenset({"genderInterest", "regionFilter", "languageFilter"})
_PROFILE_KEYS = frozenset({"name", "gender", "region", "language"})


class SessionStore:
    def __init__(self, name_max_length: int = 20) -> None:
        self._sessions: dict[str, UserSession] = {}
        self.name_max_length = name_max_length

    def create(
        self,
        connection_id: str,
        profile: Profile | None = None,
        connected_at: float = 0.0,
    ) -> UserSession:
        """Create the session for a new connection.

        Creating an id that already exists returns the existing record
        untouched.
        """
        existing = self._sessions.get(connection_id)
        if existing is not None:
            return existing

        session = UserSession(
            id=connection_id,
            profile=profile or Profile(),
            connected_at=connected_at,
        )
        self._sessions[connection_id] = session
        logger.debug(
            "session_created",
            connection_id=connection_id,
            display_name=session.profile.display_name,
        )
        return session

    def get(self, connection_id: str) -> UserSession | None:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> UserSession | None:
        return self._sessions.pop(connection_id, None)

    def update_preferences(self, connection_id: str, patch: Any) -> list[str]:
        """Apply the known, valid filter fields of ``patch``.

        Returns the wire names of the fields that were written.  A missing
        session or a non-dict patch is a no-op.
        """
        session = self._sessions.get(connection_id)
        if session is None or not isinstance(patch, dict):
            return []

        ignored = sorted(k for k in patch if k not in _PREFERENCE_KEYS | _PROFILE_KEYS)
        applied = session.preferences.apply(patch)
        if ignored:
            logger.debug("preference_keys_ignored", connection_id=connection_id, keys=ignored)
        return applied

    def update_profile(self, connection_id: str, patch: Any) -> list[str]:
        session = self._sessions.get(connection_id)
        if session is None or not isinstance(patch, dict):
            return []
        return session.profile.apply(patch, name_max_length=self.name_max_length)

    def values(self) -> list[UserSession]:
        return list(self._sessions.values())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __iter__(self) -> Iterator[UserSession]:
        return iter(self.values())

    def __len__(self) -> int:
        return len(self._sessions)
