"""
Tandem — In-memory session records.

One ``UserSession`` exists per live connection.  It carries the public
profile shown to a partner, the matching filters, and the lifecycle fields
that only the core may mutate (state, partner link, timestamps).
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LifecycleState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    BOUND = "bound"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class GenderInterest(str, Enum):
    MALE = "male"
    FEMALE = "female"
    ANY = "any"


REGIONS: tuple[str, ...] = ("europe", "americas", "asia", "africa", "oceania")

_LANGUAGE_RE = re.compile(r"^[a-z]{2}$")

_ADJECTIVES = [
    "Happy", "Cool", "Smart", "Funny", "Nice", "Chill", "Wild", "Sweet",
    "Brave", "Lucky", "Swift", "Clever", "Bright", "Kind", "Free", "Bold",
    "Calm", "Epic", "Fresh", "Grand",
]
_NOUNS = [
    "Panda", "Tiger", "Eagle", "Wolf", "Fox", "Bear", "Lion", "Hawk",
    "Shark", "Dragon", "Phoenix", "Dolphin", "Panther", "Owl", "Cobra",
    "Falcon", "Jaguar", "Raven", "Viper", "Lynx",
]

# Wire value that clears an optional filter.
_ANY = "any"


def random_display_name(rng: random.Random | None = None) -> str:
    """Return an anonymous handle such as ``SwiftOwl42``."""
    rng = rng or random
    return f"{rng.choice(_ADJECTIVES)}{rng.choice(_NOUNS)}{rng.randrange(1000)}"


def _parse_region(value: Any) -> tuple[bool, str | None]:
    """Return ``(valid, region)``; ``any``/empty clears the value."""
    if value in (None, "", _ANY):
        return True, None
    if isinstance(value, str) and value.lower() in REGIONS:
        return True, value.lower()
    return False, None


def _parse_language(value: Any) -> tuple[bool, str | None]:
    if value in (None, "", _ANY):
        return True, None
    if isinstance(value, str) and _LANGUAGE_RE.match(value.strip().lower()):
        return True, value.strip().lower()
    return False, None


_PROFILE_WIRE_NAMES = {
    "display_name": "name",
    "gender": "gender",
    "region": "region",
    "language": "language",
}
_PREFERENCE_WIRE_NAMES = {
    "gender_interest": "genderInterest",
    "region_filter": "regionFilter",
    "language_filter": "languageFilter",
}


def _assign_changed(record: Any, parsed: dict[str, Any], wire_names: dict[str, str]) -> list[str]:
    """Write each parsed value that differs from the current one.

    Returns the wire names of the fields that changed, in patch order.
    """
    changed: list[str] = []
    for attr, value in parsed.items():
        if getattr(record, attr) != value:
            setattr(record, attr, value)
            changed.append(wire_names[attr])
    return changed


@dataclass
class Profile:
    """Public attributes of a connection, shown to its partner."""

    display_name: str = field(default_factory=random_display_name)
    gender: Gender | None = None
    region: str | None = None
    language: str | None = None

    def apply(self, patch: dict[str, Any], name_max_length: int = 20) -> list[str]:
        """Apply a wire patch field by field.

        Unknown keys and invalid values are ignored; the names of the fields
        whose value actually changed are returned.
        """
        parsed: dict[str, Any] = {}

        if "name" in patch and patch["name"] is not None:
            name = str(patch["name"])[:name_max_length].strip()
            if name:
                parsed["display_name"] = name

        if "gender" in patch:
            value = patch["gender"]
            if value in (None, "", _ANY):
                parsed["gender"] = None
            elif isinstance(value, str) and value in Gender._value2member_map_:
                parsed["gender"] = Gender(value)

        if "region" in patch:
            ok, region = _parse_region(patch["region"])
            if ok:
                parsed["region"] = region

        if "language" in patch:
            ok, language = _parse_language(patch["language"])
            if ok:
                parsed["language"] = language

        return _assign_changed(self, parsed, _PROFILE_WIRE_NAMES)

    def to_public(self, connection_id: str) -> dict[str, Any]:
        return {
            "id": connection_id,
            "name": self.display_name,
            "gender": self.gender.value if self.gender else None,
            "region": self.region,
            "language": self.language,
        }


@dataclass
class Preferences:
    """Matching filters.  Every filter defaults to "any"."""

    gender_interest: GenderInterest = GenderInterest.ANY
    region_filter: str | None = None
    language_filter: str | None = None

    def apply(self, patch: dict[str, Any]) -> list[str]:
        """Apply a wire patch; same ignore-invalid rules as ``Profile.apply``."""
        parsed: dict[str, Any] = {}

        if "genderInterest" in patch:
            value = patch["genderInterest"]
            if value in (None, ""):
                value = _ANY
            if isinstance(value, str) and value in GenderInterest._value2member_map_:
                parsed["gender_interest"] = GenderInterest(value)

        if "regionFilter" in patch:
            ok, region = _parse_region(patch["regionFilter"])
            if ok:
                parsed["region_filter"] = region

        if "languageFilter" in patch:
            ok, language = _parse_language(patch["languageFilter"])
            if ok:
                parsed["language_filter"] = language

        return _assign_changed(self, parsed, _PREFERENCE_WIRE_NAMES)

    def accepts(self, profile: Profile) -> bool:
        """True if ``profile`` satisfies every filter.

        A filter that names a value never matches an unset attribute.
        """
        if self.gender_interest is not GenderInterest.ANY:
            if profile.gender is None or profile.gender.value != self.gender_interest.value:
                return False
        if self.region_filter is not None and profile.region != self.region_filter:
            return False
        if self.language_filter is not None and profile.language != self.language_filter:
            return False
        return True

    def to_wire(self) -> dict[str, Any]:
        return {
            "genderInterest": self.gender_interest.value,
            "regionFilter": self.region_filter or _ANY,
            "languageFilter": self.language_filter or _ANY,
        }


@dataclass
class UserSession:
    id: str
    profile: Profile = field(default_factory=Profile)
    preferences: Preferences = field(default_factory=Preferences)
    state: LifecycleState = LifecycleState.IDLE
    partner_id: str | None = None
    queue_category: str | None = None
    connected_at: float = 0.0
    search_started_at: float | None = None
    call_started_at: float | None = None
    call_ended_at: float | None = None
    total_call_seconds: float = 0.0

    @property
    def is_bound(self) -> bool:
        return self.state is LifecycleState.BOUND

    @property
    def is_searching(self) -> bool:
        return self.state is LifecycleState.SEARCHING
