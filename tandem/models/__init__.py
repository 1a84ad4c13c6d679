"""
Tandem — session model registry.

Re-exports the in-memory records so callers can import them from one place.
"""

from tandem.models.session import (
    REGIONS,
    Gender,
    GenderInterest,
    LifecycleState,
    Preferences,
    Profile,
    UserSession,
    random_display_name,
)

__all__ = [
    "REGIONS",
    "Gender",
    "GenderInterest",
    "LifecycleState",
    "Preferences",
    "Profile",
    "UserSession",
    "random_display_name",
]
