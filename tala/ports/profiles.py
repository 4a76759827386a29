"""
Profile Directory port.

Read-only lookup of a child's profile, used to build the profile context
block that the classifier and extractor see.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

from tala.errors import UpstreamUnavailable
from tala.ports.http import get_json


@dataclass(frozen=True)
class Profile:
    """A child profile plus guardian details."""

    profile_id: int
    name: str
    birth_date: date | None = None
    gender: str | None = None
    guardian_name: str | None = None
    guardian_role: str | None = None
    daycare_name: str | None = None
    concerns: str | None = None
    timezone: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, profile_id: int, data: dict[str, Any]) -> Profile:
        """Build from a profile service JSON reply (camelCase keys)."""
        birth = data.get("birthDate")
        daycare = data.get("daycareName") if data.get("hasDaycare", True) else None
        known = {
            "id",
            "babyName",
            "birthDate",
            "gender",
            "parentName",
            "parentRole",
            "daycareName",
            "hasDaycare",
            "concerns",
            "timezone",
        }
        return cls(
            profile_id=int(data.get("id", profile_id)),
            name=data.get("babyName") or "",
            birth_date=date.fromisoformat(birth[:10]) if birth else None,
            gender=data.get("gender"),
            guardian_name=data.get("parentName"),
            guardian_role=data.get("parentRole"),
            daycare_name=daycare,
            concerns=data.get("concerns"),
            timezone=data.get("timezone"),
            extra={k: v for k, v in data.items() if k not in known},
        )


class ProfileDirectory(Protocol):
    """Protocol for profile lookups."""

    def get_profile(self, profile_id: int) -> Profile:
        """
        Raises:
            UpstreamUnavailable: If the profile service fails or has no such profile
        """
        ...


class HttpProfileDirectory:
    """Production adapter: GET {base_url}/api/v1/profiles/{id}."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def get_profile(self, profile_id: int) -> Profile:
        data = get_json("profile_directory", f"{self.base_url}/api/v1/profiles/{profile_id}")
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Profile {profile_id} lookup returned no data", "profile_directory")
        try:
            return Profile.from_api(profile_id, data)
        except (TypeError, ValueError) as e:
            raise UpstreamUnavailable(
                f"Profile {profile_id} data invalid: {e}", "profile_directory"
            ) from e


class InMemoryProfileDirectory:
    """Fake adapter; set `unavailable` to simulate an outage."""

    def __init__(self, profiles: list[Profile] | None = None):
        self.profiles: dict[int, Profile] = {p.profile_id: p for p in profiles or []}
        self.unavailable = False

    def add(self, profile: Profile) -> None:
        self.profiles[profile.profile_id] = profile

    def get_profile(self, profile_id: int) -> Profile:
        if self.unavailable:
            raise UpstreamUnavailable("Profile directory unavailable", "profile_directory")
        try:
            return self.profiles[profile_id]
        except KeyError:
            raise UpstreamUnavailable(
                f"Profile {profile_id} not found", "profile_directory", status_code=404
            ) from None
