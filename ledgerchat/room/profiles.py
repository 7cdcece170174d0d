from __future__ import annotations

import asyncio
from collections.abc import Iterable

from ..errors import ProfileLookupFailure
from ..models import Profile, normalize_address, short_address
from ..runtime.events import EventBus
from .base import ProfileDirectory


class ChainedProfileDirectory:
    """Asks each directory in turn; the first profile with a username wins."""

    def __init__(self, directories: list[ProfileDirectory]) -> None:
        self.directories = list(directories)

    async def resolve_profile(self, address: str) -> Profile | None:
        errors: list[str] = []
        for directory in self.directories:
            try:
                profile = await directory.resolve_profile(address)
            except Exception as exc:  # noqa: BLE001
                errors.append(str(exc))
                continue
            if profile is not None and profile.username:
                return profile
        if errors and len(errors) == len(self.directories):
            raise ProfileLookupFailure(address, "; ".join(errors))
        return None


class ProfileCache:
    """Session-lifetime cache of sender profiles.

    Only addresses never seen before are looked up. Lookups run concurrently
    and fail independently; a miss is remembered until ``forget_misses``.
    """

    def __init__(self, directory: ProfileDirectory | None, *, event_bus: EventBus) -> None:
        self.directory = directory
        self.event_bus = event_bus
        self._profiles: dict[str, Profile] = {}
        self._misses: set[str] = set()
        self._inflight: set[str] = set()
        self.lookups = 0

    @property
    def profiles(self) -> dict[str, Profile]:
        return dict(self._profiles)

    def get(self, address: str) -> Profile | None:
        return self._profiles.get(normalize_address(address))

    def display_name(self, address: str) -> str:
        profile = self.get(address)
        if profile is not None and profile.username:
            return profile.username
        return short_address(normalize_address(address))

    def forget_misses(self) -> None:
        self._misses.clear()

    async def resolve_new(self, addresses: Iterable[str]) -> dict[str, Profile]:
        if self.directory is None:
            return {}
        pending: list[str] = []
        for raw in addresses:
            address = normalize_address(raw)
            if not address or address in pending:
                continue
            if address in self._profiles or address in self._misses or address in self._inflight:
                continue
            pending.append(address)
        if not pending:
            return {}

        self._inflight.update(pending)
        try:
            results = await asyncio.gather(*(self._resolve_one(address) for address in pending))
        finally:
            self._inflight.difference_update(pending)

        resolved: dict[str, Profile] = {}
        for address, profile in zip(pending, results):
            if profile is None or not profile.username:
                self._misses.add(address)
                continue
            self._profiles[address] = profile
            resolved[address] = profile
        if resolved:
            self.event_bus.publish_event(
                "profile.resolved",
                f"Resolved {len(resolved)} of {len(pending)} new profiles.",
                severity="debug",
                source="profiles",
                metadata={"addresses": sorted(resolved)},
            )
        return resolved

    async def _resolve_one(self, address: str) -> Profile | None:
        assert self.directory is not None
        self.lookups += 1
        try:
            return await self.directory.resolve_profile(address)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.event_bus.publish_event(
                "profile.lookup.failed",
                f"Profile lookup failed for {short_address(address)}: {exc}",
                severity="debug",
                source="profiles",
                metadata={"address": address},
            )
            return None
