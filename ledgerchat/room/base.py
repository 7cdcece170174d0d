from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from ..models import MutationResult, Profile, RoomSnapshot

EventKindHandler = Callable[[str], Any]
Unsubscribe = Callable[[], Awaitable[None]]


class LedgerQuery(Protocol):
    async def fetch_snapshot(self, room_id: str) -> RoomSnapshot:
        """Return the room's current state; ``found=False`` when the object is missing.

        Raises ``TransientFetchFailure`` when the query itself fails.
        """
        ...


class LedgerMutations(Protocol):
    async def submit(self, room_id: str, action: str, args: dict[str, Any]) -> MutationResult:
        ...


class LedgerEventChannel(Protocol):
    async def subscribe(self, scope: str, on_event: EventKindHandler) -> Unsubscribe:
        """Start delivering event kinds for ``scope``; raises ``SubscriptionUnavailable``."""
        ...


class ProfileDirectory(Protocol):
    async def resolve_profile(self, address: str) -> Profile | None:
        ...
