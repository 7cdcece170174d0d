from __future__ import annotations

import contextlib
from collections.abc import Callable
from typing import Any

from ..errors import TransientFetchFailure
from ..models import RoomSnapshot, is_unassigned
from ..runtime.events import EventBus
from .base import LedgerQuery
from .projection import MessageProjection

SnapshotHandler = Callable[[RoomSnapshot], Any]


class SnapshotFetcher:
    """Pulls the room from the ledger and republishes the merged projection.

    A failed or empty fetch keeps the previous snapshot; retrying is left to
    whoever triggers the next fetch.
    """

    def __init__(
        self,
        *,
        room_id: str,
        query: LedgerQuery,
        event_bus: EventBus,
        projection: MessageProjection | None = None,
    ) -> None:
        self.room_id = room_id
        self.query = query
        self.event_bus = event_bus
        self.projection = projection or MessageProjection(room_id)
        self.snapshot: RoomSnapshot | None = None
        self.fetches = 0
        self.failures = 0
        self._handlers: list[SnapshotHandler] = []

    def subscribe(self, handler: SnapshotHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    async def fetch(self) -> RoomSnapshot | None:
        if is_unassigned(self.room_id):
            return None
        self.fetches += 1
        try:
            raw = await self.query.fetch_snapshot(self.room_id)
        except TransientFetchFailure as exc:
            self._record_failure(str(exc))
            return None
        except Exception as exc:  # noqa: BLE001
            self._record_failure(f"{type(exc).__name__}: {exc}")
            return None

        if raw is None or not raw.found:
            self.event_bus.publish_event(
                "room.fetch.not_found",
                f"Room {self.room_id} was not found on the ledger.",
                severity="warn",
                source="fetcher",
                metadata={"room_id": self.room_id},
            )
            return None

        snapshot = self.projection.merge(raw)
        self.snapshot = snapshot
        self.event_bus.publish_event(
            "room.snapshot.merged",
            f"Merged snapshot with {snapshot.message_count} messages.",
            severity="debug",
            source="fetcher",
            metadata={"room_id": self.room_id, "messages": snapshot.message_count},
        )
        for handler in list(self._handlers):
            try:
                handler(snapshot)
            except Exception as exc:  # noqa: BLE001
                self.event_bus.publish_event(
                    "room.snapshot.handler_failed",
                    f"Snapshot subscriber failed: {exc}",
                    severity="error",
                    source="fetcher",
                )
        return snapshot

    def _record_failure(self, detail: str) -> None:
        self.failures += 1
        self.event_bus.publish_event(
            "room.fetch.failed",
            f"Snapshot fetch failed; keeping previous state. {detail}",
            severity="warn",
            source="fetcher",
            metadata={"room_id": self.room_id, "failures": self.failures},
        )
