from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from ..errors import MutationRejected
from ..models import ACTION_POST, MutationResult, RoomRef, RoomSnapshot, normalize_address
from ..runtime.events import EventBus
from ..runtime.tasks import cancel_tasks
from .base import LedgerEventChannel, LedgerMutations, LedgerQuery, ProfileDirectory
from .coordinator import ReadMarkingCoordinator, ReadState
from .dispatcher import DEFAULT_CONFIRM_DELAYS_S, DEFAULT_POLL_INTERVAL_S, UpdateDispatcher
from .fetcher import SnapshotFetcher
from .profiles import ProfileCache
from .projection import MessageProjection
from .visibility import DEFAULT_VISIBILITY_THRESHOLD, VisibilityMode, VisibilityTracker

MESSAGE_MAX_CHARS = 1_000
ROOM_UNAVAILABLE_NOTICE = "This room is not open yet."


class RoomSession:
    """Everything the client holds for one active room.

    The session owns the projection, read intents and profile cache and is the
    only thing that mutates them. Collaborators are wired to each other here:
    merged snapshots feed the coordinator and tracker, accepted mutations
    schedule rechecks, ledger events trigger refreshes.
    """

    def __init__(
        self,
        *,
        room: RoomRef,
        viewer: str,
        query: LedgerQuery,
        mutations: LedgerMutations,
        event_bus: EventBus,
        profile_directory: ProfileDirectory | None = None,
        event_channel: LedgerEventChannel | None = None,
        event_scope: str = "",
        mode: VisibilityMode = VisibilityMode.BATCH,
        visibility_threshold: float = DEFAULT_VISIBILITY_THRESHOLD,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        confirm_delays_s: tuple[float, ...] = DEFAULT_CONFIRM_DELAYS_S,
        poll_with_events: bool = True,
        on_snapshot: Callable[[RoomSnapshot], Any] | None = None,
        on_notice: Callable[[str], Any] | None = None,
    ) -> None:
        self.room = room
        self.viewer = normalize_address(viewer)
        self.mutations = mutations
        self.event_bus = event_bus
        self.on_snapshot = on_snapshot
        self.on_notice = on_notice
        self.notices: list[str] = []

        self.projection = MessageProjection(room.id)
        self.fetcher = SnapshotFetcher(room_id=room.id, query=query, event_bus=event_bus, projection=self.projection)
        self.profiles = ProfileCache(profile_directory, event_bus=event_bus)
        self.dispatcher = UpdateDispatcher(
            fetch=self.fetcher.fetch,
            event_bus=event_bus,
            poll_interval_s=poll_interval_s,
            confirm_delays_s=confirm_delays_s,
            poll_with_events=poll_with_events,
            event_channel=event_channel,
            event_scope=event_scope,
            on_profile_event=self.profiles.forget_misses,
        )
        self.coordinator = ReadMarkingCoordinator(
            room_id=room.id,
            viewer=self.viewer,
            mutations=mutations,
            event_bus=event_bus,
            on_accepted=self.dispatcher.schedule_confirmation_refreshes,
            on_notice=self._notice,
        )
        self.tracker = VisibilityTracker(on_visible=self._on_visible, mode=mode, threshold=visibility_threshold)

        self._active = False
        self._profile_tasks: set[asyncio.Task[Any]] = set()
        self.fetcher.subscribe(self._on_snapshot)

    @property
    def available(self) -> bool:
        return self.room.available

    @property
    def active(self) -> bool:
        return self._active

    @property
    def snapshot(self) -> RoomSnapshot | None:
        return self.fetcher.snapshot

    async def __aenter__(self) -> "RoomSession":
        await self.activate()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.deactivate()

    async def activate(self) -> None:
        if self._active:
            return
        if not self.available:
            self.event_bus.publish_event(
                "room.unavailable",
                f"{self.room.name} has no ledger object yet.",
                severity="warn",
                source="session",
                metadata={"room_id": self.room.id},
            )
            self._notice(ROOM_UNAVAILABLE_NOTICE)
            return
        self._active = True
        self.coordinator.resume()
        self.event_bus.publish_event(
            "room.activated",
            f"Activated {self.room.name}.",
            source="session",
            metadata={"room_id": self.room.id, "viewer": self.viewer, "mode": self.tracker.mode.value},
        )
        await self.dispatcher.start()

    async def deactivate(self) -> None:
        if not self._active:
            return
        self._active = False
        await self.dispatcher.stop()
        await self.coordinator.close()
        await cancel_tasks(self._profile_tasks)
        self.event_bus.publish_event(
            "room.deactivated",
            f"Deactivated {self.room.name}.",
            source="session",
            metadata={"room_id": self.room.id},
        )

    async def wait_for_refresh(self) -> RoomSnapshot | None:
        await self.dispatcher.wait_idle()
        return self.snapshot

    def report_visibility(self, position: int, ratio: float) -> tuple[int, ...]:
        return self.report_visibility_many({position: ratio})

    def report_visibility_many(self, ratios: dict[int, float]) -> tuple[int, ...]:
        if not self._active:
            return ()
        return self.tracker.report_many(ratios)

    def read_state(self, position: int) -> ReadState:
        return self.coordinator.state_of(position)

    def display_name(self, address: str) -> str:
        return self.profiles.display_name(address)

    async def send_message(self, text: str) -> MutationResult:
        cleaned = (text or "").strip()
        if not cleaned:
            return MutationResult(accepted=False, reason="message is empty")
        if len(cleaned) > MESSAGE_MAX_CHARS:
            return MutationResult(accepted=False, reason=f"message exceeds {MESSAGE_MAX_CHARS} characters")
        if not self.available:
            self._notice(ROOM_UNAVAILABLE_NOTICE)
            return MutationResult(accepted=False, reason="room is not available")
        try:
            result = await self.mutations.submit(self.room.id, ACTION_POST, {"text": cleaned})
        except MutationRejected as exc:
            result = MutationResult(accepted=False, reason=exc.reason)
        except Exception as exc:  # noqa: BLE001
            result = MutationResult(accepted=False, reason=f"{type(exc).__name__}: {exc}")

        if result.accepted:
            self.event_bus.publish_event(
                "room.message.sent",
                "Message accepted; awaiting ledger confirmation.",
                source="session",
                metadata={"room_id": self.room.id, "digest": result.digest, "chars": len(cleaned)},
            )
            self.dispatcher.schedule_confirmation_refreshes(ACTION_POST)
        else:
            self.event_bus.publish_event(
                "room.message.rejected",
                f"Message rejected: {result.reason}",
                severity="warn",
                source="session",
                metadata={"room_id": self.room.id},
            )
            self._notice(f"Message not sent: {result.reason}")
        return result

    def _on_snapshot(self, snapshot: RoomSnapshot) -> None:
        self.coordinator.reconcile(snapshot)
        self.tracker.observe(snapshot)
        if self._active:
            task = asyncio.create_task(self.profiles.resolve_new(snapshot.senders()), name="ledgerchat-profiles")
            self._profile_tasks.add(task)
            task.add_done_callback(self._profile_tasks.discard)
        if self.on_snapshot is not None:
            self.on_snapshot(snapshot)

    def _on_visible(self, positions: tuple[int, ...]) -> None:
        if self.tracker.mode is VisibilityMode.BATCH:
            self.coordinator.note_bottom_reached()
            return
        for position in positions:
            self.coordinator.note_seen(position)

    def _notice(self, text: str) -> None:
        self.notices.append(text)
        self.event_bus.publish_event(
            "room.notice",
            text,
            severity="warn",
            source="session",
            metadata={"room_id": self.room.id},
        )
        if self.on_notice is not None:
            self.on_notice(text)
