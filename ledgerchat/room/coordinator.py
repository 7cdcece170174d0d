from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import time
from typing import Any

from ..errors import MutationRejected
from ..models import ACTION_MARK_ALL_READ, ACTION_MARK_READ, MutationResult, RoomSnapshot, normalize_address
from ..runtime.events import EventBus
from ..runtime.tasks import cancel_tasks
from .base import LedgerMutations


class ReadState(str, Enum):
    UNREAD = "unread"
    PENDING_SUBMISSION = "pending_submission"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"


@dataclass
class ReadIntent:
    room_id: str
    position: int | None
    state: ReadState
    created_at: float
    message_count: int = 0
    digest: str = ""

    @property
    def is_batch(self) -> bool:
        return self.position is None


class ReadMarkingCoordinator:
    """Decides when to mark messages read and tracks each submission to confirmation.

    Intents are created synchronously, before the first suspension point, so
    overlapping visibility callbacks for the same position cannot both submit.
    Confirmation only ever comes from a merged snapshot; an accepted mutation
    just moves the intent to awaiting confirmation and asks for rechecks.
    """

    def __init__(
        self,
        *,
        room_id: str,
        viewer: str,
        mutations: LedgerMutations,
        event_bus: EventBus,
        on_accepted: Callable[[str], Any] | None = None,
        on_notice: Callable[[str], Any] | None = None,
    ) -> None:
        self.room_id = room_id
        self.viewer = normalize_address(viewer)
        self.mutations = mutations
        self.event_bus = event_bus
        self.on_accepted = on_accepted
        self.on_notice = on_notice

        self.submissions = 0
        self.duplicates_ignored = 0

        self._snapshot: RoomSnapshot | None = None
        self._intents: dict[int, ReadIntent] = {}
        self._confirmed: set[int] = set()
        self._batch: ReadIntent | None = None
        self._batch_count: int | None = None
        self._batch_rearm = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def snapshot(self) -> RoomSnapshot | None:
        return self._snapshot

    @property
    def batch_state(self) -> ReadState | None:
        return None if self._batch is None else self._batch.state

    @property
    def batch_satisfied(self) -> bool:
        return self._snapshot is not None and self._batch_count == self._snapshot.message_count

    def pending_positions(self) -> list[int]:
        return sorted(self._intents)

    def state_of(self, position: int) -> ReadState:
        intent = self._intents.get(position)
        if intent is not None:
            return intent.state
        if position in self._confirmed:
            return ReadState.CONFIRMED
        message = self._snapshot.message_at(position) if self._snapshot is not None else None
        if message is not None and self.viewer in message.read_by:
            return ReadState.CONFIRMED
        batch = self._batch
        if batch is not None and position < batch.message_count and message is not None and message.is_unread_for(self.viewer):
            return batch.state
        return ReadState.UNREAD

    def unread_positions(self) -> list[int]:
        if self._snapshot is None:
            return []
        return [
            position
            for position in self._snapshot.unread_positions(self.viewer)
            if self.state_of(position) is ReadState.UNREAD
        ]

    def reconcile(self, snapshot: RoomSnapshot) -> None:
        """Apply a merged snapshot: confirm intents whose reader has landed."""

        previous_count = None if self._snapshot is None else self._snapshot.message_count
        self._snapshot = snapshot

        for position, intent in list(self._intents.items()):
            message = snapshot.message_at(position)
            if message is None or self.viewer not in message.read_by:
                continue
            del self._intents[position]
            self._confirmed.add(position)
            self._publish(
                "read.mark.confirmed",
                f"Read mark for message {position} confirmed on the ledger.",
                metadata={"position": position, "was": intent.state.value},
            )

        batch = self._batch
        if batch is not None:
            covered = [message for message in snapshot.messages if message.position < batch.message_count]
            if len(covered) >= batch.message_count and not any(
                message.is_unread_for(self.viewer) for message in covered
            ):
                self._batch = None
                self._publish(
                    "read.batch.confirmed",
                    f"Mark-all-read confirmed for {batch.message_count} messages.",
                    metadata={"message_count": batch.message_count, "was": batch.state.value},
                )

        count_changed = previous_count is not None and previous_count != snapshot.message_count
        pending_batch = self._batch is not None and self._batch.state is ReadState.PENDING_SUBMISSION
        if count_changed and self._batch_count is not None and not pending_batch:
            self._batch_count = None
        if self._batch_rearm and not pending_batch:
            self._batch_rearm = False
            self.note_bottom_reached()

    def note_seen(self, position: int) -> bool:
        """Per-message path. Returns True when a submission was started."""

        if self._closed or self._snapshot is None:
            return False
        message = self._snapshot.message_at(position)
        if message is None or not message.is_unread_for(self.viewer):
            return False
        if position in self._intents:
            self.duplicates_ignored += 1
            return False
        intent = ReadIntent(
            room_id=self.room_id,
            position=position,
            state=ReadState.PENDING_SUBMISSION,
            created_at=time.time(),
            message_count=self._snapshot.message_count,
        )
        self._intents[position] = intent
        self._spawn(self._submit(intent, ACTION_MARK_READ, {"position": position}))
        return True

    def note_bottom_reached(self) -> bool:
        """Batch path: one mark-all-read for everything currently unread."""

        if self._closed or self._snapshot is None:
            return False
        count = self._snapshot.message_count
        if self._batch is not None and self._batch.state is ReadState.PENDING_SUBMISSION:
            if self._batch.message_count != count:
                # Newer messages arrived; replay this signal once the pending batch resolves.
                self._batch_rearm = True
            else:
                self.duplicates_ignored += 1
            return False
        if self._batch_count == count:
            return False
        unread = self._snapshot.unread_positions(self.viewer)
        if not unread:
            self._batch_count = count
            self._publish(
                "read.batch.satisfied",
                "Nothing unread; mark-all-read not needed.",
                severity="debug",
                metadata={"message_count": count},
            )
            return False
        intent = ReadIntent(
            room_id=self.room_id,
            position=None,
            state=ReadState.PENDING_SUBMISSION,
            created_at=time.time(),
            message_count=count,
        )
        self._batch = intent
        self._batch_count = count
        self._spawn(self._submit(intent, ACTION_MARK_ALL_READ, {}))
        return True

    async def drain(self) -> None:
        """Wait until every submission started so far has an outcome."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def resume(self) -> None:
        self._closed = False

    async def close(self) -> None:
        """Stop tracking submissions; anything still pending reverts to unread."""

        self._closed = True
        await cancel_tasks(self._tasks)
        self._intents.clear()
        self._batch = None
        self._batch_count = None
        self._batch_rearm = False

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro, name="ledgerchat-mark-read")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _submit(self, intent: ReadIntent, action: str, args: dict[str, Any]) -> None:
        self.submissions += 1
        self._publish(
            "read.mark.submitted",
            f"Submitted {action} for room {self.room_id}.",
            metadata={"action": action, **args},
        )
        try:
            result = await self.mutations.submit(self.room_id, action, args)
        except asyncio.CancelledError:
            raise
        except MutationRejected as exc:
            result = MutationResult(accepted=False, reason=exc.reason)
        except Exception as exc:  # noqa: BLE001
            result = MutationResult(accepted=False, reason=f"{type(exc).__name__}: {exc}")

        if self._closed or not self._is_current(intent):
            return
        if result.accepted:
            intent.state = ReadState.AWAITING_CONFIRMATION
            intent.digest = result.digest
            self._publish(
                "read.mark.accepted",
                f"{action} accepted; awaiting ledger confirmation.",
                metadata={"action": action, "digest": result.digest, **args},
            )
            if self.on_accepted is not None:
                self.on_accepted(action)
            if intent.is_batch and self._batch_rearm:
                self._batch_rearm = False
                self.note_bottom_reached()
            return
        self._fail(intent, action, result.reason or "mutation rejected")

    def _is_current(self, intent: ReadIntent) -> bool:
        if intent.is_batch:
            return self._batch is intent
        return self._intents.get(intent.position) is intent

    def _fail(self, intent: ReadIntent, action: str, reason: str) -> None:
        if intent.is_batch:
            self._batch = None
            self._batch_count = None
            self._batch_rearm = False
        else:
            self._intents.pop(intent.position, None)
        self._publish(
            "read.mark.rejected",
            f"{action} rejected: {reason}",
            severity="warn",
            metadata={"action": action, "position": intent.position, "reason": reason},
        )
        if self.on_notice is not None:
            self.on_notice(f"Could not mark messages as read: {reason}")

    def _publish(self, event_type: str, message: str, *, severity: str = "info", metadata: dict[str, Any] | None = None) -> None:
        payload = {"room_id": self.room_id}
        payload.update(metadata or {})
        self.event_bus.publish_event(event_type, message, severity=severity, source="read-marking", metadata=payload)
