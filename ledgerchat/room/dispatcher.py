from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import SubscriptionUnavailable
from ..models import EVENT_PROFILE_UPDATED, REFRESH_EVENT_KINDS
from ..runtime.events import EventBus
from ..runtime.tasks import cancel_task, cancel_tasks, maybe_await
from .base import LedgerEventChannel, Unsubscribe

DEFAULT_POLL_INTERVAL_S = 3.0
DEFAULT_CONFIRM_DELAYS_S = (1.0, 3.0)


class UpdateDispatcher:
    """Funnels poll ticks, ledger events and post-mutation rechecks into fetches.

    At most one fetch runs at a time. A trigger that arrives while a fetch is in
    flight is dropped, since the fetch already in progress returns the newest
    state the ledger has.
    """

    def __init__(
        self,
        *,
        fetch: Callable[[], Awaitable[Any]],
        event_bus: EventBus,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        confirm_delays_s: tuple[float, ...] = DEFAULT_CONFIRM_DELAYS_S,
        poll_with_events: bool = True,
        event_channel: LedgerEventChannel | None = None,
        event_scope: str = "",
        on_profile_event: Callable[[], Any] | None = None,
    ) -> None:
        self._fetch = fetch
        self.event_bus = event_bus
        self.poll_interval_s = max(0.01, float(poll_interval_s))
        self.confirm_delays_s = tuple(max(0.0, float(delay)) for delay in confirm_delays_s)
        self.poll_with_events = bool(poll_with_events)
        self.event_channel = event_channel
        self.event_scope = event_scope
        self.on_profile_event = on_profile_event

        self.refreshes = 0
        self.coalesced = 0
        self.subscribed = False

        self._running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self._scheduled: set[asyncio.Task[None]] = set()
        self._unsubscribe: Unsubscribe | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def polling(self) -> bool:
        return self._poll_task is not None

    @property
    def fetch_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def wait_idle(self) -> None:
        task = self._inflight
        if task is None or task.done():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(task)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self._try_subscribe()
        if not self.subscribed or self.poll_with_events:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="ledgerchat-room-poll")
        self.event_bus.publish_event(
            "room.dispatcher.started",
            "Update dispatcher started.",
            source="dispatcher",
            metadata={
                "subscribed": self.subscribed,
                "polling": self.polling,
                "poll_interval_s": self.poll_interval_s,
            },
        )
        self.request_refresh("activate")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await cancel_task(self._poll_task)
        self._poll_task = None
        await cancel_tasks(self._scheduled)
        await cancel_task(self._inflight)
        self._inflight = None
        if self._unsubscribe is not None:
            unsubscribe = self._unsubscribe
            self._unsubscribe = None
            try:
                await unsubscribe()
            except Exception as exc:  # noqa: BLE001
                self.event_bus.publish_event(
                    "room.subscription.close_failed",
                    f"Unsubscribing from ledger events failed: {exc}",
                    severity="warn",
                    source="dispatcher",
                )
        self.subscribed = False
        self.event_bus.publish_event("room.dispatcher.stopped", "Update dispatcher stopped.", source="dispatcher")

    def request_refresh(self, reason: str) -> bool:
        if not self._running:
            return False
        if self.fetch_in_flight:
            self.coalesced += 1
            return False
        self.refreshes += 1
        self._inflight = asyncio.create_task(self._run_fetch(reason), name=f"ledgerchat-refresh-{reason}")
        return True

    def handle_ledger_event(self, kind: str) -> None:
        if kind not in REFRESH_EVENT_KINDS:
            return
        if kind == EVENT_PROFILE_UPDATED and self.on_profile_event is not None:
            with contextlib.suppress(Exception):
                self.on_profile_event()
        self.request_refresh(f"event:{kind}")

    def schedule_confirmation_refreshes(self, reason: str = "mutation") -> None:
        """Recheck the ledger at staggered delays after an accepted mutation.

        One immediate refetch usually lands before the transaction is final.
        """

        if not self._running:
            return
        for delay in self.confirm_delays_s:
            task = asyncio.create_task(self._delayed_refresh(delay, reason), name="ledgerchat-confirm-refresh")
            self._scheduled.add(task)
            task.add_done_callback(self._scheduled.discard)

    async def _try_subscribe(self) -> None:
        if self.event_channel is None:
            return
        try:
            self._unsubscribe = await self.event_channel.subscribe(self.event_scope, self.handle_ledger_event)
        except SubscriptionUnavailable as exc:
            self._subscription_unavailable(str(exc))
            return
        except Exception as exc:  # noqa: BLE001
            self._subscription_unavailable(f"{type(exc).__name__}: {exc}")
            return
        self.subscribed = True
        self.event_bus.publish_event(
            "room.subscription.active",
            f"Subscribed to ledger events for {self.event_scope}.",
            source="dispatcher",
        )

    def _subscription_unavailable(self, detail: str) -> None:
        self.event_bus.publish_event(
            "room.subscription.unavailable",
            f"Ledger event subscription unavailable; polling only. {detail}",
            severity="warn",
            source="dispatcher",
            metadata={"scope": self.event_scope},
        )

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            self.request_refresh("interval")

    async def _delayed_refresh(self, delay_s: float, reason: str) -> None:
        await asyncio.sleep(delay_s)
        self.request_refresh(f"confirm:{reason}")

    async def _run_fetch(self, reason: str) -> None:
        try:
            await maybe_await(self._fetch())
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.event_bus.publish_event(
                "room.refresh.failed",
                f"Refresh ({reason}) failed: {exc}",
                severity="warn",
                source="dispatcher",
            )
