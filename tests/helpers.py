from __future__ import annotations

import asyncio
from typing import Any, Iterable

from ledgerchat.errors import SubscriptionUnavailable
from ledgerchat.models import Message, MutationResult, Profile, RoomSnapshot

ROOM_ID = "0x" + "1" * 64
VIEWER = "0x" + "a" * 64
ALICE = "0x" + "b" * 64
BOB = "0x" + "c" * 64
CAROL = "0x" + "d" * 64
BASE_TS_MS = 1_760_000_000_000


def make_snapshot(
    specs: Iterable[tuple[str, Iterable[str]]],
    *,
    room_id: str = ROOM_ID,
    found: bool = True,
) -> RoomSnapshot:
    messages = tuple(
        Message(
            position=index,
            sender=sender,
            text=f"message {index}",
            timestamp_ms=BASE_TS_MS + index * 1_000,
            read_by=frozenset(readers),
        )
        for index, (sender, readers) in enumerate(specs)
    )
    return RoomSnapshot(room_id=room_id, messages=messages, found=found)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeLedgerQuery:
    """Returns queued snapshots (or raises queued errors), then repeats ``current``."""

    def __init__(self, current: RoomSnapshot | None = None) -> None:
        self.current = current
        self.queue: list[RoomSnapshot | Exception] = []
        self.gate: asyncio.Event | None = None
        self.calls = 0

    async def fetch_snapshot(self, room_id: str) -> RoomSnapshot:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item: Any = self.queue.pop(0) if self.queue else self.current
        if isinstance(item, Exception):
            raise item
        if item is None:
            return RoomSnapshot(room_id=room_id, found=False)
        return item


class FakeMutations:
    def __init__(self, *, accept: bool = True, reason: str = "user rejected the transaction") -> None:
        self.accept = accept
        self.reason = reason
        self.results: list[MutationResult | Exception] = []
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def actions(self) -> list[str]:
        return [action for _room, action, _args in self.calls]

    async def submit(self, room_id: str, action: str, args: dict[str, Any]) -> MutationResult:
        self.calls.append((room_id, action, dict(args)))
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        if self.accept:
            return MutationResult(accepted=True, digest=f"digest-{len(self.calls)}")
        return MutationResult(accepted=False, reason=self.reason)


class FakeEventChannel:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.scopes: list[str] = []
        self.handlers: list[Any] = []
        self.unsubscribed = 0

    async def subscribe(self, scope: str, on_event):
        self.scopes.append(scope)
        if self.fail:
            raise SubscriptionUnavailable("websocket upgrade refused")
        self.handlers.append(on_event)

        async def _unsubscribe() -> None:
            self.unsubscribed += 1
            if on_event in self.handlers:
                self.handlers.remove(on_event)

        return _unsubscribe

    def emit(self, kind: str) -> None:
        for handler in list(self.handlers):
            handler(kind)


class FakeProfileDirectory:
    def __init__(self, names: dict[str, str] | None = None, *, failing: set[str] | None = None) -> None:
        self.names = dict(names or {})
        self.failing = set(failing or set())
        self.calls: list[str] = []

    async def resolve_profile(self, address: str) -> Profile | None:
        self.calls.append(address)
        await asyncio.sleep(0)
        if address in self.failing:
            raise RuntimeError(f"directory unavailable for {address}")
        name = self.names.get(address)
        if name is None:
            return None
        return Profile(address=address, username=name, avatar_url=f"https://avatars.example/{name}.png")
