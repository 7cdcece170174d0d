from __future__ import annotations

import asyncio
import unittest

from ledgerchat.errors import ProfileLookupFailure
from ledgerchat.models import Profile
from ledgerchat.room.profiles import ChainedProfileDirectory, ProfileCache
from ledgerchat.runtime.events import EventBus
from tests.helpers import ALICE, BOB, CAROL, FakeProfileDirectory


class TestProfileCache(unittest.TestCase):
    def test_only_unknown_addresses_are_looked_up(self) -> None:
        async def _run() -> None:
            directory = FakeProfileDirectory({ALICE: "alice"})
            bus = EventBus()
            cache = ProfileCache(directory, event_bus=bus)

            resolved = await cache.resolve_new([ALICE, BOB, ALICE])
            self.assertEqual(["alice"], [profile.username for profile in resolved.values()])
            self.assertEqual([ALICE, BOB], directory.calls)

            await cache.resolve_new([ALICE, BOB])
            self.assertEqual(2, len(directory.calls))
            self.assertEqual(1, bus.count("profile.resolved"))

        asyncio.run(_run())

    def test_display_name_falls_back_to_short_address(self) -> None:
        async def _run() -> None:
            cache = ProfileCache(FakeProfileDirectory({ALICE: "alice"}), event_bus=EventBus())
            await cache.resolve_new([ALICE, BOB])
            self.assertEqual("alice", cache.display_name(ALICE.upper().replace("0X", "0x")))
            self.assertEqual(f"{BOB[:8]}...{BOB[-6:]}", cache.display_name(BOB))

        asyncio.run(_run())

    def test_one_failure_does_not_block_other_lookups(self) -> None:
        async def _run() -> None:
            directory = FakeProfileDirectory({ALICE: "alice", CAROL: "carol"}, failing={BOB})
            bus = EventBus()
            cache = ProfileCache(directory, event_bus=bus)
            resolved = await cache.resolve_new([ALICE, BOB, CAROL])
            self.assertEqual({ALICE, CAROL}, set(resolved))
            self.assertEqual(1, bus.count("profile.lookup.failed"))
            self.assertIsNone(cache.get(BOB))

        asyncio.run(_run())

    def test_forget_misses_allows_retry(self) -> None:
        async def _run() -> None:
            directory = FakeProfileDirectory()
            cache = ProfileCache(directory, event_bus=EventBus())
            await cache.resolve_new([BOB])
            await cache.resolve_new([BOB])
            self.assertEqual(1, len(directory.calls))

            directory.names[BOB] = "bob"
            cache.forget_misses()
            await cache.resolve_new([BOB])
            self.assertEqual("bob", cache.display_name(BOB))
            self.assertEqual(2, cache.lookups)

        asyncio.run(_run())

    def test_concurrent_calls_do_not_duplicate_lookups(self) -> None:
        async def _run() -> None:
            directory = FakeProfileDirectory({ALICE: "alice"})
            cache = ProfileCache(directory, event_bus=EventBus())
            await asyncio.gather(cache.resolve_new([ALICE]), cache.resolve_new([ALICE]))
            self.assertEqual([ALICE], directory.calls)

        asyncio.run(_run())

    def test_without_directory_nothing_resolves(self) -> None:
        async def _run() -> None:
            cache = ProfileCache(None, event_bus=EventBus())
            self.assertEqual({}, await cache.resolve_new([ALICE]))
            self.assertEqual({}, cache.profiles)

        asyncio.run(_run())


class _StaticDirectory:
    def __init__(self, profile: Profile | None = None, error: Exception | None = None) -> None:
        self.profile = profile
        self.error = error

    async def resolve_profile(self, address: str) -> Profile | None:
        if self.error is not None:
            raise self.error
        return self.profile


class TestChainedProfileDirectory(unittest.TestCase):
    def test_first_named_profile_wins(self) -> None:
        chained = ChainedProfileDirectory(
            [
                _StaticDirectory(Profile(address=ALICE, username="")),
                _StaticDirectory(error=RuntimeError("ens down")),
                _StaticDirectory(Profile(address=ALICE, username="alice.eth")),
            ]
        )
        profile = asyncio.run(chained.resolve_profile(ALICE))
        assert profile is not None
        self.assertEqual("alice.eth", profile.username)

    def test_all_directories_failing_raises(self) -> None:
        chained = ChainedProfileDirectory(
            [_StaticDirectory(error=RuntimeError("rpc down")), _StaticDirectory(error=RuntimeError("ens down"))]
        )
        with self.assertRaises(ProfileLookupFailure) as ctx:
            asyncio.run(chained.resolve_profile(ALICE))
        self.assertIn("rpc down", ctx.exception.detail)

    def test_partial_failure_with_no_match_returns_none(self) -> None:
        chained = ChainedProfileDirectory([_StaticDirectory(error=RuntimeError("x")), _StaticDirectory(None)])
        self.assertIsNone(asyncio.run(chained.resolve_profile(ALICE)))


if __name__ == "__main__":
    unittest.main()
