from __future__ import annotations

import asyncio
from contextlib import redirect_stderr, redirect_stdout
import io
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
from unittest.mock import patch

from ledgerchat.cli import (
    RuntimeHooks,
    _relative_time,
    _watch,
    build_parser,
    build_profile_directory,
    build_session,
    format_message_line,
    main,
)
from ledgerchat.config import ChatConfig, LedgerConfig, ProfilesConfig, load_chat_toml
from ledgerchat.ens import EnsProfileDirectory
from ledgerchat.models import ACTION_MARK_ALL_READ, RoomRef
from ledgerchat.room.profiles import ChainedProfileDirectory
from ledgerchat.room.session import RoomSession
from ledgerchat.runtime.events import EventBus
from ledgerchat.sui import SuiProfileDirectory, SuiRpcClient
from tests.helpers import ALICE, BASE_TS_MS, BOB, ROOM_ID, VIEWER, FakeLedgerQuery, FakeMutations, make_snapshot

NOW_S = BASE_TS_MS / 1000.0


def _fake_build_session(query: FakeLedgerQuery, mutations: FakeMutations):
    def _build(cfg, room, *, viewer, event_bus, mode=None, on_snapshot=None, on_notice=None):
        return RoomSession(
            room=room,
            viewer=viewer,
            query=query,
            mutations=mutations,
            event_bus=event_bus,
            mode=mode or cfg.read_receipts.mode,
            poll_interval_s=30.0,
            confirm_delays_s=(),
            on_snapshot=on_snapshot,
            on_notice=on_notice,
        )

    return _build


class TestCliFormatting(unittest.TestCase):
    def test_relative_time_buckets(self) -> None:
        self.assertEqual("just now", _relative_time(BASE_TS_MS, now_s=NOW_S + 10))
        self.assertEqual("1 minute ago", _relative_time(BASE_TS_MS, now_s=NOW_S + 60))
        self.assertEqual("5 minutes ago", _relative_time(BASE_TS_MS, now_s=NOW_S + 300))
        self.assertEqual("3 hours ago", _relative_time(BASE_TS_MS, now_s=NOW_S + 3 * 3600))
        self.assertEqual("2 days ago", _relative_time(BASE_TS_MS, now_s=NOW_S + 2 * 86400))
        self.assertEqual("unknown time", _relative_time(0, now_s=NOW_S))

    def test_format_message_line_shows_receipts_on_own_messages(self) -> None:
        async def _run() -> tuple[str, str, str]:
            query = FakeLedgerQuery(make_snapshot([(VIEWER, {VIEWER, ALICE}), (BOB, ()), (VIEWER, ())]))
            session = RoomSession(
                room=RoomRef(id=ROOM_ID, name="General"),
                viewer=VIEWER,
                query=query,
                mutations=FakeMutations(),
                event_bus=EventBus(),
            )
            await session.fetcher.fetch()
            return (
                format_message_line(session, 0, now_s=NOW_S + 5),
                format_message_line(session, 1, now_s=NOW_S + 5),
                format_message_line(session, 2, now_s=NOW_S + 5),
            )

        own_read, other, own_unread = asyncio.run(_run())
        self.assertEqual("[0] you, just now: message 0 (read by 1)", own_read)
        self.assertEqual(f"[1] {BOB[:8]}...{BOB[-6:]}, just now: message 1", other)
        self.assertEqual("[2] you, just now: message 2", own_unread)


class TestCliProfileDirectory(unittest.TestCase):
    def test_sources_build_expected_directories(self) -> None:
        rpc = SuiRpcClient("https://rpc.example")
        unconfigured = ChatConfig()
        self.assertIsNone(build_profile_directory(unconfigured, rpc))

        ledger_only = ChatConfig(ledger=LedgerConfig(package_id="0xabc"))
        self.assertIsInstance(build_profile_directory(ledger_only, rpc), SuiProfileDirectory)

        both = ChatConfig(ledger=LedgerConfig(package_id="0xabc"), profiles=ProfilesConfig(sources=("ledger", "ens")))
        chained = build_profile_directory(both, rpc)
        assert isinstance(chained, ChainedProfileDirectory)
        self.assertIsInstance(chained.directories[0], SuiProfileDirectory)
        self.assertIsInstance(chained.directories[1], EnsProfileDirectory)


    def test_session_uses_configured_cli_timeout(self) -> None:
        cfg = ChatConfig(ledger=LedgerConfig(package_id="0xabc", cli_timeout_s=30.0))
        session = build_session(cfg, RoomRef(ROOM_ID, "General"), viewer=VIEWER, event_bus=EventBus())
        self.assertEqual(30.0, session.mutations.timeout_s)

class TestCliWatch(unittest.TestCase):
    def test_watch_once_prints_and_marks_all_read(self) -> None:
        query = FakeLedgerQuery(make_snapshot([(ALICE, ()), (BOB, ())]))
        mutations = FakeMutations()
        lines: list[tuple[str, str]] = []
        hooks = RuntimeHooks(log=lambda level, message: lines.append((level, message)), emit_console=False)

        with patch("ledgerchat.cli.build_session", _fake_build_session(query, mutations)):
            code = asyncio.run(
                _watch(
                    ChatConfig(),
                    RoomRef(id=ROOM_ID, name="General"),
                    viewer=VIEWER,
                    mode=None,
                    mark=True,
                    once=True,
                    verbose=False,
                    event_bus=EventBus(),
                    hooks=hooks,
                )
            )

        self.assertEqual(0, code)
        self.assertEqual([ACTION_MARK_ALL_READ], mutations.actions())
        messages = [message for _level, message in lines]
        self.assertTrue(any(message.startswith("[0] ") and "message 0" in message for message in messages))
        self.assertTrue(any(message.startswith("[1] ") for message in messages))

    def test_watch_without_marking_submits_nothing(self) -> None:
        query = FakeLedgerQuery(make_snapshot([(ALICE, ())]))
        mutations = FakeMutations()
        hooks = RuntimeHooks(emit_console=False)
        with patch("ledgerchat.cli.build_session", _fake_build_session(query, mutations)):
            code = asyncio.run(
                _watch(
                    ChatConfig(),
                    RoomRef(id=ROOM_ID, name="General"),
                    viewer=VIEWER,
                    mode=None,
                    mark=False,
                    once=True,
                    verbose=False,
                    event_bus=EventBus(),
                    hooks=hooks,
                )
            )
        self.assertEqual(0, code)
        self.assertEqual([], mutations.calls)

    def test_watch_unopened_room_exits_with_notice(self) -> None:
        query = FakeLedgerQuery(make_snapshot([(ALICE, ())]))
        lines: list[tuple[str, str]] = []
        hooks = RuntimeHooks(log=lambda level, message: lines.append((level, message)), emit_console=False)
        with patch("ledgerchat.cli.build_session", _fake_build_session(query, FakeMutations())):
            code = asyncio.run(
                _watch(
                    ChatConfig(),
                    RoomRef(id="0x0", name="Lobby"),
                    viewer=VIEWER,
                    mode=None,
                    mark=True,
                    once=True,
                    verbose=False,
                    event_bus=EventBus(),
                    hooks=hooks,
                )
            )
        self.assertEqual(1, code)
        self.assertEqual(0, query.calls)
        self.assertIn(("warn", "notice: This room is not open yet."), lines)


class TestCliCommands(unittest.TestCase):
    def test_parser_accepts_watch_flags(self) -> None:
        args = build_parser().parse_args(["watch", "--room", "General", "--mode", "per_message", "--once", "--no-mark"])
        self.assertEqual("watch", args.cmd)
        self.assertEqual("per_message", args.mode)
        self.assertTrue(args.once)
        self.assertTrue(args.no_mark)

    def test_rooms_lists_configured_rooms(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "ledgerchat.toml"
            path.write_text(
                f'[[rooms]]\nid = "{ROOM_ID}"\nname = "General"\n\n[[rooms]]\nname = "Lobby"\n',
                encoding="utf-8",
            )
            out = io.StringIO()
            with redirect_stdout(out):
                code = main(["--config", str(path), "rooms"])
        self.assertEqual(0, code)
        self.assertIn(f"General: {ROOM_ID}", out.getvalue())
        self.assertIn("Lobby: 0x0  (not yet opened)", out.getvalue())

    def test_config_set_viewer_writes_file(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "ledgerchat.toml"
            out = io.StringIO()
            with redirect_stdout(out):
                code = main(["--config", str(path), "config", "--set-viewer", VIEWER])
            self.assertEqual(0, code)
            cfg, _warn = load_chat_toml(path)
            self.assertEqual(VIEWER, cfg.viewer.address)

            err = io.StringIO()
            with redirect_stderr(err):
                code = main(["--config", str(path), "config", "--set-viewer", "bob"])
            self.assertEqual(1, code)
            self.assertIn("not a ledger address", err.getvalue())

    def test_config_explains_current_values(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "ledgerchat.toml"
            path.write_text('[read_receipts]\nmode = "per_message"\n', encoding="utf-8")
            out = io.StringIO()
            with redirect_stdout(out):
                code = main(["--config", str(path), "config"])
        self.assertEqual(0, code)
        self.assertIn("(current: per_message)", out.getvalue())

    def test_watch_unknown_room_fails_fast(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "ledgerchat.toml"
            path.write_text(f'[[rooms]]\nid = "{ROOM_ID}"\nname = "General"\n', encoding="utf-8")
            err = io.StringIO()
            with redirect_stderr(err):
                code = main(["--config", str(path), "watch", "--room", "random"])
            self.assertEqual(2, code)
            self.assertIn("unknown room: random", err.getvalue())
            self.assertTrue((Path(tmp) / ".ledgerchat" / "logs" / "runtime.log").exists())

    def test_no_command_prints_help(self) -> None:
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(0, main([]))
        self.assertIn("ledgerchat", out.getvalue())


if __name__ == "__main__":
    unittest.main()
