from __future__ import annotations

import argparse
import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import sys
import time
from typing import Any, Callable

from . import __version__
from .config import (
    ChatConfig,
    explain_chat_toml,
    find_room,
    load_chat_toml,
    set_viewer_address,
    viewer_address,
)
from .ens import EnsProfileDirectory
from .models import RoomRef, RoomSnapshot, is_unassigned
from .paths import RuntimePaths, ensure_runtime_dirs, runtime_paths
from .room.base import ProfileDirectory
from .room.profiles import ChainedProfileDirectory
from .room.session import RoomSession
from .room.visibility import VisibilityMode, parse_visibility_mode
from .runtime.events import EventBus
from .sui import SuiCliMutationService, SuiEventChannel, SuiLedgerQuery, SuiProfileDirectory, SuiRpcClient

WATCH_STATUS_INTERVAL_S = 60.0
_SEVERITY_RANK = {"debug": 0, "info": 1, "warn": 2, "error": 3}


@dataclass(frozen=True)
class RuntimeHooks:
    log: Callable[[str, str], None] | None = None
    emit_console: bool = True
    log_file: Path | None = None


def _emit_runtime_log(
    message: str,
    *,
    level: str = "info",
    stderr: bool = False,
    hooks: RuntimeHooks | None = None,
) -> None:
    if hooks and hooks.log:
        hooks.log(level, message)
    if hooks and hooks.log_file is not None:
        _append_runtime_log(hooks.log_file, level=level, message=message)
    if hooks is None or hooks.emit_console:
        print(message, file=sys.stderr if stderr else sys.stdout)


def _append_runtime_log(log_file: Path, *, level: str, message: str) -> None:
    normalized_message = " ".join(message.split())
    stamp = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    line = f"{stamp} [{level.lower()}] {normalized_message}\n"
    with contextlib.suppress(Exception):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerchat",
        description="Chat rooms stored on a Sui ledger, with read receipts that survive slow finality.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Path to ledgerchat.toml (default: nearest one upward)")

    sub = parser.add_subparsers(dest="cmd", required=False)

    sub.add_parser("rooms", help="List configured rooms.")

    watch = sub.add_parser("watch", help="Follow a room and mark what you read.")
    watch.add_argument("--room", default="", help="Room name or object id (default: first configured room)")
    watch.add_argument("--viewer", help="Your ledger address (overrides config)")
    watch.add_argument("--mode", choices=[mode.value for mode in VisibilityMode], help="Read-receipt mode")
    watch.add_argument("--no-mark", action="store_true", help="Only display; never submit read marks")
    watch.add_argument("--once", action="store_true", help="Fetch once, mark, wait for outcomes, exit")
    watch.add_argument("--verbose", action="store_true", help="Print every room event, not just warnings")

    send = sub.add_parser("send", help="Post a message to a room.")
    send.add_argument("--room", default="", help="Room name or object id")
    send.add_argument("--message", required=True, help="Text to post")

    config = sub.add_parser("config", help="Explain ledgerchat.toml or update it.")
    config.add_argument("--set-viewer", metavar="ADDRESS", help="Store your ledger address in [viewer]")

    return parser


def _workspace_paths(args: argparse.Namespace) -> RuntimePaths:
    if args.config is not None:
        return runtime_paths(Path(args.config).resolve().parent)
    return runtime_paths()


def _load_config(args: argparse.Namespace) -> tuple[ChatConfig, Path, str]:
    config_path = args.config or _workspace_paths(args).config_file
    cfg, warning = load_chat_toml(config_path)
    return cfg, config_path, warning


def build_profile_directory(cfg: ChatConfig, rpc: SuiRpcClient) -> ProfileDirectory | None:
    directories: list[ProfileDirectory] = []
    for source in cfg.profiles.sources:
        if source == "ledger" and not is_unassigned(cfg.ledger.package_id):
            directories.append(SuiProfileDirectory(rpc, package_id=cfg.ledger.package_id, module=cfg.ledger.module))
        elif source == "ens":
            directories.append(EnsProfileDirectory(cfg.profiles.ens_rpc_urls))
    if not directories:
        return None
    if len(directories) == 1:
        return directories[0]
    return ChainedProfileDirectory(directories)


def build_session(
    cfg: ChatConfig,
    room: RoomRef,
    *,
    viewer: str,
    event_bus: EventBus,
    mode: VisibilityMode | None = None,
    on_snapshot: Callable[[RoomSnapshot], Any] | None = None,
    on_notice: Callable[[str], Any] | None = None,
) -> RoomSession:
    rpc = SuiRpcClient(cfg.ledger.rpc_url, timeout_s=cfg.ledger.timeout_s)
    event_channel = None
    if not is_unassigned(cfg.ledger.package_id):
        event_channel = SuiEventChannel(
            rpc,
            poll_interval_s=cfg.refresh.event_poll_interval_s,
            event_bus=event_bus,
        )
    return RoomSession(
        room=room,
        viewer=viewer,
        query=SuiLedgerQuery(rpc),
        mutations=SuiCliMutationService(
            package_id=cfg.ledger.package_id,
            module=cfg.ledger.module,
            cli=cfg.ledger.cli,
            gas_budget=cfg.ledger.gas_budget,
            timeout_s=cfg.ledger.cli_timeout_s,
        ),
        event_bus=event_bus,
        profile_directory=build_profile_directory(cfg, rpc),
        event_channel=event_channel,
        event_scope=f"{cfg.ledger.package_id}::{cfg.ledger.module}",
        mode=mode or cfg.read_receipts.mode,
        visibility_threshold=cfg.read_receipts.visibility_threshold,
        poll_interval_s=cfg.refresh.poll_interval_s,
        confirm_delays_s=cfg.refresh.confirm_delays_s,
        poll_with_events=cfg.refresh.poll_with_events,
        on_snapshot=on_snapshot,
        on_notice=on_notice,
    )


def _relative_time(timestamp_ms: int, *, now_s: float | None = None) -> str:
    if timestamp_ms <= 0:
        return "unknown time"
    now = time.time() if now_s is None else now_s
    delta = max(0, int(now - timestamp_ms / 1000.0))
    if delta < 45:
        return "just now"
    if delta < 90 * 60:
        minutes = max(1, round(delta / 60))
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if delta < 36 * 3600:
        hours = max(1, round(delta / 3600))
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = max(1, round(delta / 86400))
    return f"{days} day{'s' if days != 1 else ''} ago"


def format_message_line(session: RoomSession, position: int, *, now_s: float | None = None) -> str:
    snapshot = session.snapshot
    message = snapshot.message_at(position) if snapshot is not None else None
    if message is None:
        return ""
    when = _relative_time(message.timestamp_ms, now_s=now_s)
    if message.sender == session.viewer:
        others = len(message.read_by - {session.viewer})
        receipt = f" (read by {others})" if others else ""
        return f"[{position}] you, {when}: {message.text}{receipt}"
    return f"[{position}] {session.display_name(message.sender)}, {when}: {message.text}"


class _TerminalView:
    """Treats every printed message as fully visible to the person at the terminal."""

    def __init__(self, *, mark: bool, hooks: RuntimeHooks | None) -> None:
        self.mark = mark
        self.hooks = hooks
        self.session: RoomSession | None = None
        self._printed: set[int] = set()

    def on_snapshot(self, snapshot: RoomSnapshot) -> None:
        if self.session is None:
            return
        fresh = [message.position for message in snapshot.messages if message.position not in self._printed]
        for position in fresh:
            line = format_message_line(self.session, position)
            if line:
                _emit_runtime_log(line, hooks=self.hooks)
            self._printed.add(position)
        if not snapshot.messages and not self._printed:
            _emit_runtime_log("(no messages yet)", hooks=self.hooks)
        if self.mark and fresh:
            self.session.report_visibility_many({position: 1.0 for position in fresh})

    def on_notice(self, text: str) -> None:
        _emit_runtime_log(f"notice: {text}", level="warn", stderr=True, hooks=self.hooks)


def _event_printer(*, verbose: bool, hooks: RuntimeHooks | None) -> Callable[[dict[str, Any]], None]:
    floor = _SEVERITY_RANK["debug" if verbose else "warn"]

    def _print(event: dict[str, Any]) -> None:
        severity = str(event.get("severity") or "info")
        if event.get("type") == "room.notice":
            return
        if _SEVERITY_RANK.get(severity, 1) < floor:
            return
        _emit_runtime_log(
            f"{event.get('type')}: {event.get('message')}",
            level=severity,
            stderr=severity in {"warn", "error"},
            hooks=hooks,
        )

    return _print


def _resolve_room_and_viewer(
    cfg: ChatConfig,
    *,
    room_selector: str,
    viewer_override: str | None,
    hooks: RuntimeHooks,
) -> tuple[RoomRef | None, str]:
    room = find_room(cfg, room_selector)
    if room is None:
        wanted = room_selector or "(none configured)"
        _emit_runtime_log(f"unknown room: {wanted}; see `ledgerchat rooms`", level="error", stderr=True, hooks=hooks)
    viewer = " ".join((viewer_override or "").split()) or viewer_address(cfg)
    return room, viewer


async def _watch(
    cfg: ChatConfig,
    room: RoomRef,
    *,
    viewer: str,
    mode: VisibilityMode | None,
    mark: bool,
    once: bool,
    verbose: bool,
    event_bus: EventBus,
    hooks: RuntimeHooks,
) -> int:
    view = _TerminalView(mark=mark, hooks=hooks)
    event_bus.subscribe(_event_printer(verbose=verbose, hooks=hooks))
    session = build_session(
        cfg,
        room,
        viewer=viewer,
        event_bus=event_bus,
        mode=mode,
        on_snapshot=view.on_snapshot,
        on_notice=view.on_notice,
    )
    view.session = session
    if not session.available:
        await session.activate()
        return 1

    _emit_runtime_log(f"watching {room.name} ({room.id}) as {viewer or '(no viewer)'}", hooks=hooks)
    async with session:
        if once:
            await session.wait_for_refresh()
            await session.coordinator.drain()
            return 0 if session.snapshot is not None else 1
        while True:
            await asyncio.sleep(WATCH_STATUS_INTERVAL_S)
            dispatcher = session.dispatcher
            _emit_runtime_log(
                f"status: refreshes={dispatcher.refreshes} coalesced={dispatcher.coalesced} "
                f"fetch_failures={session.fetcher.failures} pending_marks={len(session.coordinator.pending_positions())}",
                level="debug",
                hooks=RuntimeHooks(log_file=hooks.log_file, emit_console=verbose),
            )


async def _send(cfg: ChatConfig, room: RoomRef, text: str, *, event_bus: EventBus, hooks: RuntimeHooks) -> int:
    session = build_session(cfg, room, viewer=viewer_address(cfg), event_bus=event_bus)
    result = await session.send_message(text)
    if result.accepted:
        digest = f" (digest {result.digest})" if result.digest else ""
        _emit_runtime_log(f"sent to {room.name}{digest}; it appears once the ledger confirms it", hooks=hooks)
        return 0
    _emit_runtime_log(f"send failed: {result.reason}", level="error", stderr=True, hooks=hooks)
    return 1


def cmd_rooms(args: argparse.Namespace) -> int:
    cfg, config_path, warning = _load_config(args)
    if warning:
        print(warning, file=sys.stderr)
    if not cfg.rooms:
        print(f"no rooms configured in {config_path}")
        return 0
    for room in cfg.rooms:
        status = "" if room.available else "  (not yet opened)"
        print(f"{room.name}: {room.id}{status}")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    cfg, _config_path, warning = _load_config(args)
    paths = ensure_runtime_dirs(_workspace_paths(args))
    hooks = RuntimeHooks(log_file=paths.runtime_log)
    if warning:
        _emit_runtime_log(warning, level="warn", stderr=True, hooks=hooks)
    room, viewer = _resolve_room_and_viewer(cfg, room_selector=args.room, viewer_override=args.viewer, hooks=hooks)
    if room is None:
        return 2
    if not viewer:
        _emit_runtime_log("no viewer address; pass --viewer or run `ledgerchat config --set-viewer`", level="warn", stderr=True, hooks=hooks)
    mode = parse_visibility_mode(args.mode) if args.mode else None
    event_bus = EventBus(paths.events_jsonl)
    try:
        return asyncio.run(
            _watch(
                cfg,
                room,
                viewer=viewer,
                mode=mode,
                mark=not args.no_mark and bool(viewer),
                once=args.once,
                verbose=args.verbose,
                event_bus=event_bus,
                hooks=hooks,
            )
        )
    except KeyboardInterrupt:
        return 130


def cmd_send(args: argparse.Namespace) -> int:
    cfg, _config_path, warning = _load_config(args)
    paths = ensure_runtime_dirs(_workspace_paths(args))
    hooks = RuntimeHooks(log_file=paths.runtime_log)
    if warning:
        _emit_runtime_log(warning, level="warn", stderr=True, hooks=hooks)
    room, _viewer = _resolve_room_and_viewer(cfg, room_selector=args.room, viewer_override=None, hooks=hooks)
    if room is None:
        return 2
    event_bus = EventBus(paths.events_jsonl)
    return asyncio.run(_send(cfg, room, args.message, event_bus=event_bus, hooks=hooks))


def cmd_config(args: argparse.Namespace) -> int:
    cfg, config_path, warning = _load_config(args)
    if args.set_viewer:
        ok, detail = set_viewer_address(config_path, args.set_viewer)
        print(detail, file=sys.stdout if ok else sys.stderr)
        return 0 if ok else 1
    if warning:
        print(warning, file=sys.stderr)
    print(explain_chat_toml(cfg, path=config_path))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd == "rooms":
        return cmd_rooms(args)
    if args.cmd == "watch":
        return cmd_watch(args)
    if args.cmd == "send":
        return cmd_send(args)
    if args.cmd == "config":
        return cmd_config(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
