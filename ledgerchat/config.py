from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
import tomllib

from .ens import DEFAULT_ENS_RPC_URLS
from .models import RoomRef, UNASSIGNED_ID, normalize_address
from .room.visibility import DEFAULT_VISIBILITY_THRESHOLD, VisibilityMode, parse_visibility_mode

CONFIG_FILE_NAME = "ledgerchat.toml"
VIEWER_ENV_VAR = "LEDGERCHAT_VIEWER"
PROFILE_SOURCES = ("ledger", "ens")

_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{1,64}$")


def _clamp01(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def _as_float(value, *, default: float) -> float:
    try:
        return float(value)
    except Exception:  # noqa: BLE001
        return float(default)


def _as_int(value, *, default: int) -> int:
    try:
        return int(value)
    except Exception:  # noqa: BLE001
        return int(default)


def _as_bool(value, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


def _as_str_list(value) -> list[str]:
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                out.append(item.strip())
        return out
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _as_delays(value, *, default: tuple[float, ...]) -> tuple[float, ...]:
    if not isinstance(value, list):
        return default
    delays: list[float] = []
    for item in value:
        delay = _as_float(item, default=-1.0)
        if delay >= 0.0:
            delays.append(delay)
    return tuple(sorted(delays)) or default


def looks_like_address(value: str) -> bool:
    return bool(_HEX_ADDRESS_RE.match(normalize_address(value)))


@dataclass(frozen=True)
class LedgerConfig:
    rpc_url: str = "https://fullnode.testnet.sui.io:443"
    package_id: str = UNASSIGNED_ID
    module: str = "chat_contract"
    cli: str = "sui"
    gas_budget: int = 10_000_000
    timeout_s: float = 20.0
    cli_timeout_s: float = 75.0


@dataclass(frozen=True)
class ViewerConfig:
    address: str = ""


@dataclass(frozen=True)
class RefreshConfig:
    poll_interval_s: float = 3.0
    confirm_delays_s: tuple[float, ...] = (1.0, 3.0)
    poll_with_events: bool = True
    event_poll_interval_s: float = 2.0


@dataclass(frozen=True)
class ReadReceiptsConfig:
    mode: VisibilityMode = VisibilityMode.BATCH
    visibility_threshold: float = DEFAULT_VISIBILITY_THRESHOLD


@dataclass(frozen=True)
class ProfilesConfig:
    sources: tuple[str, ...] = ("ledger",)
    ens_rpc_urls: tuple[str, ...] = tuple(DEFAULT_ENS_RPC_URLS)


@dataclass(frozen=True)
class ChatConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    viewer: ViewerConfig = field(default_factory=ViewerConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    read_receipts: ReadReceiptsConfig = field(default_factory=ReadReceiptsConfig)
    profiles: ProfilesConfig = field(default_factory=ProfilesConfig)
    rooms: tuple[RoomRef, ...] = ()


def load_chat_toml(path: Path) -> tuple[ChatConfig, str]:
    """Load client config from ledgerchat.toml.

    Returns (config, warning). Warning is empty on success.
    """

    if not path.exists():
        return ChatConfig(), ""

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return ChatConfig(), f"{CONFIG_FILE_NAME} parse failed: {exc}"

    if not isinstance(data, dict):
        return ChatConfig(), f"{CONFIG_FILE_NAME} parse failed: top-level is not a table"

    ledger = data.get("ledger") if isinstance(data.get("ledger"), dict) else {}
    viewer = data.get("viewer") if isinstance(data.get("viewer"), dict) else {}
    refresh = data.get("refresh") if isinstance(data.get("refresh"), dict) else {}
    receipts = data.get("read_receipts") if isinstance(data.get("read_receipts"), dict) else {}
    profiles = data.get("profiles") if isinstance(data.get("profiles"), dict) else {}
    rooms_raw = data.get("rooms") if isinstance(data.get("rooms"), list) else []

    sources = tuple(source.lower() for source in _as_str_list(profiles.get("sources")) if source.lower() in PROFILE_SOURCES)
    ens_urls = tuple(_as_str_list(profiles.get("ens_rpc_urls")))

    rooms: list[RoomRef] = []
    for index, item in enumerate(rooms_raw):
        if not isinstance(item, dict):
            continue
        room_id = normalize_address(item.get("id")) or UNASSIGNED_ID
        name = " ".join(str(item.get("name") or "").split()) or f"room-{index + 1}"
        rooms.append(RoomRef(id=room_id, name=name))

    cfg = ChatConfig(
        ledger=LedgerConfig(
            rpc_url=str(ledger.get("rpc_url") or LedgerConfig.rpc_url).strip(),
            package_id=normalize_address(ledger.get("package_id")) or LedgerConfig.package_id,
            module=str(ledger.get("module") or LedgerConfig.module).strip(),
            cli=str(ledger.get("cli") or LedgerConfig.cli).strip(),
            gas_budget=max(1_000, _as_int(ledger.get("gas_budget"), default=LedgerConfig.gas_budget)),
            timeout_s=max(1.0, _as_float(ledger.get("timeout_s"), default=LedgerConfig.timeout_s)),
            cli_timeout_s=max(1.0, _as_float(ledger.get("cli_timeout_s"), default=LedgerConfig.cli_timeout_s)),
        ),
        viewer=ViewerConfig(
            address=normalize_address(viewer.get("address")),
        ),
        refresh=RefreshConfig(
            poll_interval_s=max(0.5, _as_float(refresh.get("poll_interval_s"), default=RefreshConfig.poll_interval_s)),
            confirm_delays_s=_as_delays(refresh.get("confirm_delays_s"), default=RefreshConfig.confirm_delays_s),
            poll_with_events=_as_bool(refresh.get("poll_with_events"), default=RefreshConfig.poll_with_events),
            event_poll_interval_s=max(
                0.5,
                _as_float(refresh.get("event_poll_interval_s"), default=RefreshConfig.event_poll_interval_s),
            ),
        ),
        read_receipts=ReadReceiptsConfig(
            mode=parse_visibility_mode(receipts.get("mode")),
            visibility_threshold=_clamp01(
                _as_float(receipts.get("visibility_threshold"), default=ReadReceiptsConfig.visibility_threshold)
            )
            or ReadReceiptsConfig.visibility_threshold,
        ),
        profiles=ProfilesConfig(
            sources=sources or ProfilesConfig.sources,
            ens_rpc_urls=ens_urls or ProfilesConfig.ens_rpc_urls,
        ),
        rooms=tuple(rooms),
    )

    return cfg, ""


def viewer_address(config: ChatConfig) -> str:
    override = normalize_address(os.environ.get(VIEWER_ENV_VAR))
    return override or config.viewer.address


def find_room(config: ChatConfig, selector: str) -> RoomRef | None:
    """Match a configured room by id or case-insensitive name.

    An unlisted address-shaped selector becomes an ad-hoc room.
    """

    wanted = " ".join((selector or "").split())
    if not wanted:
        return config.rooms[0] if config.rooms else None
    as_id = normalize_address(wanted)
    for room in config.rooms:
        if room.id == as_id or room.name.lower() == wanted.lower():
            return room
    if looks_like_address(as_id):
        return RoomRef(id=as_id, name=short_room_name(as_id))
    return None


def short_room_name(room_id: str) -> str:
    return f"room {room_id[:10]}"


def set_viewer_address(path: Path, address: str) -> tuple[bool, str]:
    cleaned = normalize_address(address)
    if not looks_like_address(cleaned):
        return False, f"not a ledger address: {address!r}"

    line = f'address = "{cleaned}"'

    if not path.exists():
        try:
            path.write_text("[viewer]\n" + line + "\n", encoding="utf-8")
        except Exception as exc:  # noqa: BLE001
            return False, f"failed writing {CONFIG_FILE_NAME}: {exc}"
        return True, f"viewer.address set to {cleaned} (new file)"

    try:
        text = path.read_text(encoding="utf-8")
    except Exception as exc:  # noqa: BLE001
        return False, f"failed reading {CONFIG_FILE_NAME}: {exc}"

    lines = text.splitlines()
    section_start = None
    for idx, raw in enumerate(lines):
        if raw.strip() == "[viewer]":
            section_start = idx
            break

    if section_start is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines.append("[viewer]")
        lines.append(line)
    else:
        section_end = len(lines)
        for idx in range(section_start + 1, len(lines)):
            stripped = lines[idx].strip()
            if stripped.startswith("[") and stripped.endswith("]"):
                section_end = idx
                break
        target_idx = None
        for idx in range(section_start + 1, section_end):
            if lines[idx].strip().startswith("address"):
                target_idx = idx
                break
        if target_idx is not None:
            lines[target_idx] = line
        else:
            lines.insert(section_start + 1, line)

    updated = "\n".join(lines) + "\n"
    try:
        path.write_text(updated, encoding="utf-8")
    except Exception as exc:  # noqa: BLE001
        return False, f"failed writing {CONFIG_FILE_NAME}: {exc}"
    return True, f"viewer.address set to {cleaned}"


def explain_chat_toml(config: ChatConfig, *, path: Path | None = None) -> str:
    location = str(path) if path is not None else CONFIG_FILE_NAME
    refresh = config.refresh
    delays = ", ".join(f"{delay:g}s" for delay in refresh.confirm_delays_s)
    rooms = config.rooms
    lines = [
        f"{CONFIG_FILE_NAME} guide ({location})",
        "",
        "[ledger]",
        f"- rpc_url: Sui fullnode JSON-RPC endpoint (current: {config.ledger.rpc_url})",
        f"- package_id: chat contract package; 0x0 disables events and ledger profiles (current: {config.ledger.package_id})",
        f"- module: contract module name (current: {config.ledger.module})",
        f"- cli: wallet CLI used to sign and submit transactions (current: {config.ledger.cli})",
        f"- gas_budget: gas budget per transaction (current: {config.ledger.gas_budget})",
        f"- timeout_s: JSON-RPC request timeout (current: {config.ledger.timeout_s:g})",
        f"- cli_timeout_s: how long a wallet CLI transaction may take (current: {config.ledger.cli_timeout_s:g})",
        "",
        "[viewer]",
        f"- address: your ledger address; {VIEWER_ENV_VAR} overrides it (current: {config.viewer.address or '(unset)'})",
        "",
        "[refresh]",
        f"- poll_interval_s: baseline snapshot poll period (current: {refresh.poll_interval_s:g})",
        f"- confirm_delays_s: rechecks after an accepted transaction (current: {delays})",
        f"- poll_with_events: keep polling while events are live (current: {'true' if refresh.poll_with_events else 'false'})",
        f"- event_poll_interval_s: ledger event query period (current: {refresh.event_poll_interval_s:g})",
        "",
        "[read_receipts]",
        f"- mode: batch (mark all on reaching the bottom) or per_message (current: {config.read_receipts.mode.value})",
        f"- visibility_threshold: visible fraction that counts as seen (current: {config.read_receipts.visibility_threshold:g})",
        "",
        "[profiles]",
        f"- sources: ordered profile directories, any of {', '.join(PROFILE_SOURCES)} (current: {', '.join(config.profiles.sources)})",
        f"- ens_rpc_urls: Ethereum RPC endpoints for ENS lookups (current: {', '.join(config.profiles.ens_rpc_urls)})",
        "",
        "[[rooms]]",
        f"- id / name: rooms selectable by id or name ({len(rooms)} configured)",
    ]
    for room in rooms:
        status = "" if room.available else " (not yet opened)"
        lines.append(f"  - {room.name}: {room.id}{status}")
    return "\n".join(lines)
