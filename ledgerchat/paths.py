from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import CONFIG_FILE_NAME

STATE_DIR_NAME = ".ledgerchat"


def find_workspace_root(start: Path | None = None) -> Path:
    """Nearest directory at or above ``start`` holding a ledgerchat.toml.

    Falls back to ``start`` itself so the client can run with defaults.
    """

    probe = (start or Path.cwd()).resolve()
    for candidate in [probe, *probe.parents]:
        if (candidate / CONFIG_FILE_NAME).exists():
            return candidate
    return probe


@dataclass(frozen=True)
class RuntimePaths:
    root: Path
    config_file: Path
    state_dir: Path
    logs_dir: Path
    events_jsonl: Path
    runtime_log: Path


def runtime_paths(workspace: Path | None = None) -> RuntimePaths:
    base = workspace if workspace is not None else find_workspace_root()
    state_dir = base / STATE_DIR_NAME
    logs_dir = state_dir / "logs"
    return RuntimePaths(
        root=base,
        config_file=base / CONFIG_FILE_NAME,
        state_dir=state_dir,
        logs_dir=logs_dir,
        events_jsonl=state_dir / "events.jsonl",
        runtime_log=logs_dir / "runtime.log",
    )


def ensure_runtime_dirs(paths: RuntimePaths) -> RuntimePaths:
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    return paths
