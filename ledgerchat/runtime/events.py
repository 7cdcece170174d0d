from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
import contextlib
from datetime import datetime, timezone
import inspect
import json
import secrets
import time
from pathlib import Path
from typing import Any

EventHandler = Callable[[dict[str, Any]], Any]

SEVERITIES = ("debug", "info", "warn", "error")
RECENT_EVENTS_MAX = 512


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def new_event_id() -> str:
    stamp = int(time.time() * 1000)
    token = secrets.token_hex(4)
    return f"evt-{stamp}-{token}"


class EventBus:
    """In-memory pub/sub bus for room activity, with an optional JSONL audit log.

    Events published before a log path is known are buffered and flushed once
    ``set_log_path`` is called. A bounded window of recent events is kept for
    status views and tests.
    """

    def __init__(self, log_path: Path | None = None, *, recent_max: int = RECENT_EVENTS_MAX) -> None:
        self._log_path = log_path
        self._pending: list[dict[str, Any]] = []
        self._handlers: list[EventHandler] = []
        self._recent: deque[dict[str, Any]] = deque(maxlen=max(1, int(recent_max)))
        self.events_written = 0
        if self._log_path is not None:
            self._prepare_log_path()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def set_log_path(self, path: Path) -> None:
        self._log_path = path
        self._prepare_log_path()
        if not self._pending:
            return
        pending = list(self._pending)
        self._pending.clear()
        for event in pending:
            self._append_to_disk(event)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: dict[str, Any]) -> dict[str, Any]:
        normalized = self._normalize_event(event)
        self._recent.append(normalized)
        if self._log_path is None:
            self._pending.append(normalized)
        else:
            self._append_to_disk(normalized)
        self._dispatch(normalized)
        return normalized

    def publish_event(
        self,
        event_type: str,
        message: str,
        *,
        severity: str = "info",
        source: str = "room",
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.publish(
            {
                "type": str(event_type or "room.event"),
                "severity": str(severity or "info"),
                "source": str(source or "room"),
                "message": str(message or ""),
                "metadata": metadata or {},
            }
        )

    def recent(self, type_prefix: str = "") -> list[dict[str, Any]]:
        if not type_prefix:
            return list(self._recent)
        return [event for event in self._recent if str(event.get("type", "")).startswith(type_prefix)]

    def count(self, event_type: str) -> int:
        return sum(1 for event in self._recent if event.get("type") == event_type)

    def _prepare_log_path(self) -> None:
        if self._log_path is None:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path.touch(exist_ok=True)

    def _append_to_disk(self, event: dict[str, Any]) -> None:
        if self._log_path is None:
            return
        with self._log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, sort_keys=True, ensure_ascii=True))
            handle.write("\n")
        self.events_written += 1

    def _normalize_event(self, event: dict[str, Any]) -> dict[str, Any]:
        metadata = event.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        severity = str(event.get("severity") or "info").lower()
        if severity not in SEVERITIES:
            severity = "info"
        return {
            "id": str(event.get("id") or new_event_id()),
            "ts": str(event.get("ts") or utc_now_iso()),
            "type": str(event.get("type") or "room.event"),
            "severity": severity,
            "source": str(event.get("source") or "room"),
            "message": str(event.get("message") or ""),
            "metadata": metadata,
        }

    def _dispatch(self, event: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception:
                continue
            if inspect.isawaitable(result):
                self._schedule_async_handler(result)

    @staticmethod
    def _schedule_async_handler(awaitable: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        loop.create_task(awaitable)
