from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

from ..models import RoomSnapshot

DEFAULT_VISIBILITY_THRESHOLD = 0.5


class VisibilityMode(str, Enum):
    BATCH = "batch"
    PER_MESSAGE = "per_message"


def parse_visibility_mode(value: Any, *, default: VisibilityMode = VisibilityMode.BATCH) -> VisibilityMode:
    lowered = str(value or "").strip().lower().replace("-", "_")
    for mode in VisibilityMode:
        if mode.value == lowered:
            return mode
    return default


class VisibilityTracker:
    """Turns viewport intersection ratios into "newly seen" position reports.

    In batch mode only the last message is observed and its visibility stands
    for "scrolled to the bottom". In per-message mode every message is
    observed. A position is reported once per hidden-to-visible transition.
    """

    def __init__(
        self,
        *,
        on_visible: Callable[[tuple[int, ...]], Any],
        mode: VisibilityMode = VisibilityMode.BATCH,
        threshold: float = DEFAULT_VISIBILITY_THRESHOLD,
    ) -> None:
        self.on_visible = on_visible
        self.mode = mode
        self.threshold = min(1.0, max(0.01, float(threshold)))
        self._observed: tuple[int, ...] = ()
        self._visible: set[int] = set()

    @property
    def observed(self) -> tuple[int, ...]:
        return self._observed

    def is_visible(self, position: int) -> bool:
        return position in self._visible

    def observe(self, snapshot: RoomSnapshot) -> None:
        if self.mode is VisibilityMode.BATCH:
            last = snapshot.last_position
            observed = () if last is None else (last,)
        else:
            observed = tuple(message.position for message in snapshot.messages)
        self._observed = observed
        self._visible &= set(observed)

    def report(self, position: int, ratio: float) -> tuple[int, ...]:
        return self.report_many({position: ratio})

    def report_many(self, ratios: dict[int, float]) -> tuple[int, ...]:
        newly_visible: list[int] = []
        observed = set(self._observed)
        for position, ratio in ratios.items():
            if position not in observed:
                continue
            if float(ratio) >= self.threshold:
                if position not in self._visible:
                    self._visible.add(position)
                    newly_visible.append(position)
            else:
                self._visible.discard(position)
        if not newly_visible:
            return ()
        reported = tuple(sorted(newly_visible))
        self.on_visible(reported)
        return reported
