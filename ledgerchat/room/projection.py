from __future__ import annotations

from dataclasses import replace

from ..models import Message, RoomSnapshot


class MessageProjection:
    """Local view of a room whose read-by sets only ever grow.

    Every merged snapshot is widened with the readers already known for each
    position, so a stale or reordered snapshot cannot drop a read mark.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self._known_readers: dict[int, frozenset[str]] = {}
        self.merges = 0

    def merge(self, snapshot: RoomSnapshot) -> RoomSnapshot:
        merged: list[Message] = []
        for message in snapshot.messages:
            known = self._known_readers.get(message.position, frozenset())
            readers = known | message.read_by
            self._known_readers[message.position] = readers
            if readers != message.read_by:
                message = replace(message, read_by=readers)
            merged.append(message)
        self.merges += 1
        return replace(snapshot, messages=tuple(merged))

    def readers(self, position: int) -> frozenset[str]:
        return self._known_readers.get(position, frozenset())
