from .coordinator import ReadIntent, ReadMarkingCoordinator, ReadState
from .dispatcher import UpdateDispatcher
from .fetcher import SnapshotFetcher
from .profiles import ChainedProfileDirectory, ProfileCache
from .projection import MessageProjection
from .session import RoomSession
from .visibility import VisibilityMode, VisibilityTracker

__all__ = [
    "ChainedProfileDirectory",
    "MessageProjection",
    "ProfileCache",
    "ReadIntent",
    "ReadMarkingCoordinator",
    "ReadState",
    "RoomSession",
    "SnapshotFetcher",
    "UpdateDispatcher",
    "VisibilityMode",
    "VisibilityTracker",
]
