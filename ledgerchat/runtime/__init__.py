from .events import EventBus
from .tasks import cancel_task, maybe_await

__all__ = ["EventBus", "cancel_task", "maybe_await"]
