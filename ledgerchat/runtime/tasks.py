from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import Any


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def cancel_tasks(tasks: set[asyncio.Task[Any]]) -> None:
    pending = list(tasks)
    tasks.clear()
    for task in pending:
        await cancel_task(task)
