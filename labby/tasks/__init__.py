"""Background loops run alongside the engine."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Coroutine[Any, Any, None]]


class TaskRunner:
    """Starts named background loops and cancels them on shutdown.

    Owned by whoever runs the engine; loops registered after ``start`` wait
    for the next ``start`` call.
    """

    def __init__(self):
        self._factories: list[tuple[str, TaskFactory]] = []
        self._running: dict[str, asyncio.Task] = {}

    def register(self, name: str, factory: TaskFactory) -> None:
        if any(existing == name for existing, _ in self._factories):
            raise ValueError(f"Background task {name!r} already registered")
        self._factories.append((name, factory))

    @property
    def running(self) -> list[str]:
        return [name for name, task in self._running.items() if not task.done()]

    def start(self) -> None:
        for name, factory in self._factories:
            if name in self._running and not self._running[name].done():
                continue
            task = asyncio.create_task(factory(), name=f"labby-{name}")
            task.add_done_callback(_exit_logger(name))
            self._running[name] = task
            logger.info(f"Started background task {name}")

    async def stop(self) -> None:
        tasks = [task for task in self._running.values() if not task.done()]
        self._running.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Background task {task.get_name()} failed: {e}")


def _exit_logger(name: str) -> Callable[[asyncio.Task], None]:
    """Done callback logging a loop that ended on its own."""
    def log_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {name} crashed: {error}")
        else:
            logger.warning(f"Background task {name} exited")
    return log_exit
