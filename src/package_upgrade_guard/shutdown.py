from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
import atexit
import logging
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShutdownTask:
    name: str
    callback: Callable[[], object]


class ShutdownTaskRegistry:
    """Compensating tasks that run once, in registration order, when the process winds down.

    Tasks are fire-and-forget: there is no handle to cancel one after it has been
    registered. A failing task is logged and does not prevent the remaining ones
    from running.
    """

    def __init__(self) -> None:
        self._tasks: list[ShutdownTask] = []
        self._lock = threading.Lock()
        self._installed = False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def register(self, callback: Callable[[], object], *, name: str | None = None) -> ShutdownTask:
        task = ShutdownTask(name=name or getattr(callback, "__name__", "task"), callback=callback)
        with self._lock:
            self._tasks.append(task)
        logger.info("registered shutdown task %s", task.name)
        return task

    def install(self) -> None:
        with self._lock:
            if self._installed:
                return
            self._installed = True
        atexit.register(self.run)

    def run(self) -> int:
        with self._lock:
            tasks, self._tasks = self._tasks, []

        for task in tasks:
            logger.info("running shutdown task %s", task.name)
            try:
                task.callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("shutdown task %s failed", task.name)
        return len(tasks)


default_registry = ShutdownTaskRegistry()
