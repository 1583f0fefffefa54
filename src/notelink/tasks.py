"""Single-flight task orchestration with cooperative cancellation."""

import logging
import threading
import uuid
from typing import Callable, TypeVar

from .errors import TaskAlreadyRunningError, TaskCancelledError
from .models import TaskInfo, TaskStatus, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressFn = Callable[[float, str], None]


class TaskManager:
    """Runs at most one task at a time.

    A second start_task while one is running raises TaskAlreadyRunningError
    immediately rather than queueing. Cancellation is cooperative: the running
    task calls check_cancelled() at safe points and stops by raising
    TaskCancelledError.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state_lock = threading.Lock()
        self._current: TaskInfo | None = None
        self._last: TaskInfo | None = None
        self._callback: Callable[[TaskInfo], None] | None = None

    @property
    def current_task(self) -> TaskInfo | None:
        return self._current

    @property
    def last_task(self) -> TaskInfo | None:
        """The most recently finished task, kept for reporting."""
        return self._last

    def is_running(self) -> bool:
        return self._lock.locked()

    def set_progress_callback(self, callback: Callable[[TaskInfo], None] | None) -> None:
        self._callback = callback

    def start_task(self, name: str, fn: Callable[[ProgressFn], T]) -> T:
        """Run fn(update_progress) as the single active task and return its result.

        Exceptions from fn propagate after the task state is recorded and the
        lock is released.
        """
        if not self._lock.acquire(blocking=False):
            running = self._current.name if self._current else "another task"
            raise TaskAlreadyRunningError(f"Cannot start '{name}': {running} is already running")

        self._cancel.clear()
        info = TaskInfo(task_id=uuid.uuid4().hex, name=name)
        with self._state_lock:
            self._current = info
        logger.info("Task started: %s (%s)", name, info.task_id)
        self._notify(info)

        try:
            result = fn(self.update_progress)
        except TaskCancelledError:
            self._finish(info, TaskStatus.CANCELLED)
            logger.info("Task cancelled: %s", name)
            raise
        except Exception as e:
            self._finish(info, TaskStatus.FAILED, error=str(e))
            logger.error("Task failed: %s: %s", name, e)
            raise
        else:
            info.progress = 100.0
            self._finish(info, TaskStatus.COMPLETED)
            logger.info("Task completed: %s", name)
            return result
        finally:
            with self._state_lock:
                self._current = None
            self._cancel.clear()
            self._lock.release()

    def update_progress(self, progress: float, step: str) -> None:
        """Report progress in percent. Progress never moves backwards and is clamped to 0-100."""
        with self._state_lock:
            info = self._current
            if info is None:
                return
            info.progress = max(info.progress, min(100.0, max(0.0, float(progress))))
            info.current_step = step
        self._notify(info)

    def request_cancellation(self) -> bool:
        """Ask the running task to stop. Returns False if nothing is running."""
        with self._state_lock:
            info = self._current
            if info is None:
                return False
            info.status = TaskStatus.CANCELLING
            info.current_step = "Cancelling..."
        self._cancel.set()
        logger.info("Cancellation requested for %s", info.name)
        self._notify(info)
        return True

    def is_cancellation_requested(self) -> bool:
        return self._cancel.is_set()

    def check_cancelled(self) -> None:
        """Raise TaskCancelledError if cancellation was requested."""
        if self._cancel.is_set():
            raise TaskCancelledError("Task cancelled by user")

    def _finish(self, info: TaskInfo, status: TaskStatus, error: str | None = None) -> None:
        info.status = status
        info.completed_at = utc_now()
        info.error_message = error
        self._last = info
        self._notify(info)

    def _notify(self, info: TaskInfo) -> None:
        if self._callback is not None:
            self._callback(info)
