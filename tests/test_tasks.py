"""Tests for the single-flight task manager."""

import pytest

from notelink.errors import TaskAlreadyRunningError, TaskCancelledError
from notelink.models import TaskStatus
from notelink.tasks import TaskManager


def test_task_completes_and_returns_result():
    tasks = TaskManager()
    assert tasks.start_task("work", lambda progress: 42) == 42
    assert tasks.current_task is None
    assert tasks.last_task.status == TaskStatus.COMPLETED
    assert tasks.last_task.progress == 100.0
    assert not tasks.is_running()


def test_second_task_fails_fast_without_touching_the_first():
    tasks = TaskManager()
    seen = {}

    def outer(progress):
        progress(30, "halfway")
        with pytest.raises(TaskAlreadyRunningError):
            tasks.start_task("inner", lambda p: None)
        info = tasks.current_task
        seen.update(name=info.name, status=info.status, progress=info.progress, step=info.current_step)
        return "done"

    assert tasks.start_task("outer", outer) == "done"
    assert seen == {"name": "outer", "status": TaskStatus.RUNNING, "progress": 30.0, "step": "halfway"}


def test_failed_task_releases_lock_and_reraises():
    tasks = TaskManager()

    def boom(progress):
        raise RuntimeError("provider exploded")

    with pytest.raises(RuntimeError):
        tasks.start_task("boom", boom)
    assert tasks.last_task.status == TaskStatus.FAILED
    assert tasks.last_task.error_message == "provider exploded"
    assert tasks.current_task is None
    assert tasks.start_task("next", lambda p: "ok") == "ok"


def test_cooperative_cancellation():
    tasks = TaskManager()
    processed = []

    def work(progress):
        for i in range(10):
            tasks.check_cancelled()
            processed.append(i)
            if i == 2:
                assert tasks.request_cancellation()
                assert tasks.current_task.status == TaskStatus.CANCELLING

    with pytest.raises(TaskCancelledError):
        tasks.start_task("cancel me", work)
    assert processed == [0, 1, 2]
    assert tasks.last_task.status == TaskStatus.CANCELLED
    assert not tasks.is_cancellation_requested()
    assert tasks.start_task("again", lambda p: "fresh") == "fresh"


def test_request_cancellation_when_idle():
    tasks = TaskManager()
    assert not tasks.request_cancellation()
    assert not tasks.is_cancellation_requested()


def test_progress_is_clamped_and_monotonic():
    tasks = TaskManager()
    updates = []
    tasks.set_progress_callback(lambda info: updates.append((info.progress, info.current_step)))

    def work(progress):
        progress(40, "a")
        progress(20, "b")
        progress(150, "c")
        progress(-5, "d")

    tasks.start_task("progress", work)
    progresses = [p for p, _ in updates]
    assert progresses == sorted(progresses)
    assert (40.0, "a") in updates
    assert (40.0, "b") in updates
    assert (100.0, "c") in updates
    assert max(progresses) == 100.0
