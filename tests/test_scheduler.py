"""
Tests for PeriodicTask / Scheduler.
"""
import threading

from infra.scheduler import PeriodicTask, Scheduler


def test_run_once_swallows_errors():
    def boom():
        raise RuntimeError("tick exploded")

    task = PeriodicTask("risk", boom, interval=1.0)
    assert task.run_once() is None
    assert task.failures == 1
    assert task.runs == 1
    assert "tick exploded" in str(task.last_error)


def test_jitter_is_clamped():
    assert PeriodicTask("t", lambda: None, 1.0, jitter_pct=50).jitter_pct == 20.0
    assert PeriodicTask("t", lambda: None, 1.0, jitter_pct=-5).jitter_pct == 0.0


def test_next_sleep_subtracts_elapsed():
    task = PeriodicTask("t", lambda: None, 10.0, jitter_pct=0)
    assert task.next_sleep(elapsed=3.0) == 7.0
    assert task.next_sleep(elapsed=30.0) == PeriodicTask.MIN_SLEEP_SECONDS


def test_dynamic_interval_reread():
    intervals = iter([5.0, 2.0])
    task = PeriodicTask("t", lambda: None, lambda: next(intervals), jitter_pct=0)
    assert task.interval_seconds == 5.0
    assert task.interval_seconds == 2.0


def test_stop_wakes_sleeping_task():
    ran = threading.Event()
    scheduler = Scheduler(jitter_pct=0)
    scheduler.add("slow", ran.set, interval=3600)

    scheduler.start()
    assert ran.wait(2)
    scheduler.stop()

    assert scheduler.join(timeout=2)
    assert scheduler.stopped


def test_no_run_after_stop():
    calls = []
    scheduler = Scheduler(jitter_pct=0)
    scheduler.add("t", lambda: calls.append(1), interval=0.01)
    scheduler.stop()

    scheduler.start()
    assert scheduler.join(timeout=2)
    assert calls == []


def test_run_once_runs_every_task():
    calls = []
    scheduler = Scheduler()
    scheduler.add("a", lambda: calls.append("a"), 1.0)
    scheduler.add("b", lambda: calls.append("b"), 1.0)

    scheduler.run_once()

    assert calls == ["a", "b"]
