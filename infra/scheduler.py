"""
memetrader Infrastructure: Periodic Task Scheduler

Explicit tickers for the risk loop and cache housekeeping.

Each PeriodicTask runs on its own thread:
    run → sleep(interval - elapsed + jitter) → run ...
Sleeps wait on a shared threading.Event so stop() wakes them immediately;
an in-flight run always completes and no further run starts after stop.
"""

import logging
import random
import threading
import time
from typing import Any, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

Interval = Union[float, Callable[[], float]]


class PeriodicTask:
    """
    A callable run on a fixed (or dynamically computed) interval.

    Exceptions raised by the callable are logged and counted; the task keeps
    running.
    """

    MIN_SLEEP_SECONDS = 0.05

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        interval: Interval,
        jitter_pct: float = 10.0,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            name: Label for logs and thread name
            func: Work to do each run
            interval: Seconds between run starts, or a callable returning them
            jitter_pct: Random extra sleep, 0 to jitter_pct% of the interval
            stop_event: Shared stop signal (own event if None)
        """
        self.name = name
        self.func = func
        self._interval = interval
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))  # Clamp 0-20%
        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.runs = 0
        self.failures = 0
        self.last_error: Optional[BaseException] = None
        self.last_duration: Optional[float] = None

    @property
    def interval_seconds(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(float(value), self.MIN_SLEEP_SECONDS)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> Any:
        """Run the task body once; errors are logged, never raised"""
        start = time.monotonic()
        try:
            return self.func()
        except Exception as e:
            self.failures += 1
            self.last_error = e
            logger.exception(f"Task '{self.name}' failed: {e}")
            return None
        finally:
            self.runs += 1
            self.last_duration = time.monotonic() - start

    def next_sleep(self, elapsed: float) -> float:
        interval = self.interval_seconds
        jitter = random.uniform(0, self.jitter_pct / 100.0) * interval
        return max(self.MIN_SLEEP_SECONDS, interval - elapsed + jitter)

    def _loop(self) -> None:
        logger.info(f"Task '{self.name}' started (interval={self.interval_seconds:.1f}s, jitter={self.jitter_pct:.1f}%)")
        while not self._stop.is_set():
            start = time.monotonic()
            self.run_once()
            if self._stop.is_set():
                break
            sleep_for = self.next_sleep(time.monotonic() - start)
            logger.debug(f"Task '{self.name}' took {self.last_duration:.2f}s, sleeping {sleep_for:.2f}s")
            self._stop.wait(sleep_for)
        logger.info(f"Task '{self.name}' stopped after {self.runs} run(s)")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the thread; True if it has exited"""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


class Scheduler:
    """
    Owns a set of PeriodicTasks sharing one stop signal.

    Usage:
        scheduler = Scheduler()
        scheduler.add("risk", engine.tick, interval=lambda: profile.poll_interval_seconds)
        scheduler.start()
        ...
        scheduler.stop()
        scheduler.join(timeout=30)
    """

    def __init__(self, jitter_pct: float = 10.0):
        self.jitter_pct = jitter_pct
        self._stop = threading.Event()
        self.tasks: List[PeriodicTask] = []

    def add(self, name: str, func: Callable[[], Any], interval: Interval, jitter_pct: Optional[float] = None) -> PeriodicTask:
        task = PeriodicTask(
            name,
            func,
            interval,
            jitter_pct=self.jitter_pct if jitter_pct is None else jitter_pct,
            stop_event=self._stop,
        )
        self.tasks.append(task)
        return task

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> None:
        """Run every task body once on the calling thread"""
        for task in self.tasks:
            task.run_once()

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info(f"Stopping scheduler ({len(self.tasks)} task(s))")
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        done = True
        for task in self.tasks:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            done = task.join(remaining) and done
        return done

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called; True if stopped"""
        return self._stop.wait(timeout)
