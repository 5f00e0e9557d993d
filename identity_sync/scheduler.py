"""
Fixed-interval scheduler for reconciliation cycles.

Ticks fire at a fixed rate. A tick that arrives while a cycle is still
running is skipped, so at most one cycle is ever active.
"""

import logging
import threading
import time
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

IDLE = 'idle'
RUNNING = 'running'


class Scheduler:
    """Drives a cycle function on a fixed period without ever overlapping cycles."""

    def __init__(self, run_cycle: Optional[Callable[[], Any]] = None,
                 on_result: Optional[Callable[[Any], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize scheduler.

        Args:
            run_cycle: Cycle function, may also be given to start()
            on_result: Optional callback receiving each finished cycle's result
            clock: Monotonic time source used to space ticks
        """
        self.on_result = on_result
        self.clock = clock
        self.interval_seconds = None
        self.cycles_run = 0
        self.skipped_ticks = 0

        self._run_cycle = run_cycle
        self._cycle_lock = threading.Lock()
        self._state = IDLE
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()
        self._tick_threads: List[threading.Thread] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def started(self) -> bool:
        return self._timer_thread is not None and self._timer_thread.is_alive()

    def start(self, interval_seconds: float, run_cycle: Callable[[], Any], run_immediately: bool = False):
        """
        Start firing cycles every interval_seconds.

        Args:
            interval_seconds: Period between ticks
            run_cycle: Zero-argument function running one cycle
            run_immediately: Fire the first tick now instead of after one interval

        Raises:
            ValueError: If the interval is not positive
            RuntimeError: If the scheduler is already running
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        if self.started:
            raise RuntimeError("Scheduler already started")

        self.interval_seconds = interval_seconds
        self._run_cycle = run_cycle
        self._stop_event.clear()
        self._timer_thread = threading.Thread(
            target=self._timer_loop,
            args=(run_immediately,),
            name='identity-sync-scheduler',
            daemon=True
        )
        self._timer_thread.start()
        logger.info(f"Scheduler started with {interval_seconds} second interval")

    def _timer_loop(self, run_immediately: bool):
        next_tick = self.clock() if run_immediately else self.clock() + self.interval_seconds
        while not self._stop_event.wait(max(0.0, next_tick - self.clock())):
            self._spawn_tick()
            # After a long suspension fire one catch-up tick, not one per missed interval
            next_tick = max(next_tick + self.interval_seconds, self.clock())

    def _spawn_tick(self):
        thread = threading.Thread(target=self.trigger, name='identity-sync-cycle', daemon=True)
        with self._tick_lock:
            self._tick_threads = [t for t in self._tick_threads if t.is_alive()]
            self._tick_threads.append(thread)
        thread.start()

    def trigger(self):
        """
        Run one cycle now unless a cycle is already active or the scheduler was stopped.

        Returns:
            The cycle result, or None if the tick was skipped or the cycle raised
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("Previous reconciliation cycle still running, skipping this tick")
            return None

        if self._stop_event.is_set():
            self._cycle_lock.release()
            logger.debug("Scheduler stopped, dropping pending tick")
            return None

        try:
            self._state = RUNNING
            self.cycles_run += 1
            result = self._run_cycle()
        except Exception as e:
            logger.error(f"Reconciliation cycle raised unexpectedly: {e}", exc_info=True)
            return None
        finally:
            self._state = IDLE
            self._cycle_lock.release()

        if self.on_result:
            try:
                self.on_result(result)
            except Exception as e:
                logger.error(f"Cycle result handler failed: {e}", exc_info=True)
        return result

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop firing ticks.

        Ticks already handed to a thread but not yet running are dropped.

        Args:
            wait: Also wait for tick threads and an active cycle to finish
            timeout: Maximum seconds to wait for the active cycle
        """
        self._stop_event.set()
        if self._timer_thread:
            self._timer_thread.join()
            self._timer_thread = None

        if wait:
            deadline = None if timeout is None else self.clock() + timeout
            with self._tick_lock:
                tick_threads, self._tick_threads = self._tick_threads, []
            for thread in tick_threads:
                thread.join(None if deadline is None else max(0.0, deadline - self.clock()))

            remaining = -1 if deadline is None else max(0.0, deadline - self.clock())
            acquired = self._cycle_lock.acquire(timeout=remaining)
            if acquired:
                self._cycle_lock.release()
            else:
                logger.warning("Timed out waiting for the active reconciliation cycle")
        logger.info("Scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""
        return self._stop_event.wait(timeout)
