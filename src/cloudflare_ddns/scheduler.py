"""Per-config recurring reconciliation.

One scheduling thread tracks the next due time of every registered config
and hands due cycles to a worker pool. Each config has its own lock, so
its cycles never overlap: a timer tick that finds a cycle in flight is
skipped, while on-demand triggers wait their turn.

Registration does not reconcile immediately; the first cycle runs one
interval later unless triggered on demand.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from cloudflare_ddns.errors import NotFoundError
from cloudflare_ddns.models import DdnsConfig, validate_interval
from cloudflare_ddns.reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)


@dataclass
class _Timer:
    config_id: str
    interval: int
    next_due: float


class Scheduler:
    def __init__(
        self,
        reconciler: Reconciler,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 8,
        poll_seconds: float = 1.0,
    ):
        self.reconciler = reconciler
        self._clock = clock
        self._poll_seconds = poll_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ddns-worker")
        self._lock = threading.Lock()
        self._timers: Dict[str, _Timer] = {}
        self._flight_locks: Dict[str, threading.Lock] = {}
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, config: DdnsConfig) -> None:
        """Start (or restart) the timer of a config; first tick after one interval."""
        interval = validate_interval(config.update_interval_seconds)
        with self._lock:
            self._timers[config.id] = _Timer(config.id, interval, self._clock() + interval)
            self._flight_locks.setdefault(config.id, threading.Lock())
        self._wakeup.set()
        logger.debug(f"Registered config '{config.id}' (interval: {interval}s)")

    def deregister(self, config_id: str) -> bool:
        """Cancel the timer of a config. An in-flight cycle is left to finish."""
        with self._lock:
            timer = self._timers.pop(config_id, None)
            self._prune_flight_lock(config_id)
        if timer is not None:
            logger.debug(f"Deregistered config '{config_id}'")
        return timer is not None

    def is_registered(self, config_id: str) -> bool:
        with self._lock:
            return config_id in self._timers

    def registered_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def next_due(self, config_id: str) -> Optional[float]:
        with self._lock:
            timer = self._timers.get(config_id)
            return timer.next_due if timer else None

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def trigger_now(self, config_id: str) -> "Future[Optional[ReconcileResult]]":
        """Run one cycle out-of-band; the timer's next fire time is unchanged."""
        with self._lock:
            flight_lock = self._flight_locks.get(config_id) if config_id in self._timers else None
        if flight_lock is None:
            raise NotFoundError(f"Config '{config_id}' is not registered")
        return self._executor.submit(self._run, config_id, flight_lock, True)

    def trigger_all(self) -> "Dict[str, Future[Optional[ReconcileResult]]]":
        """Run one independent cycle for every registered config."""
        with self._lock:
            targets = [
                (config_id, self._flight_locks[config_id]) for config_id in sorted(self._timers)
            ]
        return {
            config_id: self._executor.submit(self._run, config_id, flight_lock, True)
            for config_id, flight_lock in targets
        }

    def run_pending(self) -> int:
        """Submit a cycle for every config whose timer is due. Returns the count."""
        now = self._clock()
        due = []
        with self._lock:
            for timer in self._timers.values():
                if timer.next_due > now:
                    continue
                due.append((timer.config_id, self._flight_locks[timer.config_id]))
                # Ticks missed while the process was busy collapse into one
                missed = int((now - timer.next_due) // timer.interval) + 1
                timer.next_due += missed * timer.interval

        for config_id, flight_lock in due:
            self._executor.submit(self._run, config_id, flight_lock, False)
        return len(due)

    def _run(
        self, config_id: str, flight_lock: threading.Lock, wait: bool
    ) -> Optional[ReconcileResult]:
        if not flight_lock.acquire(blocking=wait):
            logger.debug(f"Skipping tick for '{config_id}': previous cycle still running")
            return None
        try:
            with self._lock:
                current = (
                    config_id in self._timers
                    and self._flight_locks.get(config_id) is flight_lock
                )
            if not current:
                logger.debug(f"Config '{config_id}' deregistered before its cycle started")
                return None
            return self.reconciler.reconcile(config_id)
        finally:
            flight_lock.release()
            with self._lock:
                if config_id not in self._timers:
                    self._prune_flight_lock(config_id)

    def _prune_flight_lock(self, config_id: str) -> None:
        # Caller holds self._lock; a lock held by a running cycle is pruned when it ends
        flight_lock = self._flight_locks.get(config_id)
        if flight_lock is not None and flight_lock.acquire(blocking=False):
            del self._flight_locks[config_id]
            flight_lock.release()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        if self._thread and self._thread.is_alive():
            logger.warning("Scheduler is already running")
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="ddns-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with {len(self.registered_ids())} config(s)")
        return True

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the scheduling thread and wait for in-flight cycles."""
        self._stop_event.set()
        self._wakeup.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop within timeout")
        self._executor.shutdown(wait=True)
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
            self._wakeup.wait(timeout=self._seconds_until_next_due())
            self._wakeup.clear()
        logger.debug("Scheduler loop finished")

    def _seconds_until_next_due(self) -> float:
        with self._lock:
            next_due = min((t.next_due for t in self._timers.values()), default=None)
        if next_due is None:
            return self._poll_seconds
        return max(0.0, min(self._poll_seconds, next_due - self._clock()))
