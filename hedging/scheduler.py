"""Periodic drivers for the position, order and maintenance passes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Any, Callable, Optional

from hedging.common import HedgerClock, utc_iso
from hedging.maintenance import MaintenanceSweeper
from hedging.reconciliation_poller import ReconciliationPoller

logger = logging.getLogger(__name__)

JOB_POSITIONS = "positions"
JOB_ORDERS = "orders"
JOB_MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class JobRun:
    """Outcome of one fire; ``fired`` is False when an earlier run still held the job."""

    fired: bool
    result: Any = None


@dataclass(frozen=True)
class JobStatus:
    name: str
    interval_seconds: float
    running: bool
    runs: int
    skipped_fires: int
    last_started_at: Optional[str]
    last_finished_at: Optional[str]
    next_run_estimate: Optional[str]


@dataclass(frozen=True)
class SchedulerStatus:
    """User-facing scheduler status payload."""

    active: bool
    intervals: dict[str, float]
    next_run_estimate: Optional[str]
    jobs: tuple[JobStatus, ...]


class PeriodicJob:
    """One timer with overlap suppression.

    A fire try-acquires a non-blocking lock; if a previous run still holds
    it the fire is counted as skipped and nothing is queued.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Any],
        *,
        clock: HedgerClock | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval must be positive")
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self._action = action
        self._clock = clock or HedgerClock()
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._runs = 0
        self._skipped = 0
        self._last_started_at: Optional[datetime] = None
        self._last_finished_at: Optional[datetime] = None
        self._next_run_at: Optional[datetime] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def run_exclusive(self, action: Callable[[], Any]) -> JobRun:
        """Run ``action`` under this job's overlap guard."""
        if not self._run_lock.acquire(blocking=False):
            with self._state_lock:
                self._skipped += 1
            logger.info("Job %s still running, skipping fire", self.name)
            return JobRun(fired=False)
        try:
            with self._state_lock:
                self._last_started_at = self._clock.now_utc()
                self._runs += 1
            return JobRun(fired=True, result=action())
        finally:
            with self._state_lock:
                self._last_finished_at = self._clock.now_utc()
            self._run_lock.release()

    def fire(self) -> JobRun:
        return self.run_exclusive(self._action)

    def _fire_from_timer(self) -> None:
        with self._state_lock:
            self._next_run_at = self._clock.now_utc() + timedelta(seconds=self.interval_seconds)
        try:
            self.fire()
        except Exception:
            # The timer thread must survive a failed run; the next fire retries.
            logger.exception("Job %s failed", self.name)

    def _loop(self, stop_event: threading.Event, fire_immediately: bool) -> None:
        if fire_immediately and not stop_event.is_set():
            self._fire_from_timer()
        else:
            with self._state_lock:
                self._next_run_at = self._clock.now_utc() + timedelta(seconds=self.interval_seconds)
        while not stop_event.wait(self.interval_seconds):
            self._fire_from_timer()

    def start(self, stop_event: threading.Event, *, fire_immediately: bool = False) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._loop,
            args=(stop_event, fire_immediately),
            name=f"hedger-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
            if not self._thread.is_alive():
                self._thread = None
        with self._state_lock:
            self._next_run_at = None

    def status(self) -> JobStatus:
        with self._state_lock:
            return JobStatus(
                name=self.name,
                interval_seconds=self.interval_seconds,
                running=self.running,
                runs=self._runs,
                skipped_fires=self._skipped,
                last_started_at=None if self._last_started_at is None else utc_iso(self._last_started_at),
                last_finished_at=None if self._last_finished_at is None else utc_iso(self._last_finished_at),
                next_run_estimate=None if self._next_run_at is None else utc_iso(self._next_run_at),
            )


class ReconciliationScheduler:
    """Drives position, order and maintenance passes on independent timers."""

    def __init__(
        self,
        *,
        poller: ReconciliationPoller,
        sweeper: MaintenanceSweeper,
        position_interval_minutes: int = 15,
        order_interval_minutes: int = 5,
        maintenance_interval_hours: int = 24,
        clock: HedgerClock | None = None,
    ) -> None:
        self._poller = poller
        self._sweeper = sweeper
        self._clock = clock or HedgerClock()
        self._stop_event = threading.Event()
        self._active = False
        self._lifecycle_lock = threading.Lock()
        self.positions_job = PeriodicJob(
            JOB_POSITIONS,
            position_interval_minutes * 60,
            lambda: poller.poll_all_accounts(should_continue=self.should_continue),
            clock=self._clock,
        )
        self.orders_job = PeriodicJob(
            JOB_ORDERS,
            order_interval_minutes * 60,
            lambda: poller.poll_all_orders(should_continue=self.should_continue),
            clock=self._clock,
        )
        self.maintenance_job = PeriodicJob(
            JOB_MAINTENANCE,
            maintenance_interval_hours * 3600,
            sweeper.run,
            clock=self._clock,
        )

    @property
    def jobs(self) -> tuple[PeriodicJob, ...]:
        return (self.positions_job, self.orders_job, self.maintenance_job)

    @property
    def active(self) -> bool:
        return self._active

    def should_continue(self) -> bool:
        """False while a stop() is in progress; checked between accounts."""
        return not (self._active and self._stop_event.is_set())

    def start(self) -> None:
        """Start all timers; positions and maintenance also fire once right away."""
        with self._lifecycle_lock:
            if self._active:
                logger.info("Scheduler already active")
                return
            self._stop_event.clear()
            self.positions_job.start(self._stop_event, fire_immediately=True)
            self.orders_job.start(self._stop_event)
            self.maintenance_job.start(self._stop_event, fire_immediately=True)
            self._active = True
        logger.info(
            "Scheduler started: positions every %ss, orders every %ss, maintenance every %ss",
            self.positions_job.interval_seconds,
            self.orders_job.interval_seconds,
            self.maintenance_job.interval_seconds,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop timers; an in-flight pass finishes its current account first."""
        with self._lifecycle_lock:
            if not self._active:
                return
            self._stop_event.set()
            for job in self.jobs:
                job.join(timeout)
            self._active = False
        logger.info("Scheduler stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is requested; True if it was."""
        return self._stop_event.wait(timeout)

    def trigger_positions(self, account_id: str | None = None) -> JobRun:
        """Manual position pass under the same overlap guard as the timer."""
        if account_id is None:
            return self.positions_job.fire()
        return self.positions_job.run_exclusive(lambda: [self._poller.poll_account(account_id)])

    def trigger_orders(self) -> JobRun:
        return self.orders_job.fire()

    def trigger_maintenance(self) -> JobRun:
        return self.maintenance_job.fire()

    def status(self) -> SchedulerStatus:
        jobs = tuple(job.status() for job in self.jobs)
        estimates = [job.next_run_estimate for job in jobs if job.name != JOB_MAINTENANCE and job.next_run_estimate]
        return SchedulerStatus(
            active=self._active,
            intervals={job.name: job.interval_seconds for job in jobs},
            next_run_estimate=min(estimates) if estimates else None,
            jobs=jobs,
        )

