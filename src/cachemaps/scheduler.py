"""
Background sweep scheduling.

Every cache map with a background task registers one SweepJob on a shared
APScheduler BackgroundScheduler. The scheduler is a process-wide singleton;
jobs are per cache instance.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, ClassVar

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


# ============================================================================
# SweepConfig - Sweep cadence settings
# ============================================================================


@dataclass
class SweepConfig:
    """Sweep cadence: seconds between ticks and keys visited per tick."""

    delay: float
    stage_size: int = 10

    def __post_init__(self):
        if self.delay <= 0:
            raise ValueError(f"delay must be positive, got {self.delay}")
        if self.stage_size < 1:
            raise ValueError(f"stage_size must be at least 1, got {self.stage_size}")


# ============================================================================
# Shared Scheduler - Singleton for all sweep jobs
# ============================================================================


class _SharedScheduler:
    """
    Shared BackgroundScheduler instance - singleton for all sweep jobs.
    Ensures only one scheduler runs for all cache instances.
    """

    _scheduler: ClassVar[BackgroundScheduler | None] = None
    _lock: ClassVar[threading.RLock] = threading.RLock()
    _started: ClassVar[bool] = False

    @classmethod
    def get_scheduler(cls) -> BackgroundScheduler:
        """Get or create the shared background scheduler instance."""
        with cls._lock:
            if cls._scheduler is None:
                cls._scheduler = BackgroundScheduler(daemon=True)
            assert cls._scheduler is not None  # Type narrowing for IDE
        return cls._scheduler

    @classmethod
    def start(cls) -> None:
        """Start the shared background scheduler."""
        with cls._lock:
            if not cls._started:
                cls.get_scheduler().start()
                cls._started = True
                logger.info("Shared BackgroundScheduler started")

    @classmethod
    def shutdown(cls, wait: bool = True) -> None:
        """Stop the shared background scheduler."""
        with cls._lock:
            if not cls._started or cls._scheduler is None:
                return
            scheduler = cls._scheduler
            cls._started = False
            cls._scheduler = None
        # Outside the lock: running jobs may call has_job while we wait for them
        scheduler.shutdown(wait=wait)
        logger.info("Shared BackgroundScheduler stopped")

    @classmethod
    def has_job(cls, job_id: str) -> bool:
        """Check if the current scheduler holds job_id, without creating one."""
        with cls._lock:
            if cls._scheduler is None:
                return False
            return cls._scheduler.get_job(job_id) is not None


# ============================================================================
# SweepJob - One periodic background task per cache instance
# ============================================================================


class SweepJob:
    """
    Periodic job calling `sweep` every `delay` seconds on the shared scheduler.

    If `expire_at` is given, the first tick at or after that timestamp stops
    the job and calls `on_expire` instead of sweeping.

    Exceptions raised by `sweep` are logged and the job keeps running.

    Ticks never overlap (max_instances=1). When a sweep takes longer than
    `delay`, APScheduler skips the next tick and logs a WARNING ("maximum number
    of running instances reached") on the `apscheduler.executors` logger. With
    very short delays under load, raise the delay or that logger's level.
    """

    def __init__(
        self,
        name: str,
        sweep: Callable[[], object],
        delay: float,
        expire_at: float | None = None,
        on_expire: Callable[[], None] | None = None,
    ):
        if delay <= 0:
            raise ValueError(f"delay must be positive, got {delay}")
        self.name = name
        self.job_id = f"{name}:{uuid.uuid4().hex}"
        self._sweep = sweep
        self._delay = delay
        self._expire_at = expire_at
        self._on_expire = on_expire
        self._lock = threading.RLock()
        self._expired = False

    @classmethod
    def shutdown(cls, wait: bool = True) -> None:
        """
        Stop the shared BackgroundScheduler (and with it every sweep job).

        Args:
            wait: Whether to wait for running jobs to complete
        """
        _SharedScheduler.shutdown(wait)

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def running(self) -> bool:
        """True while the job is registered with the live scheduler."""
        return _SharedScheduler.has_job(self.job_id)

    @property
    def expired(self) -> bool:
        """True once the whole-cache deadline has been handled."""
        return self._expired

    def deadline_passed(self) -> bool:
        """True once expire_at is reached, even before a tick has noticed it."""
        if self._expired:
            return True
        return self._expire_at is not None and time.time() >= self._expire_at

    def _trigger(self) -> IntervalTrigger:
        return IntervalTrigger(seconds=self._delay)

    def start(self) -> None:
        """Register the job and make sure the shared scheduler runs."""
        with self._lock:
            if self._expired or _SharedScheduler.has_job(self.job_id):
                return
            scheduler = _SharedScheduler.get_scheduler()
            scheduler.add_job(
                self._run,
                trigger=self._trigger(),
                id=self.job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None,
            )
            _SharedScheduler.start()
            logger.debug(f"Sweep job {self.job_id} scheduled every {self._delay}s")

    def stop(self) -> None:
        """Unregister the job. Safe to call repeatedly."""
        with self._lock:
            if not _SharedScheduler.has_job(self.job_id):
                return
            try:
                _SharedScheduler.get_scheduler().remove_job(self.job_id)
            except JobLookupError:
                # Removed concurrently by a scheduler shutdown
                logger.debug(f"Sweep job {self.job_id} already gone")
            logger.debug(f"Sweep job {self.job_id} stopped")

    def reschedule(self, delay: float) -> None:
        """Change the tick delay, applying it to a running job immediately."""
        if delay <= 0:
            raise ValueError(f"delay must be positive, got {delay}")
        with self._lock:
            self._delay = delay
            if not _SharedScheduler.has_job(self.job_id):
                return
            try:
                _SharedScheduler.get_scheduler().reschedule_job(
                    self.job_id, trigger=self._trigger()
                )
            except JobLookupError:
                logger.debug(f"Sweep job {self.job_id} gone before reschedule")

    def _run(self) -> None:
        """Job body executed by the scheduler thread pool."""
        if self._expire_at is not None and time.time() >= self._expire_at:
            with self._lock:
                if self._expired:
                    return
                self._expired = True
            self.stop()
            logger.info(f"{self.name} reached its expiry deadline, sweeping stopped")
            if self._on_expire is not None:
                try:
                    self._on_expire()
                except Exception as e:
                    logger.error(f"Expiry handler for {self.name} failed: {e}")
            return

        try:
            self._sweep()
        except Exception as e:
            logger.error(f"Sweep {self.name} failed: {e}", exc_info=True)
