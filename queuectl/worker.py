import logging
from datetime import datetime, timedelta
from threading import Event
from typing import Callable, Optional, Tuple

from .config import Config
from .errors import ExecutionFailure, StoreIOError
from .executor import run_command
from .models import (
    COMPLETED,
    DEAD,
    PROCESSING,
    Job,
    holder_pid,
    is_eligible,
    mark_completed,
    mark_failed,
    mark_processing,
    mark_released,
)
from .pool import worker_alive
from .storage import Storage
from .utils import generate_id, get_utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 2.0


class Worker:
    """One claim-execute-reconcile loop over the shared job store."""

    def __init__(
        self,
        storage: Storage,
        config: Config,
        worker_id: Optional[str] = None,
        executor: Callable[[str], str] = run_command,
        clock: Callable[[], datetime] = get_utc_now,
        is_alive: Callable[[int], bool] = worker_alive,
    ):
        self.storage = storage
        self.config = config
        self.worker_id = worker_id or f"worker-{generate_id()[:8]}"
        self.executor = executor
        self.clock = clock
        self.is_alive = is_alive

    def run(self, stop_event: Event) -> None:
        """Process jobs until ``stop_event`` is set.

        The event is only checked between iterations: a command already
        running is allowed to finish and its outcome is recorded first.
        """
        logger.info("[%s] Worker started", self.worker_id)
        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception:
                logger.exception("[%s] Unexpected error in worker loop", self.worker_id)
                processed = False
            if not processed:
                stop_event.wait(self._poll_seconds())
        logger.info("[%s] Worker stopped", self.worker_id)

    def run_once(self) -> bool:
        """Claim, execute and reconcile at most one job. Returns True if a job ran."""
        job = self.claim()
        if job is None:
            return False

        logger.info("[%s] Processing job %s: %s", self.worker_id, job.id, job.command)
        ok, detail = self.execute(job)
        try:
            self.reconcile(job.id, ok, detail)
        except StoreIOError as e:
            logger.error("[%s] Could not record outcome of job %s: %s", self.worker_id, job.id, e)
        except Exception as e:
            logger.exception("[%s] Could not reconcile job %s, releasing it", self.worker_id, job.id)
            self.release(job.id, f"outcome not recorded: {type(e).__name__}: {e}")
        return True

    def claim(self) -> Optional[Job]:
        """Move the first eligible pending job to processing, or return None.

        The write is a compare-and-swap on the version that was read, so when
        two workers pick the same job only one swap lands; the loser re-reads
        and picks again.
        """
        while True:
            try:
                jobs = self.storage.load()
            except StoreIOError as e:
                logger.error("[%s] Job store unreadable, treating as empty: %s", self.worker_id, e)
                return None

            now = self.clock()
            for abandoned in self._abandoned(jobs, now):
                self._recover(abandoned, now)
            job = next((j for j in jobs if is_eligible(j, now)), None)
            if job is None:
                return None

            expected = job.version
            mark_processing(job, self.worker_id, now)
            try:
                if self.storage.compare_and_swap(job, expected):
                    logger.debug("[%s] Claimed job %s (v%d)", self.worker_id, job.id, job.version)
                    return job
            except StoreIOError as e:
                logger.error("[%s] Could not claim job %s: %s", self.worker_id, job.id, e)
                return None
            logger.debug("[%s] Lost race for job %s, reselecting", self.worker_id, job.id)

    def execute(self, job: Job) -> Tuple[bool, str]:
        try:
            return True, self.executor(job.command)
        except ExecutionFailure as e:
            return False, e.detail
        except Exception as e:
            logger.exception("[%s] Executor crashed on job %s", self.worker_id, job.id)
            return False, f"{type(e).__name__}: {e}"

    def reconcile(self, job_id: str, ok: bool, detail: Optional[str]) -> Optional[Job]:
        """Write the outcome of an attempt back onto the freshest copy of the job."""
        while True:
            current = self.storage.get(job_id)
            if current is None or current.state != PROCESSING or current.worker_id != self.worker_id:
                logger.warning(
                    "[%s] Job %s is no longer held by this worker, dropping outcome",
                    self.worker_id,
                    job_id,
                )
                return None

            expected = current.version
            now = self.clock()
            if ok:
                mark_completed(current, detail, now)
            else:
                mark_failed(
                    current,
                    detail,
                    now,
                    base_delay=self.config.get("base_delay"),
                    max_delay=self.config.get("max_backoff"),
                )

            if self.storage.compare_and_swap(current, expected):
                self._log_outcome(current)
                return current

    def release(self, job_id: str, reason: str) -> Optional[Job]:
        """Put a job this worker still holds back to pending, attempts unchanged."""
        try:
            while True:
                current = self.storage.get(job_id)
                if current is None or current.state != PROCESSING or current.worker_id != self.worker_id:
                    return None
                expected = current.version
                mark_released(current, reason, self.clock())
                if self.storage.compare_and_swap(current, expected):
                    logger.warning("[%s] Released job %s: %s", self.worker_id, job_id, reason)
                    return current
        except StoreIOError as e:
            logger.error("[%s] Could not release job %s: %s", self.worker_id, job_id, e)
            return None

    def _abandoned(self, jobs, now: datetime):
        """Jobs left in processing by a worker that is gone or has overrun ``stale_after``."""
        stale_after = self.config.get("stale_after")
        for job in jobs:
            if job.state != PROCESSING or job.worker_id == self.worker_id:
                continue
            pid = holder_pid(job.worker_id)
            if pid is not None and not self.is_alive(pid):
                yield job
            elif stale_after is not None and now - job.updated_at >= timedelta(seconds=stale_after):
                yield job

    def _recover(self, job: Job, now: datetime) -> None:
        """Fail an abandoned claim; the lost run counts as an attempt."""
        holder = job.worker_id
        expected = job.version
        mark_failed(
            job,
            f"worker {holder} did not record an outcome",
            now,
            base_delay=self.config.get("base_delay"),
            max_delay=self.config.get("max_backoff"),
        )
        try:
            swapped = self.storage.compare_and_swap(job, expected)
        except StoreIOError as e:
            logger.error("[%s] Could not recover job %s: %s", self.worker_id, job.id, e)
            return
        if swapped:
            logger.warning(
                "[%s] Recovered job %s abandoned by %s (now %s)", self.worker_id, job.id, holder, job.state
            )

    def _log_outcome(self, job: Job) -> None:
        if job.state == COMPLETED:
            logger.info("[%s] Job %s completed", self.worker_id, job.id)
        elif job.state == DEAD:
            logger.warning(
                "[%s] Job %s moved to DLQ after %d attempt(s): %s",
                self.worker_id,
                job.id,
                job.attempts,
                job.last_error,
            )
        else:
            logger.info(
                "[%s] Job %s failed (attempt %d/%d), retry at %s",
                self.worker_id,
                job.id,
                job.attempts,
                job.max_retries,
                job.next_run_at.isoformat(),
            )

    def _poll_seconds(self) -> float:
        try:
            return float(self.config.get("poll_interval")) / 1000.0
        except (TypeError, ValueError):
            logger.warning("[%s] Bad poll_interval, polling every %.1fs", self.worker_id, DEFAULT_POLL_SECONDS)
            return DEFAULT_POLL_SECONDS
