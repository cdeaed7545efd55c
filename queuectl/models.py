from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from .errors import InvalidTransition

# Job states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
DEAD = "dead"  # DLQ

STATES = (PENDING, PROCESSING, COMPLETED, DEAD)
TERMINAL_STATES = (COMPLETED, DEAD)

# Hard ceiling on a single backoff delay (~31 years); keeps timedelta arithmetic finite
MAX_BACKOFF_SECONDS = 10 ** 9

# Captured output/error kept on the job record
OUTPUT_LIMIT = 2000


@dataclass
class Job:
    id: str
    command: str
    state: str
    attempts: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    next_run_at: Optional[datetime] = None  # backoff; only meaningful while pending
    version: int = 0  # bumped by every compare-and-swap write
    worker_id: Optional[str] = None  # holder of the current claim
    output: Optional[str] = None
    last_error: Optional[str] = None

    @staticmethod
    def create(id: str, command: str, max_retries: int, now: datetime) -> "Job":
        return Job(
            id=id,
            command=command,
            state=PENDING,
            attempts=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "updated_at", "next_run_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _clip(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= OUTPUT_LIMIT else text[-OUTPUT_LIMIT:]


def _require_state(job: Job, expected: str, target: str) -> None:
    if job.state != expected:
        raise InvalidTransition(
            f"Job {job.id} cannot move {job.state} -> {target} (expected {expected})"
        )


def is_eligible(job: Job, now: datetime) -> bool:
    """A pending job is claimable once its backoff delay (if any) has passed."""
    if job.state != PENDING:
        return False
    return job.next_run_at is None or job.next_run_at <= now


def backoff_delay(attempts: int, base_delay: float, max_delay: Optional[float] = None) -> float:
    """Seconds to wait after the given number of failed attempts: base_delay ** attempts."""
    try:
        delay = float(base_delay) ** attempts
    except OverflowError:
        delay = float(MAX_BACKOFF_SECONDS)
    if max_delay is not None:
        delay = min(delay, float(max_delay))
    return min(delay, float(MAX_BACKOFF_SECONDS))


def mark_processing(job: Job, worker_id: str, now: datetime) -> Job:
    _require_state(job, PENDING, PROCESSING)
    job.state = PROCESSING
    job.worker_id = worker_id
    job.next_run_at = None
    job.updated_at = now
    return job


def mark_completed(job: Job, output: Optional[str], now: datetime) -> Job:
    _require_state(job, PROCESSING, COMPLETED)
    job.state = COMPLETED
    job.output = _clip(output)
    job.next_run_at = None
    job.worker_id = None
    job.updated_at = now
    return job


def mark_failed(
    job: Job,
    error: Optional[str],
    now: datetime,
    base_delay: float,
    max_delay: Optional[float] = None,
) -> Job:
    """Count a failed attempt, then either schedule a retry or dead-letter the job."""
    _require_state(job, PROCESSING, f"{PENDING}/{DEAD}")
    job.attempts += 1
    job.last_error = _clip(error)
    job.worker_id = None
    job.updated_at = now
    if job.attempts < job.max_retries:
        job.state = PENDING
        job.next_run_at = now + timedelta(seconds=backoff_delay(job.attempts, base_delay, max_delay))
    else:
        job.state = DEAD
        job.next_run_at = None
    return job


def mark_released(job: Job, reason: str, now: datetime) -> Job:
    """Hand a claimed job back to the queue without counting an attempt."""
    _require_state(job, PROCESSING, PENDING)
    job.state = PENDING
    job.last_error = _clip(reason)
    job.worker_id = None
    job.next_run_at = None
    job.updated_at = now
    return job


def holder_pid(worker_id: Optional[str]) -> Optional[int]:
    """Pid embedded in a ``worker-<n>:<pid>`` claim id, if there is one."""
    if not worker_id or ":" not in worker_id:
        return None
    try:
        return int(worker_id.rsplit(":", 1)[1])
    except ValueError:
        return None
