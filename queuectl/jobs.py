import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Config
from .errors import StoreIOError, ValidationError
from .models import STATES, Job
from .pool import WorkerPool
from .storage import Storage
from .utils import generate_id, get_utc_now

logger = logging.getLogger(__name__)


@dataclass
class QueueStatus:
    counts: Dict[str, int]
    active_workers: List[int] = field(default_factory=list)

    @property
    def active_count(self) -> int:
        return len(self.active_workers)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class JobQueue:
    """Creates jobs and answers read-only questions about the queue."""

    def __init__(self, storage: Storage, config: Config):
        self.storage = storage
        self.config = config

    def enqueue(self, data: Any) -> Job:
        if not isinstance(data, dict):
            raise ValidationError("Job payload must be a JSON object")

        command = data.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValidationError('Job must include a non-empty "command" field')

        job_id = data.get("id")
        if job_id is None:
            job_id = generate_id()
        elif not isinstance(job_id, str) or not job_id.strip():
            raise ValidationError('"id" must be a non-empty string')

        max_retries = data.get("max_retries")
        if max_retries is None:
            max_retries = self.config.get("max_retries")
        elif isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError('"max_retries" must be a non-negative integer')

        job = Job.create(job_id, command, max_retries, get_utc_now())
        self.storage.add(job)
        logger.debug("Enqueued job %s: %s (max_retries=%d)", job.id, job.command, job.max_retries)
        return job

    def list_jobs(self, state: Optional[str] = None) -> List[Job]:
        """All jobs in store order, optionally only those in ``state``."""
        try:
            jobs = self.storage.load()
        except StoreIOError as e:
            logger.error("Job store unreadable, treating as empty: %s", e)
            return []
        if state is None:
            return jobs
        return [job for job in jobs if job.state == state]

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.storage.get(job_id)

    def get_status(self, pool: WorkerPool) -> QueueStatus:
        try:
            stored = self.storage.count_by_state()
        except StoreIOError as e:
            logger.error("Job store unreadable, treating as empty: %s", e)
            stored = {}
        counts = {state: stored.get(state, 0) for state in STATES}
        return QueueStatus(counts=counts, active_workers=pool.active_workers())
