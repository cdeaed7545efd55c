import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from queuectl.config import Config
from queuectl.jobs import JobQueue
from queuectl.pool import WorkerPool, WorkerRegistry
from queuectl.storage import Storage
from queuectl.worker import Worker


class SteppedClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


@unittest.skipIf(os.name == "nt", "commands assume a POSIX shell")
class TestCoreFlow(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.storage = Storage(os.path.join(self.tmpdir, "jobs.db"))
        self.config = Config(os.path.join(self.tmpdir, "config.json"))
        self.queue = JobQueue(self.storage, self.config)
        self.pool = WorkerPool(WorkerRegistry(os.path.join(self.tmpdir, "pids.json")))
        self.clock = SteppedClock()
        self.worker = Worker(self.storage, self.config, worker_id="worker-1", clock=self.clock)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_success_scenario(self):
        job = self.queue.enqueue({"command": "exit 0"})
        self.assertEqual(job.max_retries, 3)
        self.assertTrue(self.worker.run_once())
        return self.queue.get_job(job.id)

    def run_failure_scenario(self):
        self.config.set("base_delay", 1)
        job = self.queue.enqueue({"id": "flaky", "command": "exit 1", "max_retries": 2})

        self.assertTrue(self.worker.run_once())
        first = self.queue.get_job(job.id)
        self.assertEqual(first.state, "pending")
        self.assertEqual(first.attempts, 1)
        self.assertEqual(first.next_run_at, self.clock.now + timedelta(seconds=1))

        # still backing off
        self.assertFalse(self.worker.run_once())

        self.clock.now += timedelta(seconds=1)
        self.assertTrue(self.worker.run_once())
        return self.queue.get_job(job.id)

    def test_successful_job_completes(self):
        job = self.run_success_scenario()
        self.assertEqual(job.state, "completed")
        self.assertEqual(job.attempts, 0)
        self.assertIsNone(job.next_run_at)

    def test_output_is_captured(self):
        job = self.queue.enqueue({"command": "echo hello"})
        self.worker.run_once()
        self.assertEqual(self.queue.get_job(job.id).output, "hello")

    def test_failed_job_retries_then_goes_dead(self):
        job = self.run_failure_scenario()
        self.assertEqual(job.state, "dead")
        self.assertEqual(job.attempts, 2)
        self.assertIsNone(job.next_run_at)
        self.assertIsNotNone(job.last_error)

    def test_list_by_state_after_failure(self):
        self.run_failure_scenario()
        self.assertEqual([j.id for j in self.queue.list_jobs("dead")], ["flaky"])
        self.assertEqual(self.queue.list_jobs("pending"), [])

    def test_status_after_both_scenarios(self):
        self.run_success_scenario()
        self.run_failure_scenario()
        status = self.queue.get_status(self.pool)
        self.assertEqual(
            status.counts,
            {"pending": 0, "processing": 0, "completed": 1, "dead": 1},
        )
        self.assertEqual(status.active_count, 0)

    def test_stop_without_workers_is_a_no_op(self):
        self.assertEqual(self.pool.stop(), 0)
        self.assertEqual(self.pool.stop(), 0)

    def test_jobs_run_in_fifo_order(self):
        for name in ("one", "two", "three"):
            self.queue.enqueue({"id": name, "command": "exit 0"})
        order = []
        while True:
            claimed = self.worker.claim()
            if claimed is None:
                break
            order.append(claimed.id)
            self.worker.reconcile(claimed.id, True, "")
        self.assertEqual(order, ["one", "two", "three"])


if __name__ == "__main__":
    unittest.main()
