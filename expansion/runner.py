"""
Job Runner - background process that executes queued expansion jobs.

The runner:
1. Claims the oldest queued job
2. Runs the expansion pipeline with the job's params
3. Stores the result (or the failure) back on the job
"""

import signal
import time
import uuid
import logging
from typing import Optional

from expansion.jobs import ExpansionJob, GenerationParams, JobOrchestrator
from expansion.pipeline import ExpansionPipeline

log = logging.getLogger(__name__)


class JobRunner:
    """
    Processes expansion jobs until told to stop.

    Usage:
        runner = JobRunner(jobs, pipeline)
        runner.install_signal_handlers()
        runner.run()
    """

    def __init__(
        self,
        jobs: JobOrchestrator,
        pipeline: ExpansionPipeline,
        runner_id: Optional[str] = None,
        poll_interval: float = 2.0,
    ):
        self.runner_id = runner_id or f"runner-{uuid.uuid4().hex[:6]}"
        self.jobs = jobs
        self.pipeline = pipeline
        self.poll_interval = poll_interval

        self._current_job: Optional[ExpansionJob] = None
        self._shutdown_requested = False

        log.info(f"Runner {self.runner_id} initialized")

    def install_signal_handlers(self):
        """Stop after the current job on SIGINT/SIGTERM. Main thread only."""
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        log.info(f"Runner {self.runner_id} received shutdown signal")
        self._shutdown_requested = True
        if self._current_job:
            log.info(f"Finishing job {self._current_job.id} before exit")

    def run(self):
        """Main loop. Processes jobs until shutdown."""
        log.info(f"Runner {self.runner_id} starting")

        while not self._shutdown_requested:
            if not self.run_once():
                time.sleep(self.poll_interval)

        log.info(f"Runner {self.runner_id} stopped")

    def run_once(self) -> bool:
        """
        Claim and process one job.

        Returns:
            True if a job was processed, False if the queue was empty
        """
        job = self.jobs.claim_next()
        if job is None:
            return False

        self._current_job = job
        try:
            self._process_job(job)
        finally:
            self._current_job = None
        return True

    def _process_job(self, job: ExpansionJob):
        log.info(f"Processing job {job.id} for user {job.user_id}")

        try:
            params = GenerationParams.from_dict(job.params)
            result = self.pipeline.run(params)
        except Exception as e:
            log.exception(f"Job {job.id} failed")
            self.jobs.mark_failed(job.id, str(e) or type(e).__name__)
            return

        tokens_used = result.get("statistics", {}).get("tokensUsed", 0)
        self.jobs.mark_completed(job.id, result, tokens_used=tokens_used)

    def stop(self):
        """Stop the runner gracefully."""
        self._shutdown_requested = True
