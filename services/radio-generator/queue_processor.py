"""
Radio Generator — Queue processor

Claims one job at a time and drives it through the pipeline. Only one
pipeline runs per process; concurrent triggers get "busy". Across processes,
the store's conditional claim decides who gets a job.
"""

import logging
import threading
import time
from dataclasses import dataclass

from jobs import Job, JobStore
from pipeline import generate_program

logger = logging.getLogger(__name__)

RETRY_AFTER_S = 5
_CLAIM_ATTEMPTS = 3


@dataclass
class ProcessOutcome:
    kind: str  # processed | idle | not_found | busy | failed | error
    job_id: str | None = None
    program_url: str | None = None
    error: str | None = None
    duration_ms: int | None = None
    retry_after: int | None = None

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.kind]

    def to_response(self) -> dict:
        if self.kind == "processed":
            return {
                "success": True,
                "message": "Job processed successfully",
                "jobId": self.job_id,
                "programUrl": self.program_url,
                "processingDuration": self.duration_ms,
                "processed": 1,
            }
        if self.kind == "idle":
            return {"success": True, "message": "No pending jobs to process", "processed": 0}
        if self.kind == "not_found":
            return {
                "success": False,
                "message": f"Job {self.job_id} not found or already processed",
            }
        if self.kind == "busy":
            return {
                "success": False,
                "error": "Queue processor is busy",
                "message": f"Already processing job: {self.job_id}. Please try again later.",
                "retryAfter": self.retry_after,
            }
        if self.kind == "failed":
            return {
                "success": False,
                "message": "Job processing failed",
                "jobId": self.job_id,
                "error": self.error,
                "processingDuration": self.duration_ms,
                "processed": 0,
            }
        return {"success": False, "error": "Queue processor failed", "details": self.error}


_HTTP_STATUS = {
    "processed": 200,
    "idle": 200,
    "not_found": 404,
    "busy": 429,
    "failed": 500,
    "error": 500,
}


class QueueProcessor:
    def __init__(self, store: JobStore, run_pipeline=generate_program):
        self.store = store
        self.run_pipeline = run_pipeline
        self._lock = threading.Lock()
        self._current_job_id: str | None = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def process(self, job_id: str | None = None, triggered_by: str | None = None) -> ProcessOutcome:
        """Claim and run one job: ``job_id`` if given, else the oldest pending."""
        if not self._lock.acquire(blocking=False):
            logger.info("Queue processor already busy with job: %s", self._current_job_id)
            return ProcessOutcome("busy", job_id=self._current_job_id, retry_after=RETRY_AFTER_S)

        self._current_job_id = job_id or "unknown"
        try:
            if job_id:
                logger.info("Processing specific job: %s (triggered by: %s)", job_id, triggered_by or "unknown")
            else:
                logger.info("Processing oldest pending job from queue")

            try:
                job = self._claim(job_id)
            except Exception as exc:
                logger.exception("Failed to claim job")
                return ProcessOutcome("error", job_id=job_id, error=str(exc))

            if job is None:
                if job_id:
                    return ProcessOutcome("not_found", job_id=job_id)
                logger.info("No pending jobs found")
                return ProcessOutcome("idle")

            self._current_job_id = job.id
            return self._run(job)
        finally:
            self._current_job_id = None
            self._lock.release()
            logger.info("Released processing lock")

    def _claim(self, job_id: str | None) -> Job | None:
        if job_id:
            return self.store.claim(job_id)

        for _ in range(_CLAIM_ATTEMPTS):
            candidates = self.store.oldest_pending()
            if not candidates:
                return None
            job = self.store.claim(candidates[0])
            if job is not None:
                return job
            # another worker took it; look again
        return None

    def _run(self, job: Job) -> ProcessOutcome:
        logger.info(
            "Processing job: %s | LMID: %s | World: %s | Type: %s | %d segments",
            job.id, job.lmid, job.world, job.program_type, len(job.segments),
        )
        start = time.monotonic()
        try:
            result = self.run_pipeline(job)
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.exception("Job failed: %s", job.id)
            message = str(exc) or type(exc).__name__
            try:
                self.store.fail(job.id, message, duration_ms)
            except Exception:
                logger.exception("Failed to update job %s status to failed", job.id)
            return ProcessOutcome("failed", job_id=job.id, error=message, duration_ms=duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        try:
            recorded = self.store.complete(job.id, result.program_url, result.file_count, duration_ms)
        except Exception as exc:
            logger.exception("Failed to update job %s completion", job.id)
            error = f"Failed to record completion: {exc}"
            try:
                self.store.fail(job.id, error, duration_ms)
            except Exception:
                logger.exception("Failed to update job %s status to failed", job.id)
            return ProcessOutcome("error", job_id=job.id, error=error, duration_ms=duration_ms)

        if not recorded:
            return ProcessOutcome(
                "error",
                job_id=job.id,
                error=f"Job {job.id} was no longer processing",
                duration_ms=duration_ms,
            )

        logger.info("Job %s completed in %dms: %s", job.id, duration_ms, result.program_url)
        return ProcessOutcome(
            "processed",
            job_id=job.id,
            program_url=result.program_url,
            duration_ms=duration_ms,
        )
