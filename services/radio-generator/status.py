"""
Radio Generator — Job status

Read-only views over a job: a single snapshot for polling clients and an
event stream for push clients. Neither ever writes to the store.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone

from jobs import Job, JobStatus

logger = logging.getLogger(__name__)

STREAM_INTERVAL_S = float(os.environ.get("STREAM_INTERVAL_S", "1"))
STREAM_MAX_CHECKS = int(os.environ.get("STREAM_MAX_CHECKS", "300"))  # 5 minutes at 1s

_MESSAGES = {
    JobStatus.PENDING: "Job is waiting in queue",
    JobStatus.PROCESSING: "Job is being processed",
    JobStatus.COMPLETED: "Job completed successfully",
    JobStatus.FAILED: "Job failed to process",
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def job_snapshot(job: Job) -> dict:
    """Poll response for one job."""
    snapshot = {
        "success": job.status != JobStatus.FAILED,
        "status": job.status.value,
        "jobId": job.id,
        "message": _MESSAGES[job.status],
        "createdAt": _iso(job.created_at),
        "fileCount": job.file_count,
    }
    if job.status != JobStatus.PENDING:
        snapshot["startedAt"] = _iso(job.started_at)
    if job.status.is_terminal:
        snapshot["completedAt"] = _iso(job.completed_at)
    if job.status == JobStatus.COMPLETED:
        snapshot["programUrl"] = job.program_url
        snapshot["processingDuration"] = job.processing_duration_ms
    elif job.status == JobStatus.FAILED:
        snapshot["error"] = job.error_message or "Job processing failed"
    return snapshot


def status_event(job: Job) -> dict:
    event = {
        "type": "status",
        "jobId": job.id,
        "status": job.status.value,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "lmid": job.lmid,
        "world": job.world,
        "lang": job.lang,
        "programType": job.program_type,
        "fileCount": job.file_count,
    }
    if job.status == JobStatus.COMPLETED and job.program_url:
        event["programUrl"] = job.program_url
    if job.status == JobStatus.FAILED and job.error_message:
        event["error"] = job.error_message
    return event


async def job_events(
    store,
    job_id: str,
    interval_s: float = STREAM_INTERVAL_S,
    max_checks: int = STREAM_MAX_CHECKS,
):
    """Yield status events for ``job_id`` until it finishes or the budget runs out.

    Sequence: ``connected``, then one ``status`` per check. The stream ends
    after a terminal status, after ``timeout`` once ``max_checks`` checks have
    been made, or after ``error`` if the job cannot be read.
    """
    yield {
        "type": "connected",
        "message": f"Monitoring job {job_id}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    checks = 0
    while True:
        checks += 1
        try:
            job = await asyncio.to_thread(store.get, job_id)
        except Exception as exc:
            logger.exception("SSE: failed to read job %s", job_id)
            yield {"type": "error", "message": "Failed to fetch job status", "error": str(exc)}
            return

        if job is None:
            logger.warning("SSE: job not found: %s", job_id)
            yield {"type": "error", "message": "Job not found"}
            return

        logger.debug("SSE: job %s status %s (check %d)", job_id, job.status.value, checks)
        yield status_event(job)

        if job.status.is_terminal:
            logger.info("SSE: job %s finished with status %s", job_id, job.status.value)
            return

        if checks >= max_checks:
            logger.info("SSE: max checks reached for job %s", job_id)
            yield {"type": "timeout", "message": "Maximum monitoring time reached"}
            return

        await asyncio.sleep(interval_s)
