"""
Little Microphones Radio Generator — Worker Service

Assembles radio programs from queued jobs. A job is processed when a client
triggers /process-queue (optionally for a specific job right after enqueueing
it) or when the background worker picks it up via pg_notify / 5s poll.

POST /process-queue  — claim and process one job
GET  /job-status     — job status snapshot
GET  /job-stream     — job status as Server-Sent Events
GET  /health         — health check
"""

import json
import logging
import os
import platform
import select
import threading
import time
from contextlib import contextmanager

import psycopg2
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from jobs import JobStore
from queue_processor import QueueProcessor
from status import job_events, job_snapshot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Little Microphones Radio Generator")

# Status pages poll and subscribe from other origins.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Cache-Control"],
)

PROCESSOR_API_KEY = os.environ.get("PROCESSOR_API_KEY")
DATABASE_URL = os.environ.get("DATABASE_URL")
POLL_INTERVAL_S = float(os.environ.get("POLL_INTERVAL_S", "5"))
NOTIFY_CHANNEL = os.environ.get("NOTIFY_CHANNEL", "new_job")

_store = JobStore()
_processor = QueueProcessor(_store)


def get_store() -> JobStore:
    return _store


def get_processor() -> QueueProcessor:
    return _processor


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def verify_token(request: Request) -> None:
    if not PROCESSOR_API_KEY:
        raise HTTPException(status_code=500, detail="PROCESSOR_API_KEY not configured")

    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = auth[len("Bearer "):]
    if token != PROCESSOR_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid token")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ProcessRequest(BaseModel):
    specificJobId: str | None = None
    triggeredBy: str | None = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

_worker_threads: list[threading.Thread] = []
_shutdown_event = threading.Event()


@app.get("/health")
def health(processor: QueueProcessor = Depends(get_processor)):
    alive_workers = sum(1 for t in _worker_threads if t.is_alive())
    return {
        "status": "ok",
        "busy": processor.busy,
        "workers": {"alive": alive_workers},
    }


@app.api_route("/process-queue", methods=["GET", "POST"])
def process_queue(
    body: ProcessRequest | None = None,
    _auth: None = Depends(verify_token),
    processor: QueueProcessor = Depends(get_processor),
):
    body = body or ProcessRequest()
    outcome = processor.process(body.specificJobId, triggered_by=body.triggeredBy)

    headers = {"Retry-After": str(outcome.retry_after)} if outcome.retry_after else None
    return JSONResponse(
        status_code=outcome.http_status,
        content=outcome.to_response(),
        headers=headers,
    )


@app.get("/job-status")
def job_status(
    job_id: str | None = Query(default=None, alias="jobId"),
    store: JobStore = Depends(get_store),
):
    if not job_id:
        return JSONResponse(status_code=400, content={"error": "Missing required parameter: jobId"})

    try:
        job = store.get(job_id)
    except Exception as exc:
        logger.exception("Failed to fetch job %s", job_id)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to check job status", "details": str(exc)},
        )

    if job is None:
        return JSONResponse(status_code=404, content={"error": "Job not found", "jobId": job_id})

    logger.info("Job %s: %s", job.id, job.status.value)
    return job_snapshot(job)


@app.get("/job-stream")
async def job_stream(
    request: Request,
    job_id: str | None = Query(default=None, alias="jobId"),
    store: JobStore = Depends(get_store),
):
    if not job_id:
        return JSONResponse(status_code=400, content={"error": "jobId parameter is required"})

    logger.info("SSE: monitoring job %s", job_id)

    async def gen():
        async for event in job_events(store, job_id):
            if await request.is_disconnected():
                logger.info("SSE: client disconnected from job %s", job_id)
                return
            yield {"data": json.dumps(event)}

    return EventSourceResponse(gen(), headers={"Cache-Control": "no-cache"})


# ---------------------------------------------------------------------------
# Worker loop: picks up pending jobs via pg_notify / poll
# ---------------------------------------------------------------------------

@contextmanager
def _pg_connect():
    """Open a direct Postgres connection (needed for LISTEN/NOTIFY)."""
    conn = psycopg2.connect(DATABASE_URL)
    conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
    try:
        yield conn
    finally:
        conn.close()


def _worker_loop(worker_id: str):
    """Process pending jobs until none are left, then wait for a notification."""
    logger.info("Worker %s started", worker_id)

    while not _shutdown_event.is_set():
        try:
            with _pg_connect() as conn:
                cur = conn.cursor()
                cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                logger.info("Worker %s: listening on %s", worker_id, NOTIFY_CHANNEL)

                while not _shutdown_event.is_set():
                    outcome = _processor.process(triggered_by=worker_id)
                    if outcome.kind in ("processed", "failed"):
                        # Immediately loop to check for more jobs
                        continue

                    # Idle or busy, wait for pg_notify or poll timeout
                    if select.select([conn], [], [], POLL_INTERVAL_S) != ([], [], []):
                        conn.poll()
                        while conn.notifies:
                            conn.notifies.pop(0)

        except Exception:
            if _shutdown_event.is_set():
                break
            logger.exception("Worker %s: connection error, reconnecting in 5s", worker_id)
            time.sleep(5)

    logger.info("Worker %s stopped", worker_id)


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------

@app.on_event("startup")
def startup():
    if not DATABASE_URL:
        logger.warning("DATABASE_URL not set, background worker will not start")
        return

    worker_id = f"{platform.node() or 'worker'}-0"
    t = threading.Thread(target=_worker_loop, args=(worker_id,), daemon=True, name="worker-0")
    t.start()
    _worker_threads.append(t)
    logger.info("Started background worker %s", worker_id)


@app.on_event("shutdown")
def shutdown():
    logger.info("Shutting down workers...")
    _shutdown_event.set()
    for t in _worker_threads:
        t.join(timeout=10)
    logger.info("All workers stopped")
