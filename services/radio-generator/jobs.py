"""
Radio Generator — Jobs

Job model, segment descriptors and the Supabase-backed job queue store.

Rows are parsed into typed models once, when they leave the store. The store
is the only place that writes job status, and every status write is a
conditional update keyed on the current status, so a job only ever moves
pending -> processing -> completed | failed.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from urllib.parse import unquote, urlsplit

from postgrest.exceptions import APIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from supabase import create_client

logger = logging.getLogger(__name__)

JOBS_TABLE = os.environ.get("JOBS_TABLE", "audio_generation_jobs")

_DEFAULT_SILENCE_S = 2.0


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

class SingleSegment(BaseModel):
    """A pre-rendered clip: intro, outro, question prompt or one recording."""

    type: Literal["single", "recording"] = "single"
    url: str


class SilenceSegment(BaseModel):
    """Synthesized silence; never fetched."""

    type: Literal["question_intro", "pause", "question_transition", "silence"]
    duration: float = _DEFAULT_SILENCE_S

    @field_validator("duration", mode="before")
    @classmethod
    def _default_duration(cls, value):
        return _DEFAULT_SILENCE_S if value in (None, "", 0) else value


class AnswersSegment(BaseModel):
    """Answers to one question, played back to back.

    The background is not applied per question; the first background of the
    job is mixed under the whole program.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["combine_with_background"] = "combine_with_background"
    answer_urls: list[str] = Field(default_factory=list, alias="answerUrls")
    background_url: str | None = Field(default=None, alias="backgroundUrl")
    question_id: str | None = Field(default=None, alias="questionId")

    @field_validator("question_id", mode="before")
    @classmethod
    def _question_id_str(cls, value):
        return None if value is None else str(value)


Segment = Annotated[
    Union[SingleSegment, SilenceSegment, AnswersSegment],
    Field(discriminator="type"),
]


def first_background_url(segments: list) -> str | None:
    for segment in segments:
        if isinstance(segment, AnswersSegment) and segment.background_url:
            return segment.background_url
    return None


# ---------------------------------------------------------------------------
# Recording file names
# ---------------------------------------------------------------------------

_RECORDING_RE = re.compile(
    r"^(?P<program_type>kids|parent)(?:_(?P<member_id>[^-]+))?"
    r"-world_(?P<world>.+?)-lmid_(?P<lmid>\d+)"
    r"-question_(?P<question_id>\d+)-tm_(?P<timestamp>\d+)"
    r"\.(?P<ext>webm|mp3)$"
)


@dataclass(frozen=True)
class RecordingName:
    """Metadata embedded in a user recording's file name.

    kids:   kids-world_{world}-lmid_{lmid}-question_{qid}-tm_{ts}.webm
    parent: parent_{member}-world_{world}-lmid_{lmid}-question_{qid}-tm_{ts}.webm
    """

    filename: str
    program_type: str
    world: str
    lmid: str
    question_id: str
    timestamp: int
    member_id: str | None = None

    @classmethod
    def parse(cls, url: str) -> "RecordingName | None":
        filename = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
        match = _RECORDING_RE.match(filename)
        if not match:
            return None
        program_type = match["program_type"]
        member_id = match["member_id"]
        # kids recordings never carry a member id; parent recordings always do
        if (program_type == "kids") != (member_id is None):
            return None
        return cls(
            filename=filename,
            program_type=program_type,
            world=match["world"],
            lmid=match["lmid"],
            question_id=match["question_id"],
            timestamp=int(match["timestamp"]),
            member_id=member_id,
        )


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class Job(BaseModel):
    id: str
    status: JobStatus
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    program_type: Literal["kids", "parent"] = "kids"
    world: str
    lmid: str
    lang: str = "en"
    segments: list[Segment] = Field(default_factory=list)
    program_url: str | None = None
    file_count: int | None = None
    error_message: str | None = None
    processing_duration_ms: int | None = None

    @field_validator("id", "world", "lmid", mode="before")
    @classmethod
    def _as_str(cls, value):
        return value if value is None else str(value)

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        return cls.model_validate(row)

    @property
    def background_url(self) -> str | None:
        return first_background_url(self.segments)

    @property
    def program_filename(self) -> str:
        return f"radio-program-{self.program_type}-{self.world}-{self.lmid}.mp3"

    @property
    def storage_path(self) -> str:
        return f"{self.lang}/{self.lmid}/{self.world}/{self.program_filename}"

    def recording_count(self) -> int:
        """Distinct recordings of this job's world/lmid/type in answer blocks."""
        names = set()
        for segment in self.segments:
            if not isinstance(segment, AnswersSegment):
                continue
            for url in segment.answer_urls:
                name = RecordingName.parse(url)
                if (
                    name
                    and name.program_type == self.program_type
                    and name.world == self.world
                    and name.lmid == self.lmid
                ):
                    names.add(name.filename)
        return len(names)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def get_supabase():
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise RuntimeError("Supabase not configured")
    return create_client(url, key)


class JobStore:
    """Job queue backed by a Supabase table.

    ``claim`` is the only cross-instance coordination point: it updates
    ``pending -> processing`` only while the row is still pending, so an
    empty result means another worker got there first.
    """

    def __init__(self, client=None, table: str = JOBS_TABLE):
        self._client = client
        self.table_name = table

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def _table(self):
        return self.client.table(self.table_name)

    def get(self, job_id: str) -> Job | None:
        try:
            resp = self._table().select("*").eq("id", job_id).limit(1).execute()
        except APIError as exc:
            # 22P02: job id is not a valid uuid, so no such job can exist
            if getattr(exc, "code", None) == "22P02":
                return None
            raise
        rows = resp.data or []
        return Job.from_row(rows[0]) if rows else None

    def oldest_pending(self, limit: int = 1) -> list[str]:
        resp = (
            self._table()
            .select("id")
            .eq("status", JobStatus.PENDING.value)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [str(row["id"]) for row in resp.data or []]

    def claim(self, job_id: str) -> Job | None:
        resp = (
            self._table()
            .update({"status": JobStatus.PROCESSING.value, "started_at": _now_iso()})
            .eq("id", job_id)
            .eq("status", JobStatus.PENDING.value)
            .execute()
        )
        rows = resp.data or []
        if not rows:
            logger.info("Job %s not claimed: missing or no longer pending", job_id)
            return None
        try:
            return Job.from_row(rows[0])
        except ValidationError as exc:
            # claimed but unusable; fail it so it does not sit in processing
            self.fail(job_id, f"Invalid job definition: {exc.error_count()} validation error(s)", 0)
            raise

    def complete(self, job_id: str, program_url: str, file_count: int, duration_ms: int) -> bool:
        return self._finish(job_id, JobStatus.COMPLETED, {
            "program_url": program_url,
            "file_count": file_count,
            "error_message": None,
            "processing_duration_ms": duration_ms,
        })

    def fail(self, job_id: str, error_message: str, duration_ms: int) -> bool:
        return self._finish(job_id, JobStatus.FAILED, {
            "error_message": error_message,
            "processing_duration_ms": duration_ms,
        })

    def _finish(self, job_id: str, status: JobStatus, fields: dict) -> bool:
        if not JobStatus.PROCESSING.can_transition(status):
            raise ValueError(f"Cannot finish a job as {status.value}")
        resp = (
            self._table()
            .update({"status": status.value, "completed_at": _now_iso(), **fields})
            .eq("id", job_id)
            .eq("status", JobStatus.PROCESSING.value)
            .execute()
        )
        if not resp.data:
            logger.error("Job %s was not processing; %s not recorded", job_id, status.value)
            return False
        return True

    def enqueue(
        self,
        world: str,
        lmid: str,
        segments: list,
        program_type: str = "kids",
        lang: str = "en",
    ) -> Job:
        """Insert a pending job. Segments may be models or raw dicts."""
        payload = [
            s.model_dump(by_alias=True) if isinstance(s, BaseModel) else s
            for s in segments
        ]
        row = {
            "status": JobStatus.PENDING.value,
            "created_at": _now_iso(),
            "program_type": program_type,
            "world": world,
            "lmid": str(lmid),
            "lang": lang,
            "segments": payload,
        }
        resp = self._table().insert(row).execute()
        job = Job.from_row(resp.data[0])
        logger.info("Enqueued job %s for %s/%s/%s (%s)", job.id, lang, world, lmid, program_type)
        return job
