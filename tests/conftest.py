from __future__ import annotations

import copy
import shutil
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from jobs import JobStore

requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg not available",
)


class _Query:
    """The slice of the postgrest query builder that JobStore uses."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload: dict | None = None
        self.filters: list[tuple[str, object]] = []
        self.order_by: str | None = None
        self.limit_n: int | None = None

    def select(self, columns: str = "*"):
        self.op = "select"
        self.columns = columns
        return self

    def update(self, payload: dict):
        self.op = "update"
        self.payload = payload
        return self

    def insert(self, payload: dict):
        self.op = "insert"
        self.payload = payload
        return self

    def eq(self, column: str, value):
        self.filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False):
        self.order_by = column
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def _matches(self, row: dict) -> bool:
        return all(str(row.get(col)) == str(val) for col, val in self.filters)

    def execute(self):
        with self.db.lock:
            self.db.calls.append((self.op, self.table, list(self.filters), self.payload))
            if self.db.error is not None:
                raise self.db.error
            rows = self.db.tables.setdefault(self.table, [])

            if self.op == "insert":
                row = {"id": str(uuid.uuid4()), **copy.deepcopy(self.payload)}
                rows.append(row)
                return SimpleNamespace(data=[copy.deepcopy(row)])

            matched = [r for r in rows if self._matches(r)]
            if self.order_by:
                matched.sort(key=lambda r: str(r.get(self.order_by) or ""))
            if self.limit_n is not None:
                matched = matched[: self.limit_n]

            if self.op == "update":
                for r in matched:
                    r.update(copy.deepcopy(self.payload))
                return SimpleNamespace(data=[copy.deepcopy(r) for r in matched])

            if self.columns == "*":
                return SimpleNamespace(data=[copy.deepcopy(r) for r in matched])
            cols = [c.strip() for c in self.columns.split(",")]
            return SimpleNamespace(data=[{c: r.get(c) for c in cols} for r in matched])


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.error: Exception | None = None
        self.lock = threading.Lock()

    def table(self, name: str) -> _Query:
        return _Query(self, name)

    def rows(self, table: str = "audio_generation_jobs") -> list[dict]:
        return self.tables.setdefault(table, [])


@pytest.fixture()
def supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture()
def store(supabase: FakeSupabase) -> JobStore:
    return JobStore(client=supabase, table="audio_generation_jobs")


_BASE_TIME = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

INTRO = "https://cdn.example.com/audio/other/intro.webm"
OUTRO = "https://cdn.example.com/audio/other/outro.webm"
BACKGROUND = "https://cdn.example.com/audio/other/monkeys.webm"
PROMPT = "https://cdn.example.com/audio/spookyland/spookyland-QID9.webm"


def recording_url(question: int, tm: int, world: str = "spookyland", lmid: str = "38") -> str:
    return (
        f"https://cdn.example.com/en/{lmid}/{world}/"
        f"kids-world_{world}-lmid_{lmid}-question_{question}-tm_{tm}.webm"
    )


@pytest.fixture()
def add_job(supabase: FakeSupabase):
    """Insert a job row directly; returns its id."""
    counter = {"n": 0}

    def _add(status: str = "pending", segments: list | None = None, **fields) -> str:
        counter["n"] += 1
        row = {
            "id": fields.pop("id", str(uuid.uuid4())),
            "status": status,
            "created_at": (_BASE_TIME + timedelta(minutes=counter["n"])).isoformat(),
            "program_type": "kids",
            "world": "spookyland",
            "lmid": "38",
            "lang": "en",
            "segments": segments if segments is not None else [{"type": "single", "url": INTRO}],
            **fields,
        }
        supabase.rows().append(row)
        return row["id"]

    return _add
