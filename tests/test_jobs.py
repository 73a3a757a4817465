from __future__ import annotations

import threading

import pytest
from pydantic import ValidationError

from conftest import BACKGROUND, INTRO, recording_url
from jobs import (
    AnswersSegment,
    Job,
    JobStatus,
    RecordingName,
    SilenceSegment,
    SingleSegment,
)


def _job(**fields) -> Job:
    row = {"id": "job-1", "status": "pending", "world": "spookyland", "lmid": 38, **fields}
    return Job.from_row(row)


def test_segments_parse_into_typed_union() -> None:
    job = _job(segments=[
        {"type": "single", "url": INTRO},
        {"type": "recording", "url": recording_url(1, 100)},
        {"type": "question_intro", "duration": 1.5},
        {"type": "pause"},
        {
            "type": "combine_with_background",
            "answerUrls": [recording_url(2, 1), recording_url(2, 2)],
            "backgroundUrl": BACKGROUND,
            "questionId": 2,
        },
    ])

    kinds = [type(s) for s in job.segments]
    assert kinds == [SingleSegment, SingleSegment, SilenceSegment, SilenceSegment, AnswersSegment]
    assert job.segments[2].duration == 1.5
    assert job.segments[3].duration == 2.0
    answers = job.segments[4]
    assert answers.answer_urls == [recording_url(2, 1), recording_url(2, 2)]
    assert answers.question_id == "2"
    assert job.lmid == "38"


def test_unknown_segment_type_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _job(segments=[{"type": "jingle", "url": INTRO}])


def test_first_background_wins() -> None:
    job = _job(segments=[
        {"type": "combine_with_background", "answerUrls": [recording_url(1, 1)]},
        {"type": "combine_with_background", "answerUrls": [recording_url(2, 1)], "backgroundUrl": BACKGROUND},
        {"type": "combine_with_background", "answerUrls": [recording_url(3, 1)], "backgroundUrl": "https://x/other.mp3"},
    ])
    assert job.background_url == BACKGROUND


def test_storage_path_and_filename() -> None:
    job = _job(program_type="parent", lang="pl")
    assert job.program_filename == "radio-program-parent-spookyland-38.mp3"
    assert job.storage_path == "pl/38/spookyland/radio-program-parent-spookyland-38.mp3"


def test_recording_name_parses_kids_and_parent() -> None:
    kids = RecordingName.parse(recording_url(4, 1736935200000) + "?v=1")
    assert kids is not None
    assert (kids.program_type, kids.world, kids.lmid, kids.question_id) == ("kids", "spookyland", "38", "4")
    assert kids.timestamp == 1736935200000
    assert kids.member_id is None

    parent = RecordingName.parse(
        "https://cdn/en/38/shopping-spree/parent_mem123-world_shopping-spree-lmid_38-question_2-tm_5.mp3"
    )
    assert parent is not None
    assert parent.member_id == "mem123"
    assert parent.world == "shopping-spree"


@pytest.mark.parametrize("name", [
    "intro.webm",
    "kids-world_spookyland-lmid_38-question_1-tm_5.wav",
    "parent-world_spookyland-lmid_38-question_1-tm_5.webm",
    "kids_x-world_spookyland-lmid_38-question_1-tm_5.webm",
])
def test_recording_name_rejects_other_files(name: str) -> None:
    assert RecordingName.parse(f"https://cdn/en/38/spookyland/{name}") is None


def test_recording_count_counts_distinct_matching_recordings() -> None:
    job = _job(segments=[
        {"type": "single", "url": recording_url(1, 1)},
        {
            "type": "combine_with_background",
            "answerUrls": [recording_url(2, 1), recording_url(2, 2), recording_url(2, 1)],
        },
        {
            "type": "combine_with_background",
            "answerUrls": [recording_url(3, 1), recording_url(3, 1, lmid="99"), INTRO],
        },
    ])
    assert job.recording_count() == 3


def test_status_transitions_only_move_forward() -> None:
    assert JobStatus.PENDING.can_transition(JobStatus.PROCESSING)
    assert JobStatus.PROCESSING.can_transition(JobStatus.COMPLETED)
    assert JobStatus.PROCESSING.can_transition(JobStatus.FAILED)
    assert not JobStatus.PROCESSING.can_transition(JobStatus.PENDING)
    for terminal in (JobStatus.COMPLETED, JobStatus.FAILED):
        assert terminal.is_terminal
        assert not any(terminal.can_transition(s) for s in JobStatus)
    assert not JobStatus.PENDING.is_terminal


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def test_get_returns_none_for_unknown_job(store) -> None:
    assert store.get("missing") is None


def test_claim_moves_pending_to_processing(store, supabase, add_job) -> None:
    job_id = add_job()

    job = store.claim(job_id)

    assert job is not None
    assert job.status == JobStatus.PROCESSING
    assert job.started_at is not None
    assert supabase.rows()[0]["status"] == "processing"


def test_claim_is_a_noop_when_not_pending(store, add_job) -> None:
    job_id = add_job(status="completed", program_url="https://cdn/x.mp3")
    assert store.claim(job_id) is None
    assert store.get(job_id).status == JobStatus.COMPLETED


def test_concurrent_claims_yield_exactly_one_winner(store, add_job) -> None:
    job_id = add_job()
    barrier = threading.Barrier(8)
    results = []

    def claim():
        barrier.wait()
        results.append(store.claim(job_id))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1


def test_oldest_pending_is_fifo(store, add_job) -> None:
    first = add_job()
    add_job(status="processing")
    second = add_job()
    assert store.oldest_pending(limit=5) == [first, second]


def test_finish_requires_processing(store, add_job) -> None:
    job_id = add_job()
    assert not store.complete(job_id, "https://cdn/x.mp3", 2, 10)
    assert store.get(job_id).program_url is None

    store.claim(job_id)
    assert store.fail(job_id, "boom", 10)
    assert not store.complete(job_id, "https://cdn/x.mp3", 2, 10)

    job = store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.program_url is None
    assert job.error_message == "boom"
    assert job.completed_at is not None


def test_claim_of_invalid_job_marks_it_failed(store, add_job) -> None:
    job_id = add_job(segments=[{"type": "jingle"}])

    with pytest.raises(ValidationError):
        store.claim(job_id)

    row = store.client.rows()[0]
    assert row["status"] == "failed"
    assert row["error_message"].startswith("Invalid job definition")


def test_enqueue_creates_pending_job(store) -> None:
    job = store.enqueue(
        "spookyland",
        38,
        [
            SingleSegment(url=INTRO),
            AnswersSegment(answer_urls=[recording_url(1, 1)], background_url=BACKGROUND, question_id="1"),
        ],
    )

    assert job.status == JobStatus.PENDING
    assert job.lmid == "38"
    stored = store.client.rows()[0]
    assert stored["segments"][1]["answerUrls"] == [recording_url(1, 1)]
    assert stored["segments"][1]["backgroundUrl"] == BACKGROUND
    assert store.get(job.id).segments[1].background_url == BACKGROUND


def test_finish_only_accepts_terminal_statuses(store, add_job) -> None:
    job_id = add_job()
    store.claim(job_id)

    with pytest.raises(ValueError):
        store._finish(job_id, JobStatus.PENDING, {})

    assert store.get(job_id).status == JobStatus.PROCESSING
