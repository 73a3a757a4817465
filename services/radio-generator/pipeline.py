"""
Radio Generator — Pipeline

Pipeline:
1. Fetch every segment into the job's scratch directory (in parallel)
   - single:      download; missing system assets become silence
   - silence:     synthesized, no network
   - answers:     download each recording, concatenate in order
2. Concatenate all segments in their original order
3. Mix the job's first background, looped at 20%, under the whole program
4. Upload the MP3 and return its public URL

Entry point: generate_program(job, http=None, uploader=None) -> ProgramResult
"""

import concurrent.futures
import logging
import os
import tempfile
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

import httpx

from audio import (
    assembly_filters,
    concatenate,
    normalize_input,
    run_ffmpeg,
    write_silence,
)
from jobs import AnswersSegment, Job, SilenceSegment, SingleSegment, first_background_url
from storage import get_uploader

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

FETCH_WORKERS = int(os.environ.get("FETCH_WORKERS", "4"))
DOWNLOAD_TIMEOUT_S = float(os.environ.get("DOWNLOAD_TIMEOUT_S", "30"))
NORMALIZE_INPUTS = os.environ.get("NORMALIZE_INPUTS", "1").lower() not in ("0", "false", "no")
BACKGROUND_GAIN = float(os.environ.get("BACKGROUND_GAIN", "0.2"))
ASSEMBLY_TIMEOUT_S = float(os.environ.get("ASSEMBLY_TIMEOUT_S", "120"))

# Static, pre-produced assets live under these path fragments. Anything else
# is a user recording.
SYSTEM_ASSET_MARKERS = tuple(
    m.strip()
    for m in os.environ.get("SYSTEM_ASSET_MARKERS", "/audio/other/,-QID").split(",")
    if m.strip()
)

# Silence substituted for a missing system asset, by role.
_PLACEHOLDER_DEFAULTS = {
    "background": 30,
    "prompt": 5,
    "intro": 3,
    "outro": 3,
    "other": 3,
}
PLACEHOLDER_SECONDS = {
    role: float(os.environ.get(f"PLACEHOLDER_SECONDS_{role.upper()}", default))
    for role, default in _PLACEHOLDER_DEFAULTS.items()
}


class AssetFetchError(RuntimeError):
    """A user recording could not be downloaded."""


class EmptyProgramError(ValueError):
    pass


@dataclass
class ProcessedSegment:
    local_path: str
    kind: str  # "single" | "answers"
    original_index: int


@dataclass
class ProgramResult:
    program_url: str
    file_count: int
    segment_count: int


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def generate_program(
    job: Job,
    http: httpx.Client | None = None,
    uploader=None,
) -> ProgramResult:
    """Assemble the job's radio program and upload it.

    Any exception means the job failed; nothing is uploaded in that case.
    The scratch directory is removed on every exit.
    """
    uploader = uploader or get_uploader()
    owns_http = http is None
    if owns_http:
        http = httpx.Client(follow_redirects=True, timeout=DOWNLOAD_TIMEOUT_S)

    try:
        with tempfile.TemporaryDirectory(prefix=f"radio-{job.world}-{job.lmid}-") as tmp_dir:
            output_path = os.path.join(tmp_dir, job.program_filename)
            segment_count = build_program(job.segments, output_path, tmp_dir, http)

            with open(output_path, "rb") as f:
                data = f.read()
            logger.info("Program ready: %d bytes, %d segments", len(data), segment_count)

            program_url = uploader.upload(data, job.storage_path)
    finally:
        if owns_http:
            http.close()

    return ProgramResult(
        program_url=program_url,
        file_count=job.recording_count(),
        segment_count=segment_count,
    )


def build_program(segments: list, output_path: str, work_dir: str, http: httpx.Client) -> int:
    """Fetch, concatenate and mix ``segments`` into ``output_path``.

    Returns the number of segments in the program.
    """
    playable = []
    for segment in segments:
        if isinstance(segment, AnswersSegment) and not segment.answer_urls:
            logger.warning("Skipping answers block %s: no answers", segment.question_id)
            continue
        playable.append(segment)
    if not playable:
        raise EmptyProgramError("No audio segments to assemble")

    logger.info("Step 1/3: Fetching %d segments...", len(playable))
    processed = fetch_segments(playable, work_dir, http)

    background_path = None
    background_url = first_background_url(segments)
    if background_url:
        logger.info("Step 2/3: Fetching background: %s", background_url)
        background_path = download_asset(
            http,
            background_url,
            os.path.join(work_dir, "main-background" + _extension(background_url)),
            role="background",
            system_asset=True,
        )
    else:
        logger.info("Step 2/3: No background for this program")

    logger.info("Step 3/3: Assembling %d segments...", len(processed))
    assemble_program(processed, background_path, output_path)
    return len(processed)


# ---------------------------------------------------------------------------
# Step 1: Fetch segments
# ---------------------------------------------------------------------------

def fetch_segments(segments: list, work_dir: str, http: httpx.Client) -> list[ProcessedSegment]:
    """Resolve every segment to a local file, ordered by original index."""
    with concurrent.futures.ThreadPoolExecutor(max_workers=FETCH_WORKERS) as pool:
        futures = [
            pool.submit(fetch_segment, http, index, segment, work_dir)
            for index, segment in enumerate(segments)
        ]
        processed = [future.result() for future in futures]
    processed.sort(key=lambda p: p.original_index)
    return processed


def fetch_segment(http: httpx.Client, index: int, segment, work_dir: str) -> ProcessedSegment:
    prefix = os.path.join(work_dir, f"segment-{index:03d}")

    if isinstance(segment, SingleSegment):
        path = download_asset(
            http,
            segment.url,
            prefix + "-single" + _extension(segment.url),
            role=asset_role(segment.url),
            system_asset=is_system_asset(segment.url),
        )
        return ProcessedSegment(path, "single", index)

    if isinstance(segment, SilenceSegment):
        path = write_silence(f"{prefix}-{segment.type}.mp3", segment.duration)
        return ProcessedSegment(path, "single", index)

    if isinstance(segment, AnswersSegment):
        logger.info(
            "Segment %d: %d answers for question %s",
            index, len(segment.answer_urls), segment.question_id,
        )
        answer_paths = [
            download_asset(
                http,
                url,
                f"{prefix}-answer-{j:02d}{_extension(url)}",
                system_asset=False,
            )
            for j, url in enumerate(segment.answer_urls)
        ]
        path = concatenate_answers(answer_paths, prefix + "-answers.mp3")
        return ProcessedSegment(path, "answers", index)

    raise TypeError(f"Unsupported segment: {type(segment).__name__}")


def is_system_asset(url: str) -> bool:
    lowered = url.lower()
    return any(marker.lower() in lowered for marker in SYSTEM_ASSET_MARKERS)


def asset_role(url: str) -> str:
    name = urlsplit(url).path.rsplit("/", 1)[-1].lower()
    if "-qid" in name:
        return "prompt"
    if "intro" in name:
        return "intro"
    if "outro" in name:
        return "outro"
    return "other"


def _extension(url: str) -> str:
    ext = os.path.splitext(unquote(urlsplit(url).path))[1].lower()
    return ext if ext in (".mp3", ".webm", ".wav", ".ogg", ".m4a") else ".mp3"


def download_asset(
    http: httpx.Client,
    url: str,
    dest: str,
    role: str = "other",
    system_asset: bool = False,
) -> str:
    """Download ``url`` to ``dest`` and return the local path to use.

    A non-2xx response for a system asset yields placeholder silence of the
    role's duration instead; for a user recording it raises AssetFetchError.
    """
    try:
        with http.stream("GET", url) as resp:
            if resp.is_success:
                with open(dest, "wb") as f:
                    for chunk in resp.iter_bytes():
                        f.write(chunk)
                status = None
            else:
                status = resp.status_code
    except httpx.HTTPError as exc:
        raise AssetFetchError(f"Failed to download {url}: {exc}") from exc

    if status is not None:
        if not system_asset:
            raise AssetFetchError(f"Failed to download {url}: {status}")
        seconds = PLACEHOLDER_SECONDS.get(role, PLACEHOLDER_SECONDS["other"])
        logger.warning(
            "System file missing (%d): %s, substituting %.0fs of silence (%s)",
            status, url, seconds, role,
        )
        return write_silence(os.path.splitext(dest)[0] + ".mp3", seconds)

    logger.info("Downloaded %s (%d bytes)", os.path.basename(dest), os.path.getsize(dest))
    if NORMALIZE_INPUTS:
        return normalize_input(dest)
    return dest


# ---------------------------------------------------------------------------
# Step 2: Concatenate answers
# ---------------------------------------------------------------------------

def concatenate_answers(paths: list[str], output_path: str) -> str:
    """Join one question's answers in order. No background is applied here."""
    if not paths:
        raise ValueError("No answers to concatenate")
    concatenate(paths, output_path)
    logger.info("Concatenated %d answers into %s", len(paths), os.path.basename(output_path))
    return output_path


# ---------------------------------------------------------------------------
# Step 3: Final assembly
# ---------------------------------------------------------------------------

def assemble_program(
    processed: list[ProcessedSegment],
    background_path: str | None,
    output_path: str,
) -> str:
    """Concatenate ``processed`` by original index and mix the background under it."""
    if not processed:
        raise EmptyProgramError("No audio segments to assemble")

    ordered = sorted(processed, key=lambda p: p.original_index)
    inputs = [p.local_path for p in ordered]
    if background_path:
        inputs.append(background_path)

    filters = assembly_filters(len(ordered), background_path is not None, BACKGROUND_GAIN)
    run_ffmpeg(inputs, filters, output_path, timeout_s=ASSEMBLY_TIMEOUT_S)
    logger.info(
        "Assembled %d segments%s: %s",
        len(ordered),
        " with background" if background_path else "",
        os.path.basename(output_path),
    )
    return output_path
