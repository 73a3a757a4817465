#!/usr/bin/env python3
"""
Little Microphones — assemble a radio program locally

Runs the assembly pipeline for a job definition file without going through
the queue. Useful for checking a segment list before it is enqueued.

Job file (JSON):
{
  "world": "spookyland",
  "lmid": "38",
  "lang": "en",
  "program_type": "kids",
  "segments": [{"type": "single", "url": "https://..."}, ...]
}

Requires the service modules to be installed (pip install -e .).
"""

import argparse
import json
import logging
import os
import sys
import tempfile

import httpx

from jobs import Job, JobStatus
from pipeline import DOWNLOAD_TIMEOUT_S, EmptyProgramError, build_program, generate_program

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def load_job(path: str) -> Job:
    with open(path, "r") as f:
        definition = json.load(f)
    definition.setdefault("id", "local")
    definition.setdefault("status", JobStatus.PENDING.value)
    return Job.from_row(definition)


def main():
    parser = argparse.ArgumentParser(description="Assemble a Little Microphones radio program")
    parser.add_argument("--job", required=True, help="Path to job definition JSON")
    parser.add_argument("--output", default="radio-program.mp3", help="Output MP3 path")
    parser.add_argument("--upload", action="store_true", help="Upload to storage instead of writing --output")
    args = parser.parse_args()

    job = load_job(args.job)
    logger.info(
        "Job: %s/%s/%s (%s), %d segments",
        job.lang, job.world, job.lmid, job.program_type, len(job.segments),
    )

    try:
        if args.upload:
            result = generate_program(job)
            print(json.dumps({
                "program_url": result.program_url,
                "file_count": result.file_count,
                "segment_count": result.segment_count,
            }))
            return

        with httpx.Client(follow_redirects=True, timeout=DOWNLOAD_TIMEOUT_S) as http:
            with tempfile.TemporaryDirectory(prefix="radio-local-") as tmp_dir:
                output_path = os.path.abspath(args.output)
                segment_count = build_program(job.segments, output_path, tmp_dir, http)
    except EmptyProgramError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    logger.info("Wrote %s (%d segments, %d recordings)", output_path, segment_count, job.recording_count())


if __name__ == "__main__":
    main()
