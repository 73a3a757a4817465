"""
Radio Generator — Audio primitives

ffmpeg wrapper, filter graphs and silence synthesis. Everything here works on
local files; network access lives in pipeline.py.

Output format is fixed: MP3, 44.1 kHz, stereo, 128 kbps.
"""

import logging
import os
import shutil
import subprocess

from pydub import AudioSegment

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
FFMPEG_TIMEOUT_S = float(os.environ.get("FFMPEG_TIMEOUT_S", "20"))

SAMPLE_RATE = 44100
CHANNELS = 2
BITRATE = "128k"

_OUTPUT_ARGS = [
    "-ar", str(SAMPLE_RATE),
    "-ac", str(CHANNELS),
    "-b:a", BITRATE,
    "-c:a", "libmp3lame",
    "-f", "mp3",
]

MIN_SILENCE_S = 1.0


class CodecError(RuntimeError):
    """ffmpeg exited non-zero, timed out, or could not be started."""


def _tail(text: str, n: int = 2000) -> str:
    return text if len(text) <= n else text[-n:]


def run_ffmpeg(
    inputs: list[str],
    filter_graph: list[str] | None,
    output: str,
    output_map: str | None = "[outa]",
    timeout_s: float | None = None,
) -> str:
    """Run ffmpeg over ``inputs`` and write ``output``.

    The child process is killed when ``timeout_s`` expires. Returns ``output``.
    """
    argv = [FFMPEG_BIN, "-hide_banner", "-y"]
    for path in inputs:
        argv += ["-i", path]
    if filter_graph:
        argv += ["-filter_complex", ";".join(filter_graph)]
        if output_map:
            argv += ["-map", output_map]
    argv += _OUTPUT_ARGS + [output]

    timeout = FFMPEG_TIMEOUT_S if timeout_s is None else timeout_s
    try:
        subprocess.run(argv, check=True, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        _discard(output)
        raise CodecError(f"ffmpeg timed out after {timeout:g}s writing {os.path.basename(output)}") from exc
    except subprocess.CalledProcessError as exc:
        _discard(output)
        raise CodecError(
            f"ffmpeg failed (exit={exc.returncode}) writing {os.path.basename(output)}: "
            f"{_tail(exc.stderr or '')}"
        ) from exc
    except OSError as exc:
        raise CodecError(f"ffmpeg could not be started ({FFMPEG_BIN}): {exc}") from exc
    return output


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def ffmpeg_available() -> bool:
    return shutil.which(FFMPEG_BIN) is not None


# ---------------------------------------------------------------------------
# Filter graphs
# ---------------------------------------------------------------------------

_AFORMAT = f"aformat=sample_fmts=fltp:sample_rates={SAMPLE_RATE}:channel_layouts=stereo"


def concat_filter(count: int, label: str = "outa") -> str:
    """Concatenate inputs ``0..count-1`` in index order into ``[label]``.

    Each input is converted to a common format first; concat needs identical
    stream parameters and inputs arrive as webm/opus, mp3, wav...
    """
    if count < 1:
        raise ValueError("concat needs at least one input")
    chains = [f"[{i}:a]{_AFORMAT}[{label}_{i}]" for i in range(count)]
    streams = "".join(f"[{label}_{i}]" for i in range(count))
    chains.append(f"{streams}concat=n={count}:v=0:a=1[{label}]")
    return ";".join(chains)


def assembly_filters(segment_count: int, with_background: bool, background_gain: float) -> list[str]:
    """Filter graph for the final program.

    The background input, when present, is the last input. It is looped
    forever, attenuated and mixed with ``duration=first`` so the program
    length is always the length of the concatenated segments.
    """
    filters = [concat_filter(segment_count, label="main_audio")]
    if with_background:
        bg = segment_count
        filters.append(
            f"[{bg}:a]{_AFORMAT},aloop=loop=-1:size=2e+09,volume={background_gain:g}[background_loop]"
        )
        filters.append(
            "[main_audio][background_loop]"
            "amix=inputs=2:duration=first:dropout_transition=0:normalize=0[outa]"
        )
    else:
        filters.append("[main_audio]acopy[outa]")
    return filters


# ---------------------------------------------------------------------------
# Silence
# ---------------------------------------------------------------------------

def make_silence(seconds: float) -> AudioSegment:
    """Stereo 44.1 kHz silence, at least one second long."""
    seconds = max(MIN_SILENCE_S, float(seconds))
    silence = AudioSegment.silent(duration=int(round(seconds * 1000)), frame_rate=SAMPLE_RATE)
    return silence.set_channels(CHANNELS)


def write_silence(path: str, seconds: float, timeout_s: float | None = None) -> str:
    """Write silence to ``path`` as MP3.

    pydub writes the WAV itself; only the MP3 encode runs ffmpeg, under the
    usual codec timeout.
    """
    segment = make_silence(seconds)
    wav_path = os.path.splitext(path)[0] + ".silence.wav"
    segment.export(wav_path, format="wav")
    try:
        run_ffmpeg([wav_path], None, path, output_map=None, timeout_s=timeout_s)
    finally:
        _discard(wav_path)
    logger.info("Synthesized %.1fs of silence: %s", len(segment) / 1000, os.path.basename(path))
    return path


# ---------------------------------------------------------------------------
# Concatenation / normalization
# ---------------------------------------------------------------------------

def concatenate(paths: list[str], output: str, timeout_s: float | None = None) -> str:
    if not paths:
        raise ValueError("Nothing to concatenate")
    return run_ffmpeg(paths, [concat_filter(len(paths))], output, timeout_s=timeout_s)


def normalize_input(path: str, timeout_s: float | None = None) -> str:
    """Re-encode a downloaded clip to the output format.

    Returns the path of the normalized copy, or ``path`` unchanged when the
    clip is already MP3 or ffmpeg fails.
    """
    if path.lower().endswith(".mp3"):
        return path
    target = os.path.splitext(path)[0] + ".norm.mp3"
    try:
        return run_ffmpeg([path], None, target, output_map=None, timeout_s=timeout_s)
    except CodecError as exc:
        logger.warning("Normalization skipped for %s: %s", os.path.basename(path), exc)
        return path
