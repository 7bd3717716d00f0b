"""ffmpeg/ffprobe helpers: duration probing, PCM decoding, segment extraction.

Extracted segments are 16kHz mono 16-bit PCM WAV, the lossless
intermediate sent to the transcription model.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from dataclasses import dataclass

import numpy as np

from session_processor.utils.errors import PreconditionError, TranscodeError

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1

FFPROBE_TIMEOUT_SECONDS = 10
DECODE_TIMEOUT_SECONDS = 1800
EXTRACT_TIMEOUT_SECONDS = 600


@dataclass
class DecodedAudio:
    """Linear PCM decoded from an input file.

    ``samples`` has shape (frames, channels) and float32 values in [-1, 1].
    """

    samples: np.ndarray
    sample_rate: int
    channels: int

    @property
    def duration_seconds(self) -> float:
        return self.samples.shape[0] / self.sample_rate


def check_ffmpeg_available() -> str:
    """Verify ffmpeg is available on the system.

    Returns:
        Path to the ffmpeg binary.

    Raises:
        TranscodeError: If ffmpeg is not found.
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise TranscodeError("ffmpeg binary not found on PATH")
    return ffmpeg_path


def check_ffprobe_available() -> str:
    ffprobe_path = shutil.which("ffprobe")
    if ffprobe_path is None:
        raise TranscodeError("ffprobe binary not found on PATH")
    return ffprobe_path


def run_tool(cmd: list[str], input_path: str, timeout: int, what: str) -> bytes:
    """Run an ffmpeg/ffprobe command and return its stdout.

    Raises:
        TranscodeError: On a non-zero exit or timeout.
    """
    try:
        completed = subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else ""
        raise TranscodeError(
            f"{what} failed: {stderr or 'unknown error'}",
            input_path=input_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise TranscodeError(
            f"{what} timed out after {timeout}s",
            input_path=input_path,
        ) from exc
    return completed.stdout


def probe(input_path: str) -> dict:
    """Return ffprobe's format and stream metadata for a file.

    Raises:
        TranscodeError: If the file does not exist or ffprobe fails.
    """
    if not os.path.exists(input_path):
        raise TranscodeError(
            f"Input file does not exist: {input_path}", input_path=input_path
        )
    cmd = [
        check_ffprobe_available(),
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        input_path,
    ]
    output = run_tool(cmd, input_path, FFPROBE_TIMEOUT_SECONDS, "ffprobe")
    try:
        return json.loads(output or b"{}")
    except json.JSONDecodeError as exc:
        raise TranscodeError(
            f"ffprobe returned invalid JSON: {exc}", input_path=input_path
        ) from exc


def get_audio_duration(input_path: str) -> float:
    """Read the duration of a recording from its container metadata.

    Raises:
        PreconditionError: If the container carries no usable duration.
        TranscodeError: If ffprobe fails.
    """
    metadata = probe(input_path)
    raw = metadata.get("format", {}).get("duration")
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        duration = 0.0
    if not duration or duration <= 0:
        raise PreconditionError(
            f"Could not determine audio duration for {input_path}"
        )
    return duration


def decode_audio(input_path: str) -> DecodedAudio:
    """Decode an entire file into float32 PCM at its native rate and layout.

    Raises:
        TranscodeError: If the file has no audio stream or decoding fails.
    """
    metadata = probe(input_path)
    stream = next(
        (s for s in metadata.get("streams", []) if s.get("codec_type") == "audio"),
        None,
    )
    if stream is None:
        raise TranscodeError(
            f"No audio stream found in {input_path}", input_path=input_path
        )
    sample_rate = int(stream.get("sample_rate") or 0)
    channels = int(stream.get("channels") or 0)
    if sample_rate <= 0 or channels <= 0:
        raise TranscodeError(
            f"Unsupported audio stream layout in {input_path}",
            input_path=input_path,
        )

    cmd = [
        check_ffmpeg_available(),
        "-v", "error",
        "-i", input_path,
        "-map", "0:a:0",
        "-f", "f32le",
        "-acodec", "pcm_f32le",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "pipe:1",
    ]
    raw = run_tool(cmd, input_path, DECODE_TIMEOUT_SECONDS, "ffmpeg decode")
    samples = np.frombuffer(raw, dtype="<f4")
    usable = len(samples) - len(samples) % channels
    return DecodedAudio(
        samples=samples[:usable].reshape(-1, channels),
        sample_rate=sample_rate,
        channels=channels,
    )


def extract_segment(
    input_path: str,
    output_path: str,
    start_seconds: float,
    duration_seconds: float,
) -> str:
    """Cut ``[start, start + duration)`` into a 16kHz mono PCM WAV file.

    Returns:
        The output path.

    Raises:
        TranscodeError: If ffmpeg fails or produces no file.
    """
    cmd = [
        check_ffmpeg_available(),
        "-y",
        "-v", "error",
        "-ss", f"{start_seconds:.3f}",
        "-t", f"{duration_seconds:.3f}",
        "-i", input_path,
        "-ac", str(TARGET_CHANNELS),
        "-ar", str(TARGET_SAMPLE_RATE),
        "-c:a", "pcm_s16le",
        "-f", "wav",
        output_path,
    ]
    run_tool(cmd, input_path, EXTRACT_TIMEOUT_SECONDS, "ffmpeg segment extraction")
    if not os.path.exists(output_path):
        raise TranscodeError(
            f"ffmpeg produced no output file: {output_path}",
            input_path=input_path,
        )
    return output_path
