"""WAV file I/O helpers for 16-bit PCM audio.

Voice synthesis returns raw little-endian 16-bit PCM; these helpers wrap
it in a WAV container so ffmpeg can read it, and read it back in tests.
"""

import wave

import numpy as np

SAMPLE_WIDTH = 2  # 16-bit = 2 bytes
SYNTHESIS_SAMPLE_RATE = 24000
NUM_CHANNELS = 1


def write_pcm16_wav(
    output_path: str,
    pcm: bytes,
    sample_rate: int = SYNTHESIS_SAMPLE_RATE,
    channels: int = NUM_CHANNELS,
) -> None:
    """Write raw 16-bit little-endian PCM bytes to a WAV file.

    Args:
        output_path: Path for the output WAV file.
        pcm: Interleaved int16 sample bytes.
        sample_rate: Sample rate in Hz (default 24000).
        channels: Channel count (default 1).
    """
    with wave.open(output_path, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)


def read_wav_samples(wav_path: str) -> tuple[np.ndarray, int]:
    """Read all samples from a 16-bit mono WAV file.

    Returns:
        Tuple of (int16 samples, sample rate).

    Raises:
        ValueError: If the WAV file cannot be read.
    """
    try:
        with wave.open(wav_path, "rb") as wf:
            rate = wf.getframerate()
            raw_data = wf.readframes(wf.getnframes())
    except (OSError, wave.Error) as exc:
        raise ValueError(f"Failed to read WAV file: {wav_path}") from exc
    return np.frombuffer(raw_data, dtype="<i2"), rate


def wav_duration(wav_path: str) -> float:
    """Read duration in seconds from a WAV file header."""
    with wave.open(wav_path, "rb") as wf:
        return wf.getnframes() / wf.getframerate()
