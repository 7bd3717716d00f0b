"""Size-reducing re-encode of a recording before upload.

Decodes the input, resamples and downmixes it in one offline pass,
converts to 16-bit PCM and streams it through a low-bitrate encoder in
1152-sample frames. The result is never larger than the input: when the
encoded output is not smaller, the original bytes are returned with
``skipped=True``.

Progress checkpoints: 10 after decode, 25 after resampling, 25..95 while
encoding (every 200 frames), 98 after flush, 100 when done.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from session_processor.audio.encoder import FRAME_SAMPLES, Mp3StreamEncoder, StreamEncoder
from session_processor.audio.transcode import DecodedAudio, decode_audio
from session_processor.progress import report

logger = logging.getLogger(__name__)

DEFAULT_BITRATE = 32000
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1

PROGRESS_FRAME_INTERVAL = 200
ENCODE_PROGRESS_START = 25
ENCODE_PROGRESS_SPAN = 70

EncoderFactory = Callable[[int, int, int], StreamEncoder]


@dataclass
class CompressionResult:
    """Output of AudioCompressor.compress()."""

    data: bytes
    original_size: int
    compressed_size: int
    compression_ratio: float
    duration_seconds: float
    mime_type: str
    skipped: bool


def resample(
    samples: np.ndarray, source_rate: int, target_rate: int, channels: int
) -> np.ndarray:
    """Resample and remix PCM to ``ceil(duration * target_rate)`` frames.

    Args:
        samples: Float samples shaped (frames, source_channels).
        source_rate: Input sample rate in Hz.
        target_rate: Output sample rate in Hz.
        channels: Output channel count (1 or 2).

    Returns:
        Float32 array shaped (frames, channels).
    """
    if samples.ndim == 1:
        samples = samples[:, np.newaxis]
    source_frames, source_channels = samples.shape

    if channels == source_channels:
        mixed = samples
    elif channels == 1:
        mixed = samples.mean(axis=1, keepdims=True)
    elif source_channels == 1:
        mixed = np.repeat(samples, channels, axis=1)
    else:
        raise ValueError(
            f"Cannot remix {source_channels} channels to {channels} channels"
        )

    duration = source_frames / source_rate
    target_frames = math.ceil(duration * target_rate)
    if source_frames == 0 or target_frames == 0:
        return np.zeros((0, channels), dtype=np.float32)

    positions = np.arange(target_frames, dtype=np.float64) * (
        source_rate / target_rate
    )
    source_index = np.arange(source_frames, dtype=np.float64)
    out = np.empty((target_frames, channels), dtype=np.float32)
    for ch in range(channels):
        out[:, ch] = np.interp(positions, source_index, mixed[:, ch])
    return out


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples to int16 using asymmetric full-scale mapping."""
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype(np.int16)


class AudioCompressor:
    """Re-encodes recordings to a small mono low-bitrate format.

    Args:
        decoder: Callable decoding a path into DecodedAudio.
        encoder_factory: Callable(sample_rate, channels, bitrate) returning
            a fresh StreamEncoder.
    """

    def __init__(
        self,
        decoder: Callable[[str], DecodedAudio] = decode_audio,
        encoder_factory: EncoderFactory = Mp3StreamEncoder,
    ) -> None:
        self._decoder = decoder
        self._encoder_factory = encoder_factory

    async def compress(
        self,
        input_path: str,
        on_progress: Callable[[int], Any] | None = None,
        target_bitrate: int = DEFAULT_BITRATE,
        target_sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
    ) -> CompressionResult:
        """Compress a recording.

        Args:
            input_path: Path of the input audio file.
            on_progress: Optional sync or async callback receiving 0-100.
            target_bitrate: Encoder bitrate in bits per second.
            target_sample_rate: Output sample rate in Hz.
            channels: Output channel count.

        Returns:
            CompressionResult. When ``skipped`` is True, ``data`` is the
            unmodified input.

        Raises:
            TranscodeError: If the input cannot be decoded.
            CompressionError: If the encoder fails.
        """
        original_size = os.path.getsize(input_path)

        decoded = await asyncio.to_thread(self._decoder, input_path)
        await report(on_progress, 10)

        resampled = await asyncio.to_thread(
            resample,
            decoded.samples,
            decoded.sample_rate,
            target_sample_rate,
            channels,
        )
        duration = decoded.duration_seconds
        await report(on_progress, 25)

        pcm = (await asyncio.to_thread(float_to_pcm16, resampled)).reshape(-1)
        frame_size = FRAME_SAMPLES * channels
        total_frames = math.ceil(len(pcm) / frame_size)

        encoder = self._encoder_factory(target_sample_rate, channels, target_bitrate)
        encoded = bytearray()
        try:
            for i in range(total_frames):
                frame = pcm[i * frame_size : (i + 1) * frame_size]
                encoded.extend(await encoder.encode_frame(frame))
                if i % PROGRESS_FRAME_INTERVAL == 0:
                    await report(
                        on_progress,
                        round(
                            ENCODE_PROGRESS_START
                            + i / total_frames * ENCODE_PROGRESS_SPAN
                        ),
                    )
                    await asyncio.sleep(0)
            encoded.extend(await encoder.flush())
        except BaseException:
            await encoder.abort()
            raise
        await report(on_progress, 98)

        if len(encoded) >= original_size:
            logger.info(
                "Compression skipped: %d encoded bytes >= %d original bytes",
                len(encoded),
                original_size,
            )
            data = await asyncio.to_thread(Path(input_path).read_bytes)
            await report(on_progress, 100)
            return CompressionResult(
                data=data,
                original_size=original_size,
                compressed_size=original_size,
                compression_ratio=1.0,
                duration_seconds=duration,
                mime_type=_guess_mime_type(input_path),
                skipped=True,
            )

        compressed_size = len(encoded)
        logger.info(
            "Compressed %d bytes to %d bytes (%.1fx)",
            original_size,
            compressed_size,
            original_size / compressed_size if compressed_size else 0.0,
        )
        await report(on_progress, 100)
        return CompressionResult(
            data=bytes(encoded),
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=(
                original_size / compressed_size if compressed_size else 0.0
            ),
            duration_seconds=duration,
            mime_type=getattr(encoder, "mime_type", "audio/mpeg"),
            skipped=False,
        )


_EXTENSION_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/x-m4a",
    ".mp4": "audio/mp4",
    ".ogg": "audio/ogg",
}


def _guess_mime_type(path: str) -> str:
    return _EXTENSION_MIME_TYPES.get(
        Path(path).suffix.lower(), "application/octet-stream"
    )
