"""Streaming MP3 encoder driven frame by frame.

Mp3StreamEncoder keeps one ffmpeg/libmp3lame process alive for the whole
encode. Each ``encode_frame()`` call writes one frame of 16-bit PCM to the
encoder's stdin and returns whatever encoded bytes are available so far;
``flush()`` closes the input and returns the remainder.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import numpy as np

from session_processor.audio.transcode import check_ffmpeg_available
from session_processor.utils.errors import CompressionError

logger = logging.getLogger(__name__)

FRAME_SAMPLES = 1152
_READ_SIZE = 64 * 1024


class StreamEncoder(ABC):
    """Encoder that accepts PCM one frame at a time."""

    mime_type: str = "application/octet-stream"

    @abstractmethod
    async def encode_frame(self, pcm: np.ndarray) -> bytes:
        """Encode one frame of int16 samples and return any new output."""

    @abstractmethod
    async def flush(self) -> bytes:
        """Finish the stream and return the remaining output."""

    async def abort(self) -> None:
        """Release resources after a failed encode."""


class Mp3StreamEncoder(StreamEncoder):
    """Constant-bitrate MP3 encoder backed by an ffmpeg subprocess.

    Args:
        sample_rate: Input sample rate in Hz.
        channels: Input channel count (samples are interleaved).
        bitrate: Target bitrate in bits per second.
    """

    mime_type = "audio/mpeg"

    def __init__(self, sample_rate: int, channels: int, bitrate: int) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.bitrate = bitrate
        self._process: asyncio.subprocess.Process | None = None
        self._buffer = bytearray()
        self._reader: asyncio.Task | None = None
        self._stderr: asyncio.Task | None = None

    async def _start(self) -> asyncio.subprocess.Process:
        if self._process is not None:
            return self._process
        cmd = [
            check_ffmpeg_available(),
            "-v", "error",
            "-f", "s16le",
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            "-i", "pipe:0",
            "-c:a", "libmp3lame",
            "-b:a", f"{self.bitrate // 1000}k",
            "-f", "mp3",
            "pipe:1",
        ]
        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._reader = asyncio.create_task(self._read_stdout(self._process))
        self._stderr = asyncio.create_task(self._process.stderr.read())
        return self._process

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        while True:
            data = await process.stdout.read(_READ_SIZE)
            if not data:
                return
            self._buffer.extend(data)

    def _drain_buffer(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    async def encode_frame(self, pcm: np.ndarray) -> bytes:
        process = await self._start()
        try:
            process.stdin.write(pcm.astype("<i2", copy=False).tobytes())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            stderr = await self._collect_stderr()
            raise CompressionError(f"MP3 encoder exited early: {stderr}") from exc
        return self._drain_buffer()

    async def flush(self) -> bytes:
        process = await self._start()
        process.stdin.close()
        await self._reader
        returncode = await process.wait()
        stderr = await self._collect_stderr()
        if returncode != 0:
            raise CompressionError(
                f"MP3 encoder failed with exit code {returncode}: {stderr}"
            )
        return self._drain_buffer()

    async def abort(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        process.kill()
        await process.wait()
        for task in (self._reader, self._stderr):
            if task is not None and not task.done():
                task.cancel()

    async def _collect_stderr(self) -> str:
        if self._stderr is None:
            return ""
        data = await self._stderr
        return data.decode(errors="replace").strip()
