"""Tests for the pre-upload compressor."""

import asyncio
import math
import shutil
from unittest.mock import patch

import numpy as np
import pytest

from session_processor.audio.compress import AudioCompressor, float_to_pcm16, resample
from session_processor.audio.encoder import FRAME_SAMPLES, Mp3StreamEncoder, StreamEncoder
from session_processor.audio.transcode import DecodedAudio
from session_processor.utils.errors import CompressionError


class FakeEncoder(StreamEncoder):
    """Emits a fixed number of bytes per frame."""

    mime_type = "audio/mpeg"

    def __init__(self, bytes_per_frame: int = 10, fail_at: int | None = None) -> None:
        self.bytes_per_frame = bytes_per_frame
        self.fail_at = fail_at
        self.frames: list[int] = []
        self.aborted = False

    async def encode_frame(self, pcm: np.ndarray) -> bytes:
        if self.fail_at is not None and len(self.frames) == self.fail_at:
            raise CompressionError("encoder crashed")
        self.frames.append(len(pcm))
        return b"e" * self.bytes_per_frame

    async def flush(self) -> bytes:
        return b"end"

    async def abort(self) -> None:
        self.aborted = True


def _decoder(seconds: float, rate: int = 44100, channels: int = 2):
    def decode(path: str) -> DecodedAudio:
        frames = int(seconds * rate)
        return DecodedAudio(
            samples=np.full((frames, channels), 0.25, dtype=np.float32),
            sample_rate=rate,
            channels=channels,
        )

    return decode


@pytest.fixture
def large_input(tmp_path):
    path = tmp_path / "input.wav"
    path.write_bytes(b"x" * 1_000_000)
    return str(path)


class TestResample:
    """Tests for resample()."""

    def test_frame_count_is_ceil_of_duration(self) -> None:
        samples = np.zeros((44101, 2), dtype=np.float32)
        out = resample(samples, 44100, 16000, 1)
        assert out.shape == (math.ceil(44101 / 44100 * 16000), 1)

    def test_downmix_averages_channels(self) -> None:
        samples = np.column_stack([np.full(100, 0.5), np.full(100, -0.1)])
        out = resample(samples, 16000, 16000, 1)
        assert np.allclose(out, 0.2)

    def test_upmix_repeats_mono(self) -> None:
        out = resample(np.full(10, 0.3), 8000, 8000, 2)
        assert out.shape == (10, 2)

    def test_empty_input(self) -> None:
        assert resample(np.zeros((0, 1)), 44100, 16000, 1).shape == (0, 1)


class TestFloatToPcm16:
    """Tests for float_to_pcm16()."""

    def test_asymmetric_full_scale(self) -> None:
        pcm = float_to_pcm16(np.array([-1.0, 0.0, 1.0, 2.0, -2.0]))
        assert pcm.tolist() == [-32768, 0, 32767, 32767, -32768]


class TestAudioCompressor:
    """Tests for AudioCompressor.compress()."""

    async def test_encodes_in_fixed_frames(self, large_input) -> None:
        encoder = FakeEncoder()
        compressor = AudioCompressor(
            decoder=_decoder(1.0), encoder_factory=lambda rate, ch, br: encoder
        )
        seen: list[int] = []

        result = await compressor.compress(large_input, on_progress=seen.append)

        expected_frames = math.ceil(16000 / FRAME_SAMPLES)
        assert len(encoder.frames) == expected_frames
        assert all(n == FRAME_SAMPLES for n in encoder.frames[:-1])
        assert not result.skipped
        assert result.compressed_size == expected_frames * 10 + 3
        assert result.compression_ratio == pytest.approx(1_000_000 / result.compressed_size)
        assert result.duration_seconds == pytest.approx(1.0)
        assert result.mime_type == "audio/mpeg"
        assert seen[:3] == [10, 25, 25]
        assert seen[-2:] == [98, 100]
        assert seen == sorted(seen)

    async def test_larger_output_returns_original(self, tmp_path) -> None:
        path = tmp_path / "small.mp3"
        path.write_bytes(b"tiny")
        compressor = AudioCompressor(
            decoder=_decoder(0.5), encoder_factory=lambda rate, ch, br: FakeEncoder()
        )

        result = await compressor.compress(str(path))

        assert result.skipped
        assert result.data == b"tiny"
        assert result.compressed_size == result.original_size == 4
        assert result.compression_ratio == 1.0
        assert result.mime_type == "audio/mpeg"

    async def test_encoder_failure_aborts(self, large_input) -> None:
        encoder = FakeEncoder(fail_at=2)
        compressor = AudioCompressor(
            decoder=_decoder(1.0), encoder_factory=lambda rate, ch, br: encoder
        )
        with pytest.raises(CompressionError, match="encoder crashed"):
            await compressor.compress(large_input)
        assert encoder.aborted

    async def test_factory_receives_targets(self, large_input) -> None:
        received = []

        def factory(rate, channels, bitrate):
            received.append((rate, channels, bitrate))
            return FakeEncoder()

        await AudioCompressor(decoder=_decoder(0.1), encoder_factory=factory).compress(
            large_input
        )
        assert received == [(16000, 1, 32000)]

    async def test_sample_work_runs_off_the_event_loop(self, large_input) -> None:
        offloaded = []
        original = asyncio.to_thread

        async def to_thread(func, *args):
            offloaded.append(getattr(func, "__name__", func))
            return await original(func, *args)

        compressor = AudioCompressor(
            decoder=_decoder(0.1), encoder_factory=lambda rate, ch, br: FakeEncoder()
        )
        with patch("session_processor.audio.compress.asyncio.to_thread", to_thread):
            await compressor.compress(large_input)

        assert "resample" in offloaded
        assert "float_to_pcm16" in offloaded


@pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not available")
class TestMp3StreamEncoder:
    """Tests that run the real MP3 encoder."""

    async def test_produces_mp3_bytes(self) -> None:
        encoder = Mp3StreamEncoder(16000, 1, 32000)
        output = bytearray()
        frame = np.zeros(FRAME_SAMPLES, dtype=np.int16)
        for _ in range(20):
            output.extend(await encoder.encode_frame(frame))
        output.extend(await encoder.flush())
        assert len(output) > 0
