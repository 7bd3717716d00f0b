"""Tests for session_processor.main shutdown behavior and CLI parsing."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import session_processor.main as main_mod
from session_processor.main import SHUTDOWN_TIMEOUT_SECONDS, _parse_args, _run


def _stoppable(component: MagicMock) -> MagicMock:
    """Give a mock a run() loop that ends once stop() is called."""
    component._running = True

    async def fake_run(*args):
        while component._running:
            await asyncio.sleep(0.01)

    def stop():
        component._running = False

    component.run = fake_run
    component.stop.side_effect = stop
    return component


async def _run_until_shutdown(consumer, dispatch_fn, poller=None, runner=None) -> None:
    """Start _run(), fire the captured signal handler and wait for exit."""
    with patch("session_processor.main.asyncio.start_server") as mock_server:
        mock_srv = AsyncMock()
        mock_srv.close = MagicMock()
        mock_server.return_value = mock_srv

        shutdown_callback = None

        def capture_handler(sig, callback):
            nonlocal shutdown_callback
            shutdown_callback = callback

        loop = asyncio.get_running_loop()
        original_add = loop.add_signal_handler
        loop.add_signal_handler = capture_handler

        try:
            task = asyncio.create_task(_run(consumer, dispatch_fn, poller, runner))
            await asyncio.sleep(0.05)

            assert shutdown_callback is not None
            shutdown_callback()

            await asyncio.wait_for(task, timeout=2.0)
        finally:
            loop.add_signal_handler = original_add
        mock_srv.close.assert_called_once()


class TestShutdownTimeout:
    """Tests for graceful shutdown with timeout."""

    async def test_shutdown_timeout_constant_is_25(self) -> None:
        """Shutdown timeout is 25s (5s buffer before Cloud Run SIGKILL at 30s)."""
        assert SHUTDOWN_TIMEOUT_SECONDS == 25

    async def test_clean_shutdown_within_timeout(self) -> None:
        """Consumer and poller that stop quickly complete shutdown."""
        consumer = _stoppable(MagicMock())
        poller = _stoppable(MagicMock())
        runner = MagicMock()
        runner.shutdown = AsyncMock()

        await _run_until_shutdown(consumer, AsyncMock(), poller, runner)

        consumer.stop.assert_called_once()
        poller.stop.assert_called_once()
        remaining = runner.shutdown.await_args.args[0]
        assert 0 < remaining <= SHUTDOWN_TIMEOUT_SECONDS

    async def test_shutdown_timeout_cancels_hanging_consumer(self, monkeypatch) -> None:
        """When consumer hangs beyond timeout, it is cancelled."""
        consumer = MagicMock()
        cancelled = asyncio.Event()

        async def hanging_run(dispatch_fn):
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        consumer.run = hanging_run
        monkeypatch.setattr(main_mod, "SHUTDOWN_TIMEOUT_SECONDS", 0.1)

        await _run_until_shutdown(consumer, AsyncMock())

        assert cancelled.is_set()


class TestParseArgs:
    """Tests for command line parsing."""

    def test_default_is_serve(self) -> None:
        assert _parse_args([]).command is None
        assert _parse_args(["serve"]).command == "serve"

    def test_upload_options(self, monkeypatch) -> None:
        monkeypatch.delenv("TRANSCRIPTION_MODE", raising=False)
        args = _parse_args(["upload", "session.m4a", "--recording-id", "r1"])
        assert args.command == "upload"
        assert args.file == "session.m4a"
        assert args.recording_id == "r1"
        assert args.mode == "fast"
        assert args.foreground is False

    def test_upload_requires_recording_id(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["upload", "session.m4a"])

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["upload", "a.mp3", "--recording-id", "r1", "--mode", "slow"])
