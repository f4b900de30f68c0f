"""
Tests for core/graceful_shutdown.py
"""

from unittest.mock import MagicMock

import pytest

from core.graceful_shutdown import GracefulShutdownHandler


@pytest.fixture
def handler():
    return GracefulShutdownHandler()


class TestGracefulShutdownHandler:

    def test_register_is_idempotent(self, handler):
        callback = MagicMock()

        handler.register_cleanup_callback(callback)
        handler.register_cleanup_callback(callback)

        assert handler.cleanup_callbacks == [callback]

    def test_unregister(self, handler):
        callback = MagicMock()
        handler.register_cleanup_callback(callback)

        handler.unregister_cleanup_callback(callback)
        handler.unregister_cleanup_callback(callback)

        assert handler.cleanup_callbacks == []

    def test_cleanup_runs_callbacks_once(self, handler):
        callback = MagicMock()
        handler.register_cleanup_callback(callback)

        handler.run_cleanup()
        handler.run_cleanup()

        callback.assert_called_once()
        assert handler.is_shutting_down

    def test_failing_callback_does_not_stop_others(self, handler):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        other = MagicMock()
        handler.register_cleanup_callback(failing)
        handler.register_cleanup_callback(other)

        handler.run_cleanup()

        other.assert_called_once()

    def test_signal_runs_cleanup_and_exits(self, handler):
        callback = MagicMock()
        handler.register_cleanup_callback(callback)

        with pytest.raises(SystemExit) as exc_info:
            handler._handle_signal(2, None)

        assert exc_info.value.code == 130
        callback.assert_called_once()

    def test_second_signal_forces_exit(self, handler):
        handler.is_shutting_down = True

        with pytest.raises(SystemExit) as exc_info:
            handler._handle_signal(2, None)

        assert exc_info.value.code == 1

    def test_reset(self, handler):
        handler.register_cleanup_callback(MagicMock())
        handler.run_cleanup()

        handler.reset()

        assert handler.cleanup_callbacks == []
        assert not handler.is_shutting_down
