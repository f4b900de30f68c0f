"""
Graceful shutdown handler for the contract graph CLI.

Handles Ctrl+C (SIGINT) and SIGTERM by running registered cleanup callbacks,
so an interrupted fetch leaves a checkpoint that --resume can pick up.
"""

import signal
import sys
from typing import Callable, List, Optional


class GracefulShutdownHandler:
    """Handles graceful shutdown on signals like Ctrl+C."""

    def __init__(self):
        self.cleanup_callbacks: List[Callable] = []
        self.is_shutting_down = False

    def register_cleanup_callback(self, callback: Callable):
        """Register a cleanup callback to be called on shutdown."""
        if callback not in self.cleanup_callbacks:
            self.cleanup_callbacks.append(callback)

    def unregister_cleanup_callback(self, callback: Callable):
        if callback in self.cleanup_callbacks:
            self.cleanup_callbacks.remove(callback)

    def setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle termination signals."""
        if self.is_shutting_down:
            print("\n⚠️  Force stopping (signal received again)...")
            sys.exit(1)

        print("\n⏹️  Received interrupt signal. Saving progress...")
        print("   (Press Ctrl+C again to force stop)")

        self.run_cleanup()
        sys.exit(130)

    def run_cleanup(self):
        """Run every registered callback once. Callback errors are reported, not raised."""
        if self.is_shutting_down:
            return

        self.is_shutting_down = True

        for callback in self.cleanup_callbacks:
            try:
                print("   💾 Running cleanup callback...")
                callback()
            except Exception as e:
                print(f"   ⚠️  Error in cleanup callback: {e}")

        print("✅ Cleanup complete.")

    def reset(self):
        self.cleanup_callbacks = []
        self.is_shutting_down = False


# Global shutdown handler instance
_global_shutdown_handler: Optional[GracefulShutdownHandler] = None


def get_shutdown_handler(install_signals: bool = True) -> GracefulShutdownHandler:
    """Get or create the global shutdown handler."""
    global _global_shutdown_handler
    if _global_shutdown_handler is None:
        _global_shutdown_handler = GracefulShutdownHandler()
        if install_signals:
            _global_shutdown_handler.setup_signal_handlers()
    return _global_shutdown_handler


def register_cleanup_callback(callback: Callable):
    """Register a cleanup callback for graceful shutdown."""
    handler = get_shutdown_handler()
    handler.register_cleanup_callback(callback)
