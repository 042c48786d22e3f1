from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe stop flag the scheduler can sleep on."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to `timeout_s`; returns True if cancellation was requested meanwhile."""
        return self._event.wait(timeout=max(0.0, float(timeout_s)))
