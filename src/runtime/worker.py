from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from src.runtime.state_machine import RunProcessor
from src.runtime.types import Run, StatusSnapshot, utc_now_iso
from src.storage.run_registry import RunRegistry
from src.utils.cancel import CancellationToken
from src.utils.log import fields


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_s: float = 1.0
    stop_timeout_s: float = 5.0


class RunWorker:
    """Single-threaded background worker that executes pending runs one at a time.

    The next tick is armed only after the previous one returns, so ticks never
    overlap. The busy check and the busy claim are one non-blocking lock acquire.
    """

    def __init__(
        self,
        *,
        registry: RunRegistry,
        processor: RunProcessor,
        config: WorkerConfig | None = None,
    ) -> None:
        self._registry = registry
        self._processor = processor
        self._config = config or WorkerConfig()
        self._thread: threading.Thread | None = None
        self._cancel = CancellationToken()
        self._busy = threading.Lock()
        self._active_run_id: str | None = None
        self._last_tick_at: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def processing(self) -> bool:
        return self._busy.locked()

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    def status_snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            active_run_id=self._active_run_id,
            queue_depth=int(self._registry.count_by_status().get("pending", 0)),
            last_tick_at=self._last_tick_at,
            running=self.running,
        )

    def start(self) -> None:
        if self.running:
            return
        self._cancel.reset()
        self._thread = threading.Thread(target=self._run_loop, name="runner-worker", daemon=True)
        self._thread.start()
        logger.info("Worker started", extra=fields(poll_interval_s=self._config.poll_interval_s))

    def stop(self, *, timeout_s: float | None = None) -> None:
        """Stop arming new ticks. An in-flight run is left to finish on its own."""
        self._cancel.request_cancel()
        t = self._thread
        if t is None:
            return
        t.join(timeout=self._config.stop_timeout_s if timeout_s is None else timeout_s)
        if t.is_alive():
            logger.info("Worker still finishing an in-flight run", extra=fields(id=self._active_run_id))

    def _run_loop(self) -> None:
        while not self._cancel.cancelled:
            self.tick()
            if self._cancel.wait(self._config.poll_interval_s):
                break

    def tick(self) -> Run | None:
        """Process at most one pending run. Never raises."""
        self._last_tick_at = utc_now_iso()
        if not self._busy.acquire(blocking=False):
            return None
        next_run: Run | None = None
        try:
            next_run = self._registry.get_next_pending()
            if next_run is None:
                return None
            self._active_run_id = next_run.id
            return self._processor.process(next_run)
        except Exception:
            # Never let one run's failure stop future ticks.
            logger.error(
                "Runner loop error",
                exc_info=True,
                extra=fields(id=next_run.id if next_run is not None else None),
            )
            return None
        finally:
            self._active_run_id = None
            self._busy.release()

    def drain(self, *, max_runs: int | None = None) -> int:
        """Process pending runs back to back until none remain (CLI/test helper)."""
        processed = 0
        while max_runs is None or processed < max_runs:
            if self._registry.get_next_pending() is None:
                break
            # None means busy elsewhere or an error already logged by tick().
            if self.tick() is None:
                break
            processed += 1
        return processed
