from __future__ import annotations

import copy
import threading
import time
import uuid
from typing import Any, Callable, Mapping, Protocol

from src.runtime.types import Run, RunEvent, RunStatus, utc_now_iso


class RegistryError(RuntimeError):
    pass


class DuplicateRunError(RegistryError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run with id {run_id} already exists.")
        self.run_id = run_id


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class RunRegistry(Protocol):
    """Keyed store of Run records.

    Implementations hand out copies: mutating a returned Run never changes
    the stored record, and records passed in are copied before storing.
    """

    def add(self, run: Run) -> Run: ...

    def get(self, run_id: str) -> Run | None: ...

    def list(self) -> list[Run]: ...

    def get_next_pending(self) -> Run | None: ...

    def count_by_status(self) -> dict[str, int]: ...

    def update(self, run_id: str, patch: Mapping[str, Any] | None = None) -> Run | None: ...

    def update_status(self, run_id: str, status: RunStatus, patch: Mapping[str, Any] | None = None) -> Run | None: ...

    def update_if_status(
        self,
        run_id: str,
        expected_status: RunStatus,
        patch: Callable[[Run], Mapping[str, Any]],
    ) -> Run | None:
        """Atomically apply `patch(current)` only while the run is in `expected_status`.

        Returns None when the run is missing or in another status; nothing is written then.
        """
        ...

    def remove(self, run_id: str) -> bool: ...

    def clear(self) -> None: ...

    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str: ...

    def list_events(self, run_id: str) -> list[RunEvent]: ...

    def close(self) -> None: ...


class InMemoryRunRegistry:
    """Process-local registry. Insertion order is the FIFO order for pending runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._events: list[RunEvent] = []

    def add(self, run: Run) -> Run:
        with self._lock:
            if run.id in self._runs:
                raise DuplicateRunError(run.id)
            self._runs[run.id] = run.copy()
            return run.copy()

    def get(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.copy() if run is not None else None

    def list(self) -> list[Run]:
        with self._lock:
            # sorted() is stable, so equal timestamps keep insertion order.
            return [r.copy() for r in sorted(self._runs.values(), key=lambda r: r.created_at)]

    def get_next_pending(self) -> Run | None:
        with self._lock:
            for run in self._runs.values():
                if run.status == "pending":
                    return run.copy()
            return None

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            counts: dict[str, int] = {}
            for run in self._runs.values():
                counts[run.status] = counts.get(run.status, 0) + 1
            return dict(sorted(counts.items()))

    def update(self, run_id: str, patch: Mapping[str, Any] | None = None) -> Run | None:
        with self._lock:
            existing = self._runs.get(run_id)
            if existing is None:
                return None
            updated = existing.with_patch(patch or {}, updated_at=utc_now_iso())
            self._runs[run_id] = updated
            return updated.copy()

    def update_status(self, run_id: str, status: RunStatus, patch: Mapping[str, Any] | None = None) -> Run | None:
        return self.update(run_id, {**(patch or {}), "status": status})

    def update_if_status(
        self,
        run_id: str,
        expected_status: RunStatus,
        patch: Callable[[Run], Mapping[str, Any]],
    ) -> Run | None:
        with self._lock:
            existing = self._runs.get(run_id)
            if existing is None or existing.status != expected_status:
                return None
            updated = existing.with_patch(patch(existing.copy()), updated_at=utc_now_iso())
            self._runs[run_id] = updated
            return updated.copy()

    def remove(self, run_id: str) -> bool:
        with self._lock:
            self._events = [e for e in self._events if e.run_id != run_id]
            return self._runs.pop(run_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
            self._events.clear()

    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event = RunEvent(
            event_id=new_event_id(),
            run_id=run_id,
            created_at=time.time(),
            event_type=event_type,
            payload=copy.deepcopy(payload),
        )
        with self._lock:
            self._events.append(event)
        return event.event_id

    def list_events(self, run_id: str) -> list[RunEvent]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._events if e.run_id == run_id]

    def close(self) -> None:
        return None
