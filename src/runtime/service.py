from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from src.config.load_config import RunnerConfig
from src.ledger.gateway import SorobanLedgerGateway
from src.ledger.signer import KeypairSigner, TransactionSigner
from src.runtime.state_machine import RunProcessor
from src.runtime.types import IN_FLIGHT_STATUSES, Run, RunEvent, RunRequest, StatusSnapshot, utc_now_iso
from src.runtime.usage_meter import SimulatedUsageMeter, normalize_budget
from src.runtime.worker import RunWorker, WorkerConfig
from src.storage.run_registry import RunRegistry
from src.storage.sqlite_store import SQLiteRunRegistry
from src.utils.log import fields


logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


@dataclass(frozen=True)
class RunnerError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class RetryResult:
    """Either `run` (re-queued) or `error`; callers must check `ok`."""

    run: Run | None = None
    error: RunnerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.run is not None


class RunnerService:
    """Entry points consumed by the HTTP layer and the CLI."""

    def __init__(
        self,
        *,
        registry: RunRegistry,
        worker: RunWorker | None = None,
        config_summary: dict[str, Any] | None = None,
        id_factory: Callable[[], str] = new_run_id,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.registry = registry
        self.worker = worker
        self._config_summary = dict(config_summary or {})
        self._id_factory = id_factory
        self._clock = clock

    @classmethod
    def from_config(cls, config: RunnerConfig, *, registry: RunRegistry | None = None) -> RunnerService:
        registry = registry or SQLiteRunRegistry(config.db_path)
        gateway = SorobanLedgerGateway(
            rpc_url=config.rpc_url,
            network_passphrase=config.network_passphrase,
            vault_contract_id=config.contract_id,
            registry_contract_id=config.agent_registry_id,
            source_public_key=config.runner_public_key,
            rpc_timeout_s=config.rpc_timeout_s,
            submit_timeout_s=config.submit_timeout_s,
        )
        signer = TransactionSigner(
            signer=KeypairSigner(config.runner_secret),
            gateway=gateway,
            network_passphrase=config.network_passphrase,
        )
        processor = RunProcessor(
            registry=registry,
            gateway=gateway,
            signer=signer,
            meter=SimulatedUsageMeter(),
            finalize_on_error=config.finalize_on_error,
        )
        worker = RunWorker(
            registry=registry,
            processor=processor,
            config=WorkerConfig(poll_interval_s=config.poll_interval_s),
        )
        return cls(registry=registry, worker=worker, config_summary=config.summary())

    # --- Commands
    def enqueue(self, request: RunRequest) -> Run:
        now = self._clock()
        run = Run(
            id=self._id_factory(),
            user=request.user,
            agent_id=int(request.agent_id),
            budgets=normalize_budget(request.budgets),
            status="pending",
            created_at=now,
            updated_at=now,
            retries=0,
            rate_version=request.rate_version,
            workflow_id=request.workflow_id,
            label=request.label,
            metadata=request.metadata,
        )
        created = self.registry.add(run)
        self.registry.append_event(created.id, "run_enqueued", {"user": created.user, "agentId": created.agent_id})
        logger.info("Queued run", extra=fields(id=created.id, user=created.user))
        return created

    def retry(self, run_id: str) -> RetryResult:
        updated = self.registry.update_if_status(
            run_id,
            "failed",
            lambda current: {
                "status": "pending",
                "run_id": None,
                "usage": None,
                "output_hash": None,
                "receipt": None,
                "error": None,
                "transaction_hashes": {},
                "retries": current.retries + 1,
            },
        )
        if updated is None:
            existing = self.registry.get(run_id)
            if existing is None:
                return RetryResult(error=RunnerError(ErrorKind.NOT_FOUND, f"Run {run_id} not found"))
            return RetryResult(
                error=RunnerError(
                    ErrorKind.INVALID_STATE,
                    f"Only failed runs can be retried. Current status: {existing.status}",
                )
            )
        self.registry.append_event(run_id, "run_retried", {"retries": updated.retries})
        logger.info("Re-queued run", extra=fields(id=run_id, retries=updated.retries))
        return RetryResult(run=updated)

    def reconcile_in_flight_runs(self, *, reason: str = "runner_restarted") -> int:
        """Fail runs a previous process left mid-pipeline so they can be retried."""
        reconciled = 0
        for run in self.registry.list():
            if run.status not in IN_FLIGHT_STATUSES:
                continue
            self.registry.update_status(run.id, "failed", {"error": run.error or reason})
            self.registry.append_event(run.id, "run_reconciled", {"error": reason, "previous_status": run.status})
            reconciled += 1
        if reconciled:
            logger.info("Reconciled in-flight runs", extra=fields(count=reconciled, reason=reason))
        return reconciled

    # --- Queries
    def get(self, run_id: str) -> Run | None:
        return self.registry.get(run_id)

    def list_runs(self) -> list[Run]:
        return self.registry.list()

    def list_events(self, run_id: str) -> list[RunEvent]:
        return self.registry.list_events(run_id)

    def status(self) -> StatusSnapshot:
        if self.worker is not None:
            return self.worker.status_snapshot()
        return StatusSnapshot(
            active_run_id=None,
            queue_depth=int(self.registry.count_by_status().get("pending", 0)),
            last_tick_at=None,
        )

    def summary(self) -> dict[str, Any]:
        return {"config": dict(self._config_summary), "status": self.status().to_dict()}

    # --- Lifecycle
    def start(self) -> None:
        if self.worker is None:
            return
        logger.info("Starting runner service", extra=fields(**self._config_summary))
        self.worker.start()

    def stop(self) -> None:
        if self.worker is not None:
            self.worker.stop()

    def close(self) -> None:
        self.stop()
        self.registry.close()
