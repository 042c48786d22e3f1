from __future__ import annotations

import hashlib
from typing import Any, Callable

from src.ledger.gateway import FinalizeResult, LedgerError, SubmittedTransaction, UnsignedTransaction
from src.ledger.signer import SignedEnvelope, SigningError, TransactionSigner
from src.runtime.service import RunnerService
from src.runtime.state_machine import RunProcessor
from src.runtime.types import Run, RunRequest, UsageBudget
from src.runtime.usage_meter import SimulatedUsageMeter, UsageMeter, WorkloadResult
from src.runtime.worker import RunWorker, WorkerConfig
from src.storage.run_registry import InMemoryRunRegistry, RunRegistry


RUNNER_PUBLIC_KEY = "GRUNNERFAKEPUBLICKEY"
DEVELOPER = "GDEVELOPERFAKE"


def _weight(usage: UsageBudget) -> int:
    return usage.llm_in + usage.llm_out + usage.http_calls + usage.runtime_ms


def _same(value: Any) -> Any:
    return value


class FakeLedgerGateway:
    """In-process ledger: one unit of charge per metered unit, refund = escrow - charge."""

    def __init__(
        self,
        *,
        rate_version: int = 3,
        first_run_id: int = 41,
        fail_open: bool = False,
        fail_finalize_times: int = 0,
        fail_rate_lookup: bool = False,
        confirmed_values: list[Any] | None = None,
    ) -> None:
        self.rate_version = rate_version
        self.fail_open = fail_open
        self.fail_finalize_times = fail_finalize_times
        self.fail_rate_lookup = fail_rate_lookup
        self._next_run_id = first_run_id
        self._escrow: dict[int, int] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.submitted: list[str] = []
        # Return values reported by confirmed submissions, in order; none left means no meta.
        self.confirmed_values: list[Any] = list(confirmed_values or [])

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def latest_rate_version(self, agent_id: int) -> int:
        self.calls.append(("latest_rate_version", {"agent_id": agent_id}))
        if self.fail_rate_lookup:
            raise LedgerError("agent not registered")
        return self.rate_version

    def open_run(
        self, *, user: str, caller: str, agent_id: int, rate_version: int, budgets: UsageBudget
    ) -> UnsignedTransaction:
        self.calls.append(
            (
                "open_run",
                {"user": user, "caller": caller, "agent_id": agent_id, "rate_version": rate_version, "budgets": budgets},
            )
        )
        if self.fail_open:
            raise LedgerError("open_run simulation failed: insufficient balance")
        run_id = self._next_run_id
        self._next_run_id += 1
        self._escrow[run_id] = _weight(budgets)
        return UnsignedTransaction(method="open_run", envelope_xdr=f"open-{run_id}", result=run_id, decode=int)

    def finalize_run(
        self, *, run_id: int, runner: str, rate_version: int, usage: UsageBudget, output_hash: bytes
    ) -> UnsignedTransaction:
        self.calls.append(
            (
                "finalize_run",
                {
                    "run_id": run_id,
                    "runner": runner,
                    "rate_version": rate_version,
                    "usage": usage,
                    "output_hash": output_hash,
                },
            )
        )
        if self.fail_finalize_times > 0:
            self.fail_finalize_times -= 1
            raise LedgerError("finalize_run simulation failed: ledger unavailable")
        charge = _weight(usage)
        return UnsignedTransaction(
            method="finalize_run",
            envelope_xdr=f"finalize-{run_id}-{len(self.calls_to('finalize_run'))}",
            result=FinalizeResult(
                run_id=run_id,
                actual_charge=charge,
                refund=self._escrow.get(run_id, 0) - charge,
                developer=DEVELOPER,
            ),
            decode=_same,
        )

    def submit(self, signed_envelope_xdr: str) -> SubmittedTransaction:
        self.submitted.append(signed_envelope_xdr)
        return_value = self.confirmed_values.pop(0) if self.confirmed_values else None
        return SubmittedTransaction(hash=f"submitted-{len(self.submitted)}", return_value=return_value)


class FakeSigner:
    """Deterministic signer: the hash is sha256 of the unsigned envelope."""

    def __init__(self, *, public_key: str = RUNNER_PUBLIC_KEY, fail_on: str | None = None) -> None:
        self.public_key = public_key
        self.fail_on = fail_on
        self.signed: list[str] = []

    def sign(self, envelope_xdr: str, network_passphrase: str) -> SignedEnvelope:
        if self.fail_on is not None and envelope_xdr.startswith(self.fail_on):
            raise SigningError(f"refusing to sign {envelope_xdr}")
        self.signed.append(envelope_xdr)
        return SignedEnvelope(
            xdr=f"signed:{envelope_xdr}",
            hash=hashlib.sha256(envelope_xdr.encode("utf-8")).hexdigest(),
        )


def tx_hash(envelope_xdr: str) -> str:
    return hashlib.sha256(envelope_xdr.encode("utf-8")).hexdigest()


class FailingMeter:
    def __init__(self, message: str = "workload crashed") -> None:
        self.message = message

    def execute(self, run: Run) -> WorkloadResult:
        raise RuntimeError(self.message)


class ObservingMeter:
    """Wraps a meter and calls `on_execute(run)` before delegating."""

    def __init__(self, inner: UsageMeter, on_execute: Callable[[Run], None]) -> None:
        self._inner = inner
        self._on_execute = on_execute

    def execute(self, run: Run) -> WorkloadResult:
        self._on_execute(run)
        return self._inner.execute(run)


def build_service(
    *,
    registry: RunRegistry | None = None,
    gateway: FakeLedgerGateway | None = None,
    signer: FakeSigner | None = None,
    meter: UsageMeter | None = None,
    finalize_on_error: bool = True,
) -> RunnerService:
    registry = registry or InMemoryRunRegistry()
    gateway = gateway or FakeLedgerGateway()
    processor = RunProcessor(
        registry=registry,
        gateway=gateway,
        signer=TransactionSigner(
            signer=signer or FakeSigner(),
            gateway=gateway,
            network_passphrase="Test SDF Network ; September 2015",
        ),
        meter=meter or SimulatedUsageMeter(delay_s=0),
        finalize_on_error=finalize_on_error,
    )
    worker = RunWorker(registry=registry, processor=processor, config=WorkerConfig(poll_interval_s=0.01))
    return RunnerService(registry=registry, worker=worker, config_summary={"runner": RUNNER_PUBLIC_KEY})


def make_request(
    *,
    user: str = "U1",
    agent_id: int = 7,
    budgets: UsageBudget | None = None,
    rate_version: int | None = None,
) -> RunRequest:
    return RunRequest(
        user=user,
        agent_id=agent_id,
        budgets=budgets or UsageBudget(llm_in=100, llm_out=100, http_calls=10, runtime_ms=1000),
        rate_version=rate_version,
    )
