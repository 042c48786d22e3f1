from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Literal, Mapping


RunStatus = Literal["pending", "opening", "running", "finalizing", "finalized", "failed"]

RUN_STATUSES: tuple[str, ...] = ("pending", "opening", "running", "finalizing", "finalized", "failed")
IN_FLIGHT_STATUSES: frozenset[str] = frozenset({"opening", "running", "finalizing"})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_status(value: Any) -> RunStatus:
    status = str(value)
    if status not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {status!r}")
    return status  # type: ignore[return-value]


@dataclass(frozen=True)
class UsageBudget:
    """Four resource meters. Used both for authorized budgets and consumed usage."""

    llm_in: int = 0
    llm_out: int = 0
    http_calls: int = 0
    runtime_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "llmIn": int(self.llm_in),
            "llmOut": int(self.llm_out),
            "httpCalls": int(self.http_calls),
            "runtimeMs": int(self.runtime_ms),
        }

    def to_contract(self) -> dict[str, int]:
        return {
            "llm_in": int(self.llm_in),
            "llm_out": int(self.llm_out),
            "http_calls": int(self.http_calls),
            "runtime_ms": int(self.runtime_ms),
        }

    def fits_within(self, budget: UsageBudget) -> bool:
        return (
            self.llm_in <= budget.llm_in
            and self.llm_out <= budget.llm_out
            and self.http_calls <= budget.http_calls
            and self.runtime_ms <= budget.runtime_ms
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> UsageBudget:
        raw = raw or {}
        return cls(
            llm_in=int(raw.get("llmIn", 0) or 0),
            llm_out=int(raw.get("llmOut", 0) or 0),
            http_calls=int(raw.get("httpCalls", 0) or 0),
            runtime_ms=int(raw.get("runtimeMs", 0) or 0),
        )


ZERO_USAGE = UsageBudget()


@dataclass(frozen=True)
class RunReceipt:
    run_id: int
    actual_charge: str
    refund: str
    developer: str
    output_hash: str | None = None
    finalized_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": int(self.run_id),
            "actualCharge": self.actual_charge,
            "refund": self.refund,
            "developer": self.developer,
            "outputHash": self.output_hash,
            "finalizedAt": self.finalized_at,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RunReceipt:
        return cls(
            run_id=int(raw["runId"]),
            actual_charge=str(raw["actualCharge"]),
            refund=str(raw["refund"]),
            developer=str(raw["developer"]),
            output_hash=raw.get("outputHash"),
            finalized_at=raw.get("finalizedAt"),
        )


@dataclass(frozen=True)
class RunRequest:
    user: str
    agent_id: int
    budgets: UsageBudget
    rate_version: int | None = None
    workflow_id: str | None = None
    label: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class Run:
    id: str
    user: str
    agent_id: int
    budgets: UsageBudget
    status: RunStatus
    created_at: str
    updated_at: str
    retries: int = 0
    rate_version: int | None = None
    workflow_id: str | None = None
    label: str | None = None
    metadata: dict[str, Any] | None = None
    run_id: int | None = None
    usage: UsageBudget | None = None
    output_hash: str | None = None
    receipt: RunReceipt | None = None
    error: str | None = None
    transaction_hashes: dict[str, str] = field(default_factory=dict)

    def copy(self) -> Run:
        return copy.deepcopy(self)

    def with_patch(self, patch: Mapping[str, Any], *, updated_at: str) -> Run:
        known = {f.name for f in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise KeyError(f"Unknown run fields in patch: {sorted(unknown)}")
        if "status" in patch and patch["status"] not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {patch['status']!r}")
        # id and created_at are immutable.
        effective = {k: copy.deepcopy(v) for k, v in patch.items() if k not in {"id", "created_at"}}
        effective["updated_at"] = updated_at
        return replace(self, **effective)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "user": self.user,
            "agentId": int(self.agent_id),
            "budgets": self.budgets.to_dict(),
            "status": self.status,
            "retries": int(self.retries),
            "transactionHashes": dict(self.transaction_hashes),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        optional: dict[str, Any] = {
            "rateVersion": self.rate_version,
            "workflowId": self.workflow_id,
            "label": self.label,
            "metadata": copy.deepcopy(self.metadata) if self.metadata is not None else None,
            "runId": self.run_id,
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "outputHash": self.output_hash,
            "receipt": self.receipt.to_dict() if self.receipt is not None else None,
            "error": self.error,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Run:
        usage = raw.get("usage")
        receipt = raw.get("receipt")
        return cls(
            id=str(raw["id"]),
            user=str(raw["user"]),
            agent_id=int(raw["agentId"]),
            budgets=UsageBudget.from_dict(raw.get("budgets")),
            status=_as_status(raw["status"]),
            created_at=str(raw["createdAt"]),
            updated_at=str(raw.get("updatedAt") or raw["createdAt"]),
            retries=int(raw.get("retries", 0) or 0),
            rate_version=int(raw["rateVersion"]) if raw.get("rateVersion") is not None else None,
            workflow_id=raw.get("workflowId"),
            label=raw.get("label"),
            metadata=copy.deepcopy(raw.get("metadata")),
            run_id=int(raw["runId"]) if raw.get("runId") is not None else None,
            usage=UsageBudget.from_dict(usage) if usage is not None else None,
            output_hash=raw.get("outputHash"),
            receipt=RunReceipt.from_dict(receipt) if receipt is not None else None,
            error=raw.get("error"),
            transaction_hashes={str(k): str(v) for k, v in (raw.get("transactionHashes") or {}).items()},
        )


@dataclass(frozen=True)
class RunEvent:
    event_id: str
    run_id: str
    created_at: float
    event_type: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "run_id": self.run_id,
            "created_at": self.created_at,
            "event_type": self.event_type,
            "payload": copy.deepcopy(self.payload),
        }


@dataclass(frozen=True)
class StatusSnapshot:
    active_run_id: str | None
    queue_depth: int
    last_tick_at: str | None
    running: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"queueDepth": int(self.queue_depth), "running": bool(self.running)}
        if self.active_run_id is not None:
            out["activeRunId"] = self.active_run_id
        if self.last_tick_at is not None:
            out["lastTickAt"] = self.last_tick_at
        return out
