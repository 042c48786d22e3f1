from __future__ import annotations

import hashlib
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from src.runtime.types import Run, UsageBudget


def to_non_negative_int(value: Any) -> int:
    """Coerce a meter value: non-finite, negative or unparsable -> 0; fractions are floored."""
    if value is None or isinstance(value, bool):
        return 0
    # Exact integers never go through float, so values past 2**53 survive.
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str):
        try:
            return max(0, int(value.strip()))
        except ValueError:
            pass
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(f):
        return 0
    return max(0, math.floor(f))


def normalize_budget(raw: UsageBudget | Mapping[str, Any] | None) -> UsageBudget:
    """Normalize budgets from either a UsageBudget or a camelCase mapping."""
    if isinstance(raw, UsageBudget):
        return UsageBudget(
            llm_in=to_non_negative_int(raw.llm_in),
            llm_out=to_non_negative_int(raw.llm_out),
            http_calls=to_non_negative_int(raw.http_calls),
            runtime_ms=to_non_negative_int(raw.runtime_ms),
        )
    raw = raw or {}
    return UsageBudget(
        llm_in=to_non_negative_int(raw.get("llmIn")),
        llm_out=to_non_negative_int(raw.get("llmOut")),
        http_calls=to_non_negative_int(raw.get("httpCalls")),
        runtime_ms=to_non_negative_int(raw.get("runtimeMs")),
    )


def output_digest(payload: str) -> tuple[bytes, str]:
    """SHA-256 of the serialized output: (raw 32 bytes, hex)."""
    digest = hashlib.sha256(payload.encode("utf-8")).digest()
    return digest, digest.hex()


@dataclass(frozen=True)
class WorkloadResult:
    usage: UsageBudget
    output: str


class UsageMeter(Protocol):
    """Executes an agent workload within a run's budgets.

    Contract: `usage` never exceeds the run's budgets on any meter, and `output`
    is the exact serialized payload that gets hashed into `outputHash`.
    """

    def execute(self, run: Run) -> WorkloadResult: ...


# Fraction of each budget consumed by the simulated workload (numerator, denominator).
SIMULATED_FRACTIONS: dict[str, tuple[int, int]] = {
    "llm_in": (80, 100),
    "llm_out": (75, 100),
    "http_calls": (50, 100),
    "runtime_ms": (60, 100),
}


def _fraction_of(budget: int, fraction: tuple[int, int]) -> int:
    num, den = fraction
    return min(budget, (budget * num) // den)


class SimulatedUsageMeter:
    """Stand-in workload: consumes a fixed share of each budget.

    It exercises the settlement pipeline; it does not run an agent.
    """

    def __init__(self, *, delay_s: float = 0.25) -> None:
        self._delay_s = float(delay_s)

    def execute(self, run: Run) -> WorkloadResult:
        budgets = normalize_budget(run.budgets)
        usage = UsageBudget(
            llm_in=_fraction_of(budgets.llm_in, SIMULATED_FRACTIONS["llm_in"]),
            llm_out=_fraction_of(budgets.llm_out, SIMULATED_FRACTIONS["llm_out"]),
            http_calls=_fraction_of(budgets.http_calls, SIMULATED_FRACTIONS["http_calls"]),
            runtime_ms=_fraction_of(budgets.runtime_ms, SIMULATED_FRACTIONS["runtime_ms"]),
        )
        output = json.dumps(
            {
                "runId": run.id,
                "agentId": int(run.agent_id),
                "workflowId": run.workflow_id,
                "label": run.label,
                "usage": usage.to_dict(),
                "note": "Simulated workflow execution. Replace with agent runtime integration.",
            },
            ensure_ascii=False,
            separators=(",", ":"),
            sort_keys=True,
        )
        if self._delay_s > 0:
            time.sleep(self._delay_s)
        return WorkloadResult(usage=usage, output=output)
