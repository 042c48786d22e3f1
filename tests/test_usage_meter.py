from __future__ import annotations

import hashlib
import json
import math

import pytest

from src.runtime.types import Run, UsageBudget
from src.runtime.usage_meter import SimulatedUsageMeter, normalize_budget, output_digest, to_non_negative_int


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (5, 5),
        (5.9, 5),
        ("12", 12),
        ("3.7", 3),
        (-4, 0),
        (-0.5, 0),
        (math.nan, 0),
        (math.inf, 0),
        (-math.inf, 0),
        (None, 0),
        (True, 0),
        ("abc", 0),
        ([1], 0),
        (2**60 + 1, 2**60 + 1),
        ("18446744073709551617", 18446744073709551617),
        (" 42 ", 42),
    ],
)
def test_to_non_negative_int(raw: object, expected: int) -> None:
    assert to_non_negative_int(raw) == expected


def test_normalize_budget_from_mapping_and_dataclass() -> None:
    assert normalize_budget({"llmIn": 10.9, "llmOut": -1, "httpCalls": math.nan}) == UsageBudget(llm_in=10)
    assert normalize_budget(None) == UsageBudget()
    assert normalize_budget(UsageBudget(llm_in=3, runtime_ms=-5)) == UsageBudget(llm_in=3)


def test_output_digest_is_sha256_of_utf8_payload() -> None:
    raw, hex_digest = output_digest('{"note":"ü"}')
    expected = hashlib.sha256('{"note":"ü"}'.encode("utf-8"))
    assert raw == expected.digest()
    assert len(raw) == 32
    assert hex_digest == expected.hexdigest()


def _run(budgets: UsageBudget) -> Run:
    return Run(
        id="run_sim",
        user="U1",
        agent_id=7,
        budgets=budgets,
        status="running",
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        workflow_id="wf-1",
    )


def test_simulated_meter_consumes_fixed_fractions() -> None:
    result = SimulatedUsageMeter(delay_s=0).execute(
        _run(UsageBudget(llm_in=100, llm_out=100, http_calls=10, runtime_ms=1000))
    )
    assert result.usage == UsageBudget(llm_in=80, llm_out=75, http_calls=5, runtime_ms=600)

    payload = json.loads(result.output)
    assert payload["runId"] == "run_sim"
    assert payload["agentId"] == 7
    assert payload["workflowId"] == "wf-1"
    assert payload["usage"] == {"llmIn": 80, "llmOut": 75, "httpCalls": 5, "runtimeMs": 600}


@pytest.mark.parametrize(
    "budgets",
    [
        UsageBudget(),
        UsageBudget(llm_in=1, llm_out=1, http_calls=1, runtime_ms=1),
        UsageBudget(llm_in=3, llm_out=7, http_calls=9, runtime_ms=13),
        UsageBudget(llm_in=10**18, llm_out=10**18, http_calls=10**18, runtime_ms=10**18),
    ],
)
def test_simulated_usage_never_exceeds_budgets(budgets: UsageBudget) -> None:
    result = SimulatedUsageMeter(delay_s=0).execute(_run(budgets))
    assert result.usage.fits_within(budgets)
    assert min(result.usage.to_dict().values()) >= 0


def test_simulated_output_is_deterministic() -> None:
    meter = SimulatedUsageMeter(delay_s=0)
    run = _run(UsageBudget(llm_in=50))
    assert meter.execute(run).output == meter.execute(run).output
