from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, NonNegativeInt

from src.api.dependencies import get_runner_service
from src.api.errors import APIError
from src.runtime.service import RunnerService
from src.runtime.types import RunRequest, UsageBudget
from src.runtime.usage_meter import normalize_budget


router = APIRouter()


class UsageBudgetInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Integers stay exact; fractions are floored in to_budget.
    llm_in: NonNegativeInt | NonNegativeFloat = Field(default=0, alias="llmIn")
    llm_out: NonNegativeInt | NonNegativeFloat = Field(default=0, alias="llmOut")
    http_calls: NonNegativeInt | NonNegativeFloat = Field(default=0, alias="httpCalls")
    runtime_ms: NonNegativeInt | NonNegativeFloat = Field(default=0, alias="runtimeMs")

    def to_budget(self) -> UsageBudget:
        return normalize_budget(self.model_dump(by_alias=True))


class CreateRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: str = Field(min_length=1)
    agent_id: int = Field(ge=0, alias="agentId")
    rate_version: int | None = Field(default=None, gt=0, alias="rateVersion")
    budgets: UsageBudgetInput = Field(default_factory=UsageBudgetInput)
    workflow_id: str | None = Field(default=None, min_length=1, alias="workflowId")
    label: str | None = None
    metadata: dict[str, Any] | None = None

    def to_run_request(self) -> RunRequest:
        return RunRequest(
            user=self.user,
            agent_id=self.agent_id,
            budgets=self.budgets.to_budget(),
            rate_version=self.rate_version,
            workflow_id=self.workflow_id,
            label=self.label,
            metadata=self.metadata,
        )


def _require_run(service: RunnerService, run_id: str) -> dict[str, Any]:
    run = service.get(run_id)
    if run is None:
        raise APIError(status_code=404, code="not_found", message="Run not found.")
    return run.to_dict()


@router.get("/runs")
def list_runs(service: RunnerService = Depends(get_runner_service)) -> list[dict[str, Any]]:
    return [r.to_dict() for r in service.list_runs()]


@router.get("/runs/{run_id}")
def get_run(run_id: str, service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    return _require_run(service, run_id)


@router.get("/runs/{run_id}/events")
def list_run_events(run_id: str, service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    _require_run(service, run_id)
    return {"run_id": run_id, "items": [e.to_dict() for e in service.list_events(run_id)]}


@router.post("/runs", status_code=202)
def create_run(body: CreateRunRequest, service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    run = service.enqueue(body.to_run_request())
    return run.to_dict()


@router.post("/runs/{run_id}/retry")
def retry_run(run_id: str, service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    result = service.retry(run_id)
    if result.error is not None:
        raise APIError.from_runner_error(result.error)
    assert result.run is not None
    return result.run.to_dict()
