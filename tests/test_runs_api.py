from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.runtime.service import RunnerService
from tests.fakes import FakeLedgerGateway, build_service, make_request


_VALID_BODY = {
    "user": "U1",
    "agentId": 7,
    "budgets": {"llmIn": 100, "llmOut": 100, "httpCalls": 10, "runtimeMs": 1000},
}


@pytest.fixture()
def service(monkeypatch: pytest.MonkeyPatch) -> RunnerService:
    monkeypatch.setenv("RUNNER_ENABLE_WORKER", "0")
    monkeypatch.setenv("RUNNER_RECONCILE_ON_STARTUP", "1")
    return build_service(gateway=FakeLedgerGateway(fail_open=True))


def test_create_run_returns_202_and_pending_record(service: RunnerService) -> None:
    with TestClient(create_app(service=service)) as client:
        resp = client.post("/runs", json={**_VALID_BODY, "workflowId": "wf-1", "metadata": {"k": "v"}})
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "pending"
        assert body["retries"] == 0
        assert body["agentId"] == 7
        assert body["workflowId"] == "wf-1"
        assert body["metadata"] == {"k": "v"}
        assert body["budgets"] == _VALID_BODY["budgets"]
        assert body["transactionHashes"] == {}
        assert "receipt" not in body

        fetched = client.get(f"/runs/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json() == body

        listed = client.get("/runs")
        assert listed.status_code == 200
        assert [r["id"] for r in listed.json()] == [body["id"]]


def test_create_run_floors_fractional_budgets(service: RunnerService) -> None:
    with TestClient(create_app(service=service)) as client:
        resp = client.post("/runs", json={"user": "U1", "agentId": 7, "budgets": {"llmIn": 10.9}})
        assert resp.status_code == 202
        assert resp.json()["budgets"] == {"llmIn": 10, "llmOut": 0, "httpCalls": 0, "runtimeMs": 0}


def test_create_run_keeps_large_integer_budgets_exact(service: RunnerService) -> None:
    big = 2**60 + 1
    with TestClient(create_app(service=service)) as client:
        resp = client.post("/runs", json={"user": "U1", "agentId": 7, "budgets": {"llmIn": big, "runtimeMs": 5}})
        assert resp.status_code == 202
        assert resp.json()["budgets"] == {"llmIn": big, "llmOut": 0, "httpCalls": 0, "runtimeMs": 5}
        assert service.get(resp.json()["id"]).budgets.llm_in == big  # type: ignore[union-attr]


@pytest.mark.parametrize(
    "body",
    [
        {"agentId": 7},
        {"user": "", "agentId": 7},
        {"user": "U1", "agentId": -1},
        {"user": "U1", "agentId": 7, "budgets": {"llmIn": -5}},
        {"user": "U1", "agentId": 7, "rateVersion": 0},
    ],
)
def test_create_run_rejects_invalid_bodies(service: RunnerService, body: dict) -> None:
    with TestClient(create_app(service=service)) as client:
        resp = client.post("/runs", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_argument"
        assert client.get("/runs").json() == []


def test_unknown_run_is_404(service: RunnerService) -> None:
    with TestClient(create_app(service=service)) as client:
        assert client.get("/runs/run_missing").status_code == 404
        assert client.get("/runs/run_missing/events").status_code == 404

        resp = client.post("/runs/run_missing/retry")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


def test_retry_of_pending_run_is_409(service: RunnerService) -> None:
    with TestClient(create_app(service=service)) as client:
        run_id = client.post("/runs", json=_VALID_BODY).json()["id"]

        resp = client.post(f"/runs/{run_id}/retry")
        assert resp.status_code == 409
        err = resp.json()["error"]
        assert err["code"] == "invalid_state"
        assert "pending" in err["message"]


def test_failed_run_can_be_retried_over_http(service: RunnerService) -> None:
    with TestClient(create_app(service=service)) as client:
        run_id = client.post("/runs", json=_VALID_BODY).json()["id"]
        assert service.worker is not None
        service.worker.tick()

        failed = client.get(f"/runs/{run_id}").json()
        assert failed["status"] == "failed"
        assert "insufficient balance" in failed["error"]

        resp = client.post(f"/runs/{run_id}/retry")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "pending"
        assert body["retries"] == 1
        assert "error" not in body

        events = client.get(f"/runs/{run_id}/events").json()
        assert events["run_id"] == run_id
        assert [e["event_type"] for e in events["items"]][-2:] == ["run_failed", "run_retried"]


def test_health_and_summary(service: RunnerService) -> None:
    stuck = service.enqueue(make_request())
    service.registry.update_status(stuck.id, "running")

    with TestClient(create_app(service=service)) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["ok"] is True
        assert health.json()["status"]["running"] is False

        summary = client.get("/summary").json()
        assert summary["startup"]["reconciled_in_flight_runs"] == 1
        assert summary["config"]["runner"]
        assert summary["status"]["queueDepth"] == 0

        assert client.get(f"/runs/{stuck.id}").json()["status"] == "failed"
