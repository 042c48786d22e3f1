from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_runner_service
from src.runtime.service import RunnerService
from src.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/health")
def health(service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    return {"ok": True, "status": service.status().to_dict()}


@router.get("/summary")
def summary(request: Request, service: RunnerService = Depends(get_runner_service)) -> dict[str, Any]:
    out = service.summary()
    out["startup"] = {"reconciled_in_flight_runs": getattr(request.app.state, "reconciled_in_flight_runs", 0)}
    return out


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "agent-runner",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "stellar-sdk": _pkg_version("stellar-sdk"),
        },
        "ts": time.time(),
    }
