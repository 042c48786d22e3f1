from __future__ import annotations

from fastapi import Request

from src.api.errors import APIError
from src.runtime.service import RunnerService


def get_runner_service(request: Request) -> RunnerService:
    """FastAPI dependency: the RunnerService built in the app lifespan."""
    service = getattr(request.app.state, "runner_service", None)
    if not isinstance(service, RunnerService):
        raise APIError(status_code=503, code="unavailable", message="Runner service is not initialized.")
    return service
