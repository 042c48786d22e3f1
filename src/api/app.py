from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from src.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from src.config.load_config import load_runner_config
from src.runtime.service import RunnerService
from src.utils.log import configure_logging

from .routers.health import router as health_router
from .routers.runs import router as runs_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("RUNNER_CORS_ORIGIN", "").strip()
    if not raw:
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _service_from_env() -> RunnerService:
    config = load_runner_config()
    configure_logging(config.log_level)
    return RunnerService.from_config(config)


def create_app(
    *,
    service: RunnerService | None = None,
    service_factory: Callable[[], RunnerService] | None = None,
) -> FastAPI:
    """Build the API. Without an explicit service, one is built from env/TOML config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        owned = service is None
        svc = service or (service_factory or _service_from_env)()
        app.state.runner_service = svc

        # Runs left mid-pipeline by a previous process.
        if _env_bool("RUNNER_RECONCILE_ON_STARTUP", True):
            app.state.reconciled_in_flight_runs = svc.reconcile_in_flight_runs()
        else:
            app.state.reconciled_in_flight_runs = 0

        if _env_bool("RUNNER_ENABLE_WORKER", True):
            svc.start()
        try:
            yield
        finally:
            svc.stop()
            if owned:
                svc.close()

    app = FastAPI(title="Agent Runner API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(health_router, tags=["system"])
    app.include_router(runs_router, tags=["runs"])

    return app


app = create_app()
