#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
from pathlib import Path

import uvicorn


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.config.load_config import ConfigError, load_runner_config  # noqa: E402
from src.utils.log import configure_logging  # noqa: E402


def main() -> int:
    # Fail fast on bad config; the app lifespan loads it again in the server process.
    try:
        config = load_runner_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    configure_logging(config.log_level)

    reload = os.getenv("RUNNER_RELOAD", "0").strip().lower() in {"1", "true", "yes", "y", "on"}
    uvicorn.run(
        "src.api.app:app",
        host=config.host,
        port=config.port,
        reload=reload,
        log_level=config.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
