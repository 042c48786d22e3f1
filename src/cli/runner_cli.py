from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from src.config.load_config import ConfigError, load_runner_config
from src.runtime.service import RunnerService
from src.runtime.types import RunRequest
from src.runtime.usage_meter import normalize_budget
from src.utils.log import configure_logging


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _number(raw: str) -> int | float:
    try:
        return int(raw)
    except ValueError:
        return float(raw)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agent run processor: queue, retry and settle runs.")
    sub = parser.add_subparsers(dest="command", required=True)

    enqueue = sub.add_parser("enqueue", help="Queue a new run.")
    enqueue.add_argument("--user", required=True, help="Ledger address of the paying user.")
    enqueue.add_argument("--agent-id", type=int, required=True)
    enqueue.add_argument("--rate-version", type=int, default=None)
    enqueue.add_argument("--llm-in", type=_number, default=0)
    enqueue.add_argument("--llm-out", type=_number, default=0)
    enqueue.add_argument("--http-calls", type=_number, default=0)
    enqueue.add_argument("--runtime-ms", type=_number, default=0)
    enqueue.add_argument("--workflow-id", default=None)
    enqueue.add_argument("--label", default=None)

    retry = sub.add_parser("retry", help="Re-queue a failed run.")
    retry.add_argument("--id", required=True, help="Run id (e.g. run_<hex>).")

    sub.add_parser("list", help="Print all runs in creation order.")

    drain = sub.add_parser("drain", help="Process pending runs until the queue is empty, then exit.")
    drain.add_argument("--max-runs", type=int, default=None)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = load_runner_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    configure_logging(config.log_level)

    service = RunnerService.from_config(config)
    try:
        if args.command == "enqueue":
            run = service.enqueue(
                RunRequest(
                    user=args.user,
                    agent_id=args.agent_id,
                    rate_version=args.rate_version,
                    budgets=normalize_budget(
                        {
                            "llmIn": args.llm_in,
                            "llmOut": args.llm_out,
                            "httpCalls": args.http_calls,
                            "runtimeMs": args.runtime_ms,
                        }
                    ),
                    workflow_id=args.workflow_id,
                    label=args.label,
                )
            )
            _print_json(run.to_dict())
            return 0

        if args.command == "retry":
            result = service.retry(args.id)
            if result.error is not None:
                print(f"{result.error.kind.value}: {result.error.message}", file=sys.stderr)
                return 1
            assert result.run is not None
            _print_json(result.run.to_dict())
            return 0

        if args.command == "list":
            _print_json([r.to_dict() for r in service.list_runs()])
            return 0

        if args.command == "drain":
            assert service.worker is not None
            processed = service.worker.drain(max_runs=args.max_runs)
            _print_json({"processed": processed, "status": service.status().to_dict()})
            return 0

        raise SystemExit(f"Unknown command: {args.command}")
    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
