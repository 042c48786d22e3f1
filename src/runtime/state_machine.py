from __future__ import annotations

import json
import logging
import traceback
from typing import Any, Callable

from src.ledger.gateway import FinalizeResult, LedgerError, LedgerGateway
from src.ledger.signer import TransactionSigner
from src.runtime.types import ZERO_USAGE, Run, RunReceipt, RunStatus, UsageBudget, utc_now_iso
from src.runtime.usage_meter import UsageMeter, normalize_budget, output_digest
from src.storage.run_registry import RunRegistry
from src.utils.log import fields


logger = logging.getLogger(__name__)

FALLBACK_RATE_VERSION = 1


def _error_message(e: BaseException) -> str:
    return str(e) or type(e).__name__


def build_receipt(result: Any, *, fallback_run_id: int, output_hash: str, finalized_at: str) -> RunReceipt:
    """Normalize a finalize result; charge and refund stay decimal strings."""
    if not isinstance(result, FinalizeResult):
        raise LedgerError(f"Malformed finalize result: {result!r}")
    return RunReceipt(
        run_id=int(result.run_id if result.run_id is not None else fallback_run_id),
        actual_charge=str(int(result.actual_charge)),
        refund=str(int(result.refund)),
        developer=str(result.developer),
        output_hash=output_hash,
        finalized_at=finalized_at,
    )


class RunProcessor:
    """Drives one pending run through open -> workload -> finalize.

    A checkpoint is written to the registry after every transition. Errors from
    the ledger, the signer or the workload end the run in `failed`, unless the
    escrow was already opened and `finalize_on_error` is set; then a zero-usage
    finalize refunds the escrow and the run ends `finalized`.
    """

    def __init__(
        self,
        *,
        registry: RunRegistry,
        gateway: LedgerGateway,
        signer: TransactionSigner,
        meter: UsageMeter,
        finalize_on_error: bool = True,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._registry = registry
        self._gateway = gateway
        self._signer = signer
        self._meter = meter
        self._finalize_on_error = bool(finalize_on_error)
        self._clock = clock

    @property
    def runner_public_key(self) -> str:
        return self._signer.public_key

    def resolve_rate_version(self, run: Run) -> int:
        if run.rate_version is not None and int(run.rate_version) > 0:
            return int(run.rate_version)
        try:
            latest = int(self._gateway.latest_rate_version(int(run.agent_id)))
        except Exception as e:
            logger.debug(
                "Falling back to rate version %d",
                FALLBACK_RATE_VERSION,
                extra=fields(agent_id=run.agent_id, error=_error_message(e)),
            )
            return FALLBACK_RATE_VERSION
        if latest <= 0:
            logger.debug(
                "Ledger returned non-positive rate version; falling back",
                extra=fields(agent_id=run.agent_id, latest=latest),
            )
            return FALLBACK_RATE_VERSION
        return latest

    def _checkpoint(
        self,
        run: Run,
        status: RunStatus,
        event_type: str,
        patch: dict[str, Any],
        event_payload: dict[str, Any] | None = None,
    ) -> Run:
        updated = self._registry.update_status(run.id, status, patch)
        if updated is None:
            logger.warning("Run disappeared from the registry", extra=fields(id=run.id, status=status))
            return run
        self._registry.append_event(run.id, event_type, {"status": status, **(event_payload or {})})
        return updated

    def _append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> None:
        # Removed runs get no further events.
        if self._registry.get(run_id) is not None:
            self._registry.append_event(run_id, event_type, payload)

    def process(self, run: Run) -> Run:
        logger.info("Processing run", extra=fields(id=run.id, user=run.user, agent_id=run.agent_id))
        current = self._checkpoint(run, "opening", "run_opening", {})
        transaction_hashes: dict[str, str] = dict(current.transaction_hashes)
        ledger_run_id: int | None = None
        rate_version: int | None = None

        try:
            rate_version = self.resolve_rate_version(current)
            current = self._registry.update(current.id, {"rate_version": rate_version}) or current

            open_tx = self._gateway.open_run(
                user=current.user,
                caller=self.runner_public_key,
                agent_id=int(current.agent_id),
                rate_version=rate_version,
                budgets=normalize_budget(current.budgets),
            )
            opened = self._signer.sign_and_submit(open_tx)
            transaction_hashes["open"] = opened.hash
            # The confirmed return value wins over the simulated one.
            ledger_run_id = int(open_tx.confirmed_result(opened.return_value))

            current = self._checkpoint(
                current,
                "running",
                "run_running",
                {"run_id": ledger_run_id, "transaction_hashes": dict(transaction_hashes)},
            )

            workload = self._meter.execute(current)
            if not workload.usage.fits_within(current.budgets):
                raise RuntimeError(
                    f"Workload usage {workload.usage.to_dict()} exceeds budgets {current.budgets.to_dict()}"
                )
            digest, digest_hex = output_digest(workload.output)

            current = self._checkpoint(
                current,
                "finalizing",
                "run_finalizing",
                {
                    "usage": workload.usage,
                    "output_hash": digest_hex,
                    "transaction_hashes": dict(transaction_hashes),
                },
                event_payload={"output": workload.output, "output_hash": digest_hex},
            )

            receipt = self._finalize(
                current,
                ledger_run_id=ledger_run_id,
                rate_version=rate_version,
                usage=workload.usage,
                digest=digest,
                digest_hex=digest_hex,
                transaction_hashes=transaction_hashes,
            )
            current = self._checkpoint(
                current,
                "finalized",
                "run_finalized",
                {"receipt": receipt, "transaction_hashes": dict(transaction_hashes)},
            )
            logger.info(
                "Run finalized",
                extra=fields(id=current.id, contract_run_id=receipt.run_id, actual_charge=receipt.actual_charge),
            )
            return current
        except Exception as e:
            message = _error_message(e)
            logger.error("Run processing failed", exc_info=True, extra=fields(id=current.id, error=message))
            self._append_event(
                current.id,
                "run_failed",
                {"error": message, "traceback": traceback.format_exc(), "ledger_run_id": ledger_run_id},
            )
            return self._fail_or_compensate(
                current,
                message=message,
                ledger_run_id=ledger_run_id,
                rate_version=rate_version,
                transaction_hashes=transaction_hashes,
            )

    def _finalize(
        self,
        run: Run,
        *,
        ledger_run_id: int,
        rate_version: int,
        usage: UsageBudget,
        digest: bytes,
        digest_hex: str,
        transaction_hashes: dict[str, str],
    ) -> RunReceipt:
        finalize_tx = self._gateway.finalize_run(
            run_id=ledger_run_id,
            runner=self.runner_public_key,
            rate_version=rate_version,
            usage=usage,
            output_hash=digest,
        )
        finalized = self._signer.sign_and_submit(finalize_tx)
        transaction_hashes["finalize"] = finalized.hash
        return build_receipt(
            finalize_tx.confirmed_result(finalized.return_value),
            fallback_run_id=ledger_run_id,
            output_hash=digest_hex,
            finalized_at=self._clock(),
        )

    def _fail_or_compensate(
        self,
        run: Run,
        *,
        message: str,
        ledger_run_id: int | None,
        rate_version: int | None,
        transaction_hashes: dict[str, str],
    ) -> Run:
        # Partial transaction hashes (e.g. a lone `open`) are kept for audit.
        patch: dict[str, Any] = {"error": message, "transaction_hashes": dict(transaction_hashes)}
        if ledger_run_id is not None:
            patch["run_id"] = ledger_run_id

        if ledger_run_id is not None and self._finalize_on_error:
            try:
                receipt, digest_hex = self._finalize_with_zero(
                    run,
                    message=message,
                    ledger_run_id=ledger_run_id,
                    rate_version=rate_version,
                    transaction_hashes=transaction_hashes,
                )
            except Exception as finalize_error:
                logger.error(
                    "Unable to finalize failed run",
                    exc_info=True,
                    extra=fields(id=run.id, error=_error_message(finalize_error)),
                )
                self._append_event(
                    run.id,
                    "run_compensation_failed",
                    {"error": _error_message(finalize_error), "traceback": traceback.format_exc()},
                )
            else:
                patch.update(
                    {
                        "usage": ZERO_USAGE,
                        "output_hash": digest_hex,
                        "receipt": receipt,
                        "transaction_hashes": dict(transaction_hashes),
                    }
                )
                updated = self._checkpoint(run, "finalized", "run_auto_finalized", patch)
                logger.info(
                    "Run auto-finalized after error",
                    extra=fields(id=run.id, contract_run_id=receipt.run_id, refund=receipt.refund),
                )
                return updated

        updated = self._registry.update_status(run.id, "failed", patch)
        return updated or run

    def _finalize_with_zero(
        self,
        run: Run,
        *,
        message: str,
        ledger_run_id: int,
        rate_version: int | None,
        transaction_hashes: dict[str, str],
    ) -> tuple[RunReceipt, str]:
        failure_summary = json.dumps(
            {"runId": run.id, "message": message or "Runner failure", "timestamp": self._clock()},
            ensure_ascii=False,
            separators=(",", ":"),
        )
        digest, digest_hex = output_digest(failure_summary)
        effective_rate_version = rate_version if rate_version is not None else self.resolve_rate_version(run)
        receipt = self._finalize(
            run,
            ledger_run_id=ledger_run_id,
            rate_version=effective_rate_version,
            usage=ZERO_USAGE,
            digest=digest,
            digest_hex=digest_hex,
            transaction_hashes=transaction_hashes,
        )
        return receipt, digest_hex
