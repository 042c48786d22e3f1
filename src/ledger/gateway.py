from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from stellar_sdk import SorobanServer, TransactionBuilder, TransactionEnvelope, scval
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.client.requests_client import RequestsClient
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from src.runtime.types import UsageBudget


class LedgerError(RuntimeError):
    pass


@dataclass(frozen=True)
class UnsignedTransaction:
    """An assembled contract call that takes effect only once signed and submitted.

    `result` is the decoded return value the ledger reported when the call was
    simulated (the ledger run id for open, a FinalizeResult for finalize).
    `decode` maps the confirmed transaction's return value to the same shape, so
    the caller can prefer what the ledger actually applied.
    """

    method: str
    envelope_xdr: str
    result: Any
    decode: Callable[[Any], Any] | None = field(default=None, repr=False, compare=False)

    def confirmed_result(self, return_value: Any) -> Any:
        """Decode the confirmed return value; fall back to the simulated result without one."""
        if return_value is None or self.decode is None:
            return self.result
        return self.decode(return_value)


@dataclass(frozen=True)
class SubmittedTransaction:
    hash: str
    return_value: Any = None


@dataclass(frozen=True)
class FinalizeResult:
    run_id: int
    actual_charge: int
    refund: int
    developer: str


class LedgerGateway(Protocol):
    def open_run(
        self, *, user: str, caller: str, agent_id: int, rate_version: int, budgets: UsageBudget
    ) -> UnsignedTransaction: ...

    def finalize_run(
        self, *, run_id: int, runner: str, rate_version: int, usage: UsageBudget, output_hash: bytes
    ) -> UnsignedTransaction: ...

    def latest_rate_version(self, agent_id: int) -> int: ...

    def submit(self, signed_envelope_xdr: str) -> SubmittedTransaction: ...


def _usage_to_scval(usage: UsageBudget) -> stellar_xdr.SCVal:
    return scval.to_struct({k: scval.to_int128(int(v)) for k, v in usage.to_contract().items()})


def _decode_run_id(value: stellar_xdr.SCVal) -> int:
    try:
        return int(scval.from_uint64(value))
    except Exception as e:
        raise LedgerError(f"Malformed open_run result: {e}") from e


def _return_value_from_meta(meta: Any) -> stellar_xdr.SCVal | None:
    """Soroban return value from a TransactionMeta (v3 or v4), or None."""
    for version in ("v4", "v3"):
        body = getattr(meta, version, None)
        soroban_meta = getattr(body, "soroban_meta", None)
        if soroban_meta is not None and getattr(soroban_meta, "return_value", None) is not None:
            return soroban_meta.return_value
    return None


def _confirmed_return_value(got: Any) -> stellar_xdr.SCVal | None:
    meta_xdr = getattr(got, "result_meta_xdr", None)
    if not meta_xdr:
        return None
    try:
        meta = stellar_xdr.TransactionMeta.from_xdr(meta_xdr)
    except Exception as e:
        raise LedgerError(f"Malformed transaction meta: {e}") from e
    return _return_value_from_meta(meta)


def _decode_finalize_result(value: stellar_xdr.SCVal) -> FinalizeResult:
    try:
        fields = scval.from_struct(value)
        return FinalizeResult(
            run_id=int(scval.from_uint64(fields["run_id"])),
            actual_charge=int(scval.from_int128(fields["actual_charge"])),
            refund=int(scval.from_int128(fields["refund"])),
            developer=str(scval.from_address(fields["developer"]).address),
        )
    except Exception as e:
        raise LedgerError(f"Malformed finalize_run result: {e}") from e


class SorobanLedgerGateway:
    """Ledger gateway backed by the vault and registry contracts over Soroban RPC.

    Every HTTP request is bounded by `rpc_timeout_s`; confirmation polling after
    submission is bounded by `submit_timeout_s`.
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        network_passphrase: str,
        vault_contract_id: str,
        registry_contract_id: str,
        source_public_key: str,
        rpc_timeout_s: float = 30.0,
        submit_timeout_s: float = 60.0,
        poll_interval_s: float = 1.0,
        base_fee: int = 100,
        server: SorobanServer | None = None,
    ) -> None:
        self.network_passphrase = network_passphrase
        self._vault_contract_id = vault_contract_id
        self._registry_contract_id = registry_contract_id
        self._source_public_key = source_public_key
        self._rpc_timeout_s = float(rpc_timeout_s)
        self._submit_timeout_s = float(submit_timeout_s)
        self._poll_interval_s = float(poll_interval_s)
        self._base_fee = int(base_fee)
        timeout = max(1, int(round(self._rpc_timeout_s)))
        self._server = server or SorobanServer(
            rpc_url,
            client=RequestsClient(request_timeout=timeout, post_timeout=float(self._rpc_timeout_s)),
        )

    def _build(self, contract_id: str, method: str, parameters: list[stellar_xdr.SCVal]) -> Any:
        source = self._server.load_account(self._source_public_key)
        return (
            TransactionBuilder(source, self.network_passphrase, base_fee=self._base_fee)
            .append_invoke_contract_function_op(
                contract_id=contract_id,
                function_name=method,
                parameters=parameters,
            )
            .set_timeout(max(1, int(self._submit_timeout_s)))
            .build()
        )

    def _simulate(self, tx: Any, *, method: str) -> stellar_xdr.SCVal:
        sim = self._server.simulate_transaction(tx)
        if sim.error:
            raise LedgerError(f"{method} simulation failed: {sim.error}")
        if not sim.results:
            raise LedgerError(f"{method} simulation returned no result")
        return stellar_xdr.SCVal.from_xdr(sim.results[0].xdr)

    def _assemble(self, contract_id: str, method: str, parameters: list[stellar_xdr.SCVal]) -> tuple[str, stellar_xdr.SCVal]:
        try:
            tx = self._build(contract_id, method, parameters)
            value = self._simulate(tx, method=method)
            prepared = self._server.prepare_transaction(tx)
            return prepared.to_xdr(), value
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"{method} failed: {e}") from e

    def open_run(
        self, *, user: str, caller: str, agent_id: int, rate_version: int, budgets: UsageBudget
    ) -> UnsignedTransaction:
        envelope_xdr, value = self._assemble(
            self._vault_contract_id,
            "open_run",
            [
                scval.to_address(user),
                scval.to_address(caller),
                scval.to_uint32(int(agent_id)),
                scval.to_uint32(int(rate_version)),
                _usage_to_scval(budgets),
            ],
        )
        return UnsignedTransaction(
            method="open_run",
            envelope_xdr=envelope_xdr,
            result=_decode_run_id(value),
            decode=_decode_run_id,
        )

    def finalize_run(
        self, *, run_id: int, runner: str, rate_version: int, usage: UsageBudget, output_hash: bytes
    ) -> UnsignedTransaction:
        if len(output_hash) != 32:
            raise LedgerError(f"output_hash must be 32 bytes, got {len(output_hash)}")
        envelope_xdr, value = self._assemble(
            self._vault_contract_id,
            "finalize_run",
            [
                scval.to_uint64(int(run_id)),
                scval.to_address(runner),
                scval.to_uint32(int(rate_version)),
                _usage_to_scval(usage),
                scval.to_bytes(bytes(output_hash)),
            ],
        )
        return UnsignedTransaction(
            method="finalize_run",
            envelope_xdr=envelope_xdr,
            result=_decode_finalize_result(value),
            decode=_decode_finalize_result,
        )

    def latest_rate_version(self, agent_id: int) -> int:
        try:
            tx = self._build(self._registry_contract_id, "latest_rate_version", [scval.to_uint32(int(agent_id))])
            value = self._simulate(tx, method="latest_rate_version")
            return int(scval.from_uint32(value))
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"latest_rate_version failed: {e}") from e

    def submit(self, signed_envelope_xdr: str) -> SubmittedTransaction:
        try:
            envelope = TransactionEnvelope.from_xdr(signed_envelope_xdr, self.network_passphrase)
            sent = self._server.send_transaction(envelope)
        except Exception as e:
            raise LedgerError(f"send_transaction failed: {e}") from e

        if sent.status == SendTransactionStatus.ERROR:
            raise LedgerError(f"Transaction {sent.hash} rejected: {sent.error_result_xdr}")

        deadline = time.monotonic() + self._submit_timeout_s
        while True:
            try:
                got = self._server.get_transaction(sent.hash)
            except Exception as e:
                raise LedgerError(f"get_transaction failed for {sent.hash}: {e}") from e
            if got.status == GetTransactionStatus.SUCCESS:
                return SubmittedTransaction(hash=str(sent.hash), return_value=_confirmed_return_value(got))
            if got.status == GetTransactionStatus.FAILED:
                raise LedgerError(f"Transaction {sent.hash} failed on ledger: {got.result_xdr}")
            if time.monotonic() >= deadline:
                raise LedgerError(
                    f"Transaction {sent.hash} not confirmed within {self._submit_timeout_s:.0f}s"
                )
            time.sleep(self._poll_interval_s)
