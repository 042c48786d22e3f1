from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from stellar_sdk import Keypair, TransactionEnvelope

from src.ledger.gateway import LedgerGateway, SubmittedTransaction, UnsignedTransaction


class SigningError(RuntimeError):
    pass


@dataclass(frozen=True)
class SignedEnvelope:
    xdr: str
    hash: str


class Signer(Protocol):
    public_key: str

    def sign(self, envelope_xdr: str, network_passphrase: str) -> SignedEnvelope: ...


def keypair_from_secret(secret: str) -> Keypair:
    try:
        return Keypair.from_secret(secret)
    except Exception as e:
        raise SigningError("Runner secret must be a valid Ed25519 secret seed.") from e


class KeypairSigner:
    """Signs envelopes with the runner's own keypair, derived once from its secret."""

    def __init__(self, secret: str) -> None:
        self._keypair = keypair_from_secret(secret)
        self.public_key = self._keypair.public_key

    def sign(self, envelope_xdr: str, network_passphrase: str) -> SignedEnvelope:
        try:
            envelope = TransactionEnvelope.from_xdr(envelope_xdr, network_passphrase)
            envelope.sign(self._keypair)
            return SignedEnvelope(xdr=envelope.to_xdr(), hash=envelope.hash_hex())
        except Exception as e:
            raise SigningError(f"Unable to sign transaction envelope: {e}") from e


class TransactionSigner:
    """Signs an assembled transaction and submits it through the gateway."""

    def __init__(self, *, signer: Signer, gateway: LedgerGateway, network_passphrase: str) -> None:
        self._signer = signer
        self._gateway = gateway
        self._network_passphrase = network_passphrase

    @property
    def public_key(self) -> str:
        return self._signer.public_key

    def sign_and_submit(
        self, tx: UnsignedTransaction, *, network_passphrase: str | None = None
    ) -> SubmittedTransaction:
        """Sign and submit; the returned hash is the signed envelope's own when known."""
        signed = self._signer.sign(tx.envelope_xdr, network_passphrase or self._network_passphrase)
        submitted = self._gateway.submit(signed.xdr)
        return SubmittedTransaction(hash=signed.hash or submitted.hash, return_value=submitted.return_value)
