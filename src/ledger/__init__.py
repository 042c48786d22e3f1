"""Ledger access: contract calls on the vault/registry and transaction signing.

The runtime only sees the `LedgerGateway` and `Signer` protocols, so tests can
substitute deterministic doubles for the network and the keypair.
"""
