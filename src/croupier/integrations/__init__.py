"""External system adapters - the on-chain ledgers."""

from croupier.integrations.ledger import LedgerAdapter, TxReceipt, Web3LedgerAdapter

__all__ = [
    "LedgerAdapter",
    "TxReceipt",
    "Web3LedgerAdapter",
]
