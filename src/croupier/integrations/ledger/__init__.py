# Ledger Interactions
# Betting, payout and mining ledgers over JSON-RPC

from croupier.integrations.ledger.base import LedgerAdapter, LedgerTimeouts, TxReceipt
from croupier.integrations.ledger.cache import TTLCache
from croupier.integrations.ledger.web3_ledger import (
    MINING_BINDING,
    PAYOUT_BINDING,
    ContractBinding,
    Web3LedgerAdapter,
)

__all__ = [
    # Interface
    "LedgerAdapter",
    "LedgerTimeouts",
    "TxReceipt",
    # web3 implementation
    "ContractBinding",
    "MINING_BINDING",
    "PAYOUT_BINDING",
    "TTLCache",
    "Web3LedgerAdapter",
]
