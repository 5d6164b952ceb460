"""
Ledger access layer

  - client: LedgerTx, the LedgerClient contract, backend field normalization
  - rpc: JSON-RPC over HTTP
  - memory: in-process ledger for tests and dry runs
  - paging: deduplicating newest-first history walk
"""

from __future__ import annotations

from cartledger.ledger.client import LedgerClient, LedgerTx, normalize_transaction
from cartledger.ledger.memory import InMemoryLedger
from cartledger.ledger.paging import fetch_all_transactions
from cartledger.ledger.rpc import JsonRpcLedger

__all__ = [
    "InMemoryLedger",
    "JsonRpcLedger",
    "LedgerClient",
    "LedgerTx",
    "fetch_all_transactions",
    "normalize_transaction",
]
