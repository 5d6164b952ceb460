from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from cartledger.codec.address import normalize_address
from cartledger.errors import NetworkError
from cartledger.ledger.client import LedgerTx


@dataclass(slots=True)
class SentCall:
    sender: str
    recipient: str
    payload: bytes
    value: int
    fee: int
    validity_start_height: int


class InMemoryLedger:
    """
    In-process ledger used by unit tests and dry harnesses.

    - Append-only; each accepted transaction gets the next height
    - Address queries return newest-first with an exclusive hash cursor
    - Sends can be scripted to fail (see fail_next / fail_when)
    """

    def __init__(self, *, consensus: bool = True, height: int = 1) -> None:
        self.consensus = bool(consensus)
        self.height = int(height)
        self.unlocked: Set[str] = set()
        self.sent: List[SentCall] = []
        self._txs: List[LedgerTx] = []
        self._by_hash: Dict[str, LedgerTx] = {}
        self._fail_budget = 0
        self._fail_pred: Optional[Callable[[SentCall], bool]] = None
        self.query_calls = 0

    # ---- query contract ----

    def is_consensus_established(self) -> bool:
        return self.consensus

    def is_account_unlocked(self, address: str) -> bool:
        return normalize_address(address) in self.unlocked

    def get_block_number(self) -> int:
        return self.height

    def get_transaction_by_hash(self, tx_hash: str) -> Optional[LedgerTx]:
        self.query_calls += 1
        return self._by_hash.get(tx_hash)

    def get_transactions_by_address(
        self, address: str, page_size: int, cursor: Optional[str] = None
    ) -> List[LedgerTx]:
        self.query_calls += 1
        addr = normalize_address(address)
        matching = [t for t in reversed(self._txs) if t.recipient == addr or t.sender == addr]
        if cursor:
            hashes = [t.hash for t in matching]
            if cursor not in hashes:
                return []
            matching = matching[hashes.index(cursor) + 1 :]
        return matching[: max(0, int(page_size))]

    # ---- command contract ----

    def send_transaction(
        self,
        sender: str,
        recipient: str,
        payload: bytes,
        *,
        value: int = 1,
        fee: int = 0,
        validity_start_height: int,
    ) -> str:
        call = SentCall(
            sender=normalize_address(sender),
            recipient=normalize_address(recipient),
            payload=bytes(payload),
            value=int(value),
            fee=int(fee),
            validity_start_height=int(validity_start_height),
        )
        self.sent.append(call)

        if self._fail_budget > 0:
            self._fail_budget -= 1
            raise NetworkError("scripted send failure", code="rpc_error", details={"call": len(self.sent)})
        if self._fail_pred is not None and self._fail_pred(call):
            raise NetworkError("scripted send failure", code="rpc_error", details={"call": len(self.sent)})

        return self.append(sender=call.sender, recipient=call.recipient, payload=call.payload).hash

    # ---- helpers for tests / harness ----

    def fail_next(self, n: int) -> None:
        self._fail_budget = max(0, int(n))

    def fail_when(self, pred: Optional[Callable[[SentCall], bool]]) -> None:
        self._fail_pred = pred

    def append(self, *, sender: str, recipient: str, payload: bytes) -> LedgerTx:
        self.height += 1
        seed = f"{len(self._txs)}:{self.height}:".encode("ascii") + bytes(payload)
        tx = LedgerTx(
            hash=hashlib.sha256(seed).hexdigest(),
            height=self.height,
            sender=normalize_address(sender),
            recipient=normalize_address(recipient),
            payload=bytes(payload),
        )
        self._txs.append(tx)
        self._by_hash[tx.hash] = tx
        return tx

    def transactions(self) -> List[LedgerTx]:
        return list(self._txs)
