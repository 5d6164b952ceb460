from __future__ import annotations

from typing import List, Optional

import pytest

from conftest import CARTRIDGE, PUBLISHER
from cartledger.cancellation import CancellationToken
from cartledger.errors import Cancelled
from cartledger.ledger.client import LedgerTx
from cartledger.ledger.memory import InMemoryLedger
from cartledger.ledger.paging import MAX_DUPLICATE_PAGES, fetch_all_transactions


def _tx(h: str, height: int = 1) -> LedgerTx:
    return LedgerTx(hash=h, height=height, sender=PUBLISHER, recipient=CARTRIDGE, payload=b"")


class _ScriptedPages:
    """Returns the scripted pages in order, ignoring the cursor; repeats the last one."""

    def __init__(self, pages: List[List[LedgerTx]]) -> None:
        self.pages = pages
        self.cursors: List[Optional[str]] = []

    def get_transactions_by_address(self, address: str, page_size: int, cursor: Optional[str] = None) -> List[LedgerTx]:
        self.cursors.append(cursor)
        i = min(len(self.cursors) - 1, len(self.pages) - 1)
        return list(self.pages[i])


def test_repeated_page_is_skipped_and_each_tx_returned_once() -> None:
    a = [_tx("a1"), _tx("a2"), _tx("a3")]
    b = [_tx("b1"), _tx("b2"), _tx("b3")]
    c = [_tx("c1")]
    client = _ScriptedPages([a, b, b, c])

    txs = fetch_all_transactions(client, CARTRIDGE, page_size=3, max_pages=10)

    assert [t.hash for t in txs] == ["a1", "a2", "a3", "b1", "b2", "b3", "c1"]
    # The stuck page moves the cursor to its first hash.
    assert client.cursors == [None, "a3", "b3", "b1"]


def test_stops_after_consecutive_pages_with_nothing_new() -> None:
    a = [_tx("a1"), _tx("a2")]
    client = _ScriptedPages([a])

    txs = fetch_all_transactions(client, CARTRIDGE, page_size=2, max_pages=50)

    assert [t.hash for t in txs] == ["a1", "a2"]
    assert len(client.cursors) == 1 + MAX_DUPLICATE_PAGES


def test_max_pages_bounds_the_walk() -> None:
    class _Endless:
        calls = 0

        def get_transactions_by_address(self, address, page_size, cursor=None):
            self.calls += 1
            return [_tx(f"p{self.calls}-{i}") for i in range(page_size)]

    client = _Endless()
    txs = fetch_all_transactions(client, CARTRIDGE, page_size=4, max_pages=3)

    assert client.calls == 3
    assert len(txs) == 12


def test_empty_first_page() -> None:
    client = _ScriptedPages([[]])
    assert fetch_all_transactions(client, CARTRIDGE, page_size=10) == []
    assert client.cursors == [None]


def test_walks_memory_ledger_newest_first() -> None:
    ledger = InMemoryLedger()
    for i in range(7):
        ledger.append(sender=PUBLISHER, recipient=CARTRIDGE, payload=bytes([i]))

    pages = []
    txs = fetch_all_transactions(
        ledger,
        CARTRIDGE,
        page_size=3,
        on_page=lambda n, size, new: pages.append((n, size, new)),
    )

    assert [t.payload for t in txs] == [bytes([i]) for i in range(6, -1, -1)]
    assert pages == [(1, 3, 3), (2, 3, 3), (3, 1, 1)]


def test_cancelled_before_first_page() -> None:
    token = CancellationToken()
    token.cancel()
    client = _ScriptedPages([[_tx("a")]])

    with pytest.raises(Cancelled):
        fetch_all_transactions(client, CARTRIDGE, cancel=token)
    assert client.cursors == []


def test_rejects_bad_bounds() -> None:
    with pytest.raises(ValueError):
        fetch_all_transactions(_ScriptedPages([[]]), CARTRIDGE, page_size=0)
    with pytest.raises(ValueError):
        fetch_all_transactions(_ScriptedPages([[]]), CARTRIDGE, max_pages=0)
