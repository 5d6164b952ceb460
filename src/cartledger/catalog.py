"""Catalog identity scanner.

The catalog is a well-known identity whose history is an append-only list of
CENT records. Both queries here walk the same bounded window of that history:
``scan_pages * page_size`` newest transactions. Entries older than that window
are not seen, so ``next_app_id`` may reuse an id and ``find_app_id_by_title``
may miss a title on catalogs larger than the window.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from cartledger.codec.address import encode_address, normalize_address
from cartledger.codec.records import CatalogEntry, decode_cent, fit_title
from cartledger.errors import NetworkError
from cartledger.ledger.client import LedgerClient, same_address
from cartledger.ledger.paging import DEFAULT_PAGE_SIZE, fetch_all_transactions
from cartledger.structured_logging import log_event

DEFAULT_SCAN_PAGES = 20
NOT_FOUND = 0

_log = logging.getLogger("cartledger.catalog")


def fallback_app_id(now: Optional[float] = None) -> int:
    t = time.time() if now is None else now
    return int(t) % 0xFFFFFFFF


@dataclass(frozen=True)
class CatalogRecord:
    """A CENT entry together with the transaction that carried it."""

    entry: CatalogEntry
    tx_hash: str
    height: int
    sender: str

    @property
    def cartridge_address(self) -> str:
        return encode_address(self.entry.cartridge_address)


class CatalogScanner:
    def __init__(
        self,
        ledger: LedgerClient,
        catalog_address: str,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        scan_pages: int = DEFAULT_SCAN_PAGES,
    ) -> None:
        self.ledger = ledger
        self.catalog_address = normalize_address(catalog_address)
        self.page_size = int(page_size)
        self.scan_pages = int(scan_pages)

    def entries(self, publisher: Optional[str] = None) -> List[CatalogRecord]:
        """CENT entries in scan order (newest first), optionally from one publisher only."""
        txs = fetch_all_transactions(
            self.ledger,
            self.catalog_address,
            page_size=self.page_size,
            max_pages=self.scan_pages,
        )
        out: List[CatalogRecord] = []
        for tx in txs:
            if publisher and not same_address(tx.sender, publisher):
                continue
            entry = decode_cent(tx.payload)
            if entry is None:
                continue
            out.append(CatalogRecord(entry=entry, tx_hash=tx.hash, height=tx.height, sender=tx.sender))

        log_event(
            _log,
            "catalog_scan",
            catalog=self.catalog_address,
            publisher=normalize_address(publisher) if publisher else None,
            transactions=len(txs),
            entries=len(out),
        )
        return out

    def next_app_id(self, publisher: Optional[str] = None) -> int:
        """max(appId)+1 over the scanned window, 1 for an empty catalog.

        A retrieval failure degrades to a timestamp-derived id instead of
        failing the caller.
        """
        try:
            records = self.entries(publisher)
        except NetworkError as e:
            app_id = fallback_app_id()
            log_event(
                _log,
                "catalog_fallback_id",
                level=logging.WARNING,
                catalog=self.catalog_address,
                app_id=app_id,
                error=e.code,
                message=e.message,
            )
            return app_id

        if not records:
            return 1
        return max(r.entry.app_id for r in records) + 1

    def find_app_id_by_title(self, title: str, publisher: Optional[str] = None) -> int:
        """appId of the first (newest) entry whose trimmed title matches case-insensitively.

        A query longer than the on-ledger title field also matches its own
        truncated form. Returns NOT_FOUND (0) when nothing matches.
        """
        want = (title or "").strip().lower()
        if not want:
            return NOT_FOUND
        stored = fit_title(title).strip().lower()
        for r in self.entries(publisher):
            have = r.entry.title_short.strip().lower()
            if have == want or (stored and have == stored):
                return r.entry.app_id
        return NOT_FOUND

