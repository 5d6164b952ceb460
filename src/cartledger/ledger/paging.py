from __future__ import annotations

import logging
from typing import Callable, List, Optional, Set

from cartledger.cancellation import CancellationToken
from cartledger.ledger.client import LedgerClient, LedgerTx
from cartledger.structured_logging import log_event

DEFAULT_PAGE_SIZE = 500
DEFAULT_MAX_PAGES = 100
MAX_DUPLICATE_PAGES = 3

_log = logging.getLogger("cartledger.sync")

PageHook = Callable[[int, int, int], None]


def fetch_all_transactions(
    client: LedgerClient,
    address: str,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
    cancel: Optional[CancellationToken] = None,
    on_page: Optional[PageHook] = None,
) -> List[LedgerTx]:
    """Walk an address history newest-first and return each transaction once.

    Termination (whichever comes first):
      - an empty or short page
      - MAX_DUPLICATE_PAGES consecutive pages with nothing new
      - ``max_pages`` pages

    A page that comes back with the same last hash as the cursor would pin the
    walk in place; the next request then starts at the page's first hash.

    ``on_page(page_no, page_len, new_count)`` is called after every page.
    """
    if page_size <= 0:
        raise ValueError("page_size must be > 0")
    if max_pages <= 0:
        raise ValueError("max_pages must be > 0")

    seen: Set[str] = set()
    out: List[LedgerTx] = []
    cursor: Optional[str] = None
    dup_pages = 0
    pages = 0

    while pages < max_pages:
        if cancel is not None:
            cancel.raise_if_cancelled("fetch_page")

        page = client.get_transactions_by_address(address, page_size, cursor)
        pages += 1

        new_count = 0
        for tx in page:
            if tx.hash in seen:
                continue
            seen.add(tx.hash)
            out.append(tx)
            new_count += 1

        log_event(
            _log,
            "sync_page",
            level=logging.DEBUG,
            address=address,
            page=pages,
            size=len(page),
            new=new_count,
            total=len(out),
        )
        if on_page is not None:
            on_page(pages, len(page), new_count)

        if not page:
            break

        if new_count == 0:
            dup_pages += 1
            if dup_pages >= MAX_DUPLICATE_PAGES:
                log_event(_log, "sync_page_stalled", level=logging.WARNING, address=address, page=pages)
                break
        else:
            dup_pages = 0

        if len(page) < page_size:
            break

        last = page[-1].hash
        cursor = page[0].hash if last == cursor else last

    return out
