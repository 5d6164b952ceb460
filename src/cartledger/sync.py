"""Download/sync pipeline: ledger history at a cartridge identity -> verified bytes.

    fetch (paged, deduped) -> publisher filter -> newest CART by height
      -> cache check -> collect DATA (first seen per index) -> reassemble
      -> verify sha256 -> cache put

A missing chunk is reported as IncompleteData with found/expected counts and
reassembly is never attempted. Unconfirmed transactions are the usual cause,
so the caller can simply retry later.

sync_from_manifest() skips the paged history scan and reads only the
transactions an upload manifest lists, one hash lookup each.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from cartledger.cancellation import CancellationToken
from cartledger.chunker import count_found, missing_indices, reassemble, sha256_hex, verify_digest
from cartledger.codec.address import decode_address, normalize_address
from cartledger.codec.records import (
    MAX_CARTRIDGE_SIZE,
    MAX_CHUNK_SIZE,
    CartridgeHeader,
    decode_cart,
    decode_data,
)
from cartledger.errors import CartError, FormatError, HeaderNotFound, IncompleteData, IntegrityError, NetworkError
from cartledger.ledger.client import LedgerClient, LedgerTx, same_address
from cartledger.ledger.paging import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, fetch_all_transactions
from cartledger.manifest import Manifest
from cartledger.storage.cache import CartridgeCache, cache_key
from cartledger.structured_logging import log_event

_log = logging.getLogger("cartledger.sync")


@dataclass(frozen=True)
class HeaderInfo:
    header: CartridgeHeader
    tx_hash: str
    height: int
    sender: str


@dataclass(frozen=True)
class HeaderLookup:
    """Result of a header-only scan; counts are reported even when no header exists."""

    address: str
    header: Optional[HeaderInfo]
    transactions: int
    data_records: int
    other_records: int

    @property
    def found(self) -> bool:
        return self.header is not None


@dataclass
class SyncProgress:
    phase: str = "idle"
    pages: int = 0
    transactions: int = 0
    chunks_found: int = 0
    chunks_expected: int = 0


@dataclass(frozen=True)
class SyncResult:
    address: str
    header: CartridgeHeader
    data: bytes
    from_cache: bool
    header_tx_hash: str = ""
    transactions: int = 0
    chunks_found: int = 0
    chunks_expected: int = 0

    @property
    def sha256(self) -> str:
        return self.header.sha256_hex


@dataclass(frozen=True)
class ChunkStatus:
    """Chunk completeness for the header in ``info``.

    ``missing`` lists at most the first MISSING_REPORT_LIMIT absent indices.
    """

    lookup: HeaderLookup
    info: HeaderInfo
    found: int
    expected: int
    missing: Tuple[int, ...]

    @property
    def complete(self) -> bool:
        return self.found >= self.expected


ProgressHook = Callable[[SyncProgress], None]


def _valid_header(h: CartridgeHeader) -> bool:
    return 1 <= h.chunk_size <= MAX_CHUNK_SIZE and h.total_size <= MAX_CARTRIDGE_SIZE


def filter_by_publisher(txs: List[LedgerTx], publisher: Optional[str]) -> List[LedgerTx]:
    if not publisher:
        return list(txs)
    return [t for t in txs if same_address(t.sender, publisher)]


def find_header(txs: List[LedgerTx]) -> Optional[HeaderInfo]:
    """Newest valid CART record by block height (scan order breaks ties)."""
    ordered = sorted(enumerate(txs), key=lambda it: (-it[1].height, it[0]))
    for _, tx in ordered:
        h = decode_cart(tx.payload)
        if h is not None and _valid_header(h):
            return HeaderInfo(header=h, tx_hash=tx.hash, height=tx.height, sender=tx.sender)
    return None


def collect_chunks(txs: List[LedgerTx], cartridge_id: int) -> Dict[int, bytes]:
    """Index -> bytes for DATA records of ``cartridge_id``; first seen per index wins."""
    out: Dict[int, bytes] = {}
    for tx in txs:
        c = decode_data(tx.payload)
        if c is None or c.cartridge_id != cartridge_id:
            continue
        if c.chunk_index not in out:
            out[c.chunk_index] = c.data
    return out


class SyncPipeline:
    def __init__(
        self,
        ledger: LedgerClient,
        cache: Optional[CartridgeCache] = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        strict_checksum: bool = False,
        cancel: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.page_size = int(page_size)
        self.max_pages = int(max_pages)
        self.strict_checksum = bool(strict_checksum)
        self.cancel = cancel or CancellationToken()
        self.on_progress = on_progress
        self.progress = SyncProgress()

    @classmethod
    def from_config(cls, ledger: LedgerClient, cfg, cache: Optional[CartridgeCache] = None, **kwargs) -> "SyncPipeline":
        opts = dict(page_size=cfg.page_size, max_pages=cfg.max_pages, strict_checksum=cfg.strict_checksum)
        opts.update(kwargs)
        return cls(ledger, cache, **opts)

    def _phase(self, phase: str) -> None:
        self.progress.phase = phase
        if self.on_progress is not None:
            self.on_progress(self.progress)

    def _on_page(self, page_no: int, page_len: int, new_count: int) -> None:
        self.progress.pages = page_no
        self.progress.transactions += new_count
        if self.on_progress is not None:
            self.on_progress(self.progress)

    def fetch(self, address: str, publisher: Optional[str] = None) -> List[LedgerTx]:
        decode_address(address, strict=self.strict_checksum)
        self._phase("fetching")
        txs = fetch_all_transactions(
            self.ledger,
            normalize_address(address),
            page_size=self.page_size,
            max_pages=self.max_pages,
            cancel=self.cancel,
            on_page=self._on_page,
        )
        return filter_by_publisher(txs, publisher)

    def load_header(self, address: str, publisher: Optional[str] = None) -> HeaderLookup:
        txs = self.fetch(address, publisher)
        return self._lookup(normalize_address(address), txs)

    def _lookup(self, address: str, txs: List[LedgerTx]) -> HeaderLookup:
        info = find_header(txs)
        data_records = sum(1 for t in txs if decode_data(t.payload) is not None)
        lookup = HeaderLookup(
            address=address,
            header=info,
            transactions=len(txs),
            data_records=data_records,
            other_records=len(txs) - data_records - (1 if info is not None else 0),
        )
        if info is not None:
            log_event(
                _log,
                "sync_header_found",
                address=address,
                cartridge_id=info.header.cartridge_id,
                total_size=info.header.total_size,
                chunks=info.header.expected_chunks,
                height=info.height,
                tx_hash=info.tx_hash,
            )
        else:
            log_event(
                _log,
                "sync_header_missing",
                level=logging.WARNING,
                address=address,
                transactions=len(txs),
                data_records=data_records,
            )
        return lookup

    def inspect(self, address: str, publisher: Optional[str] = None) -> ChunkStatus:
        """Header plus chunk completeness, without reassembling anything."""
        addr = normalize_address(address)
        txs = self.fetch(addr, publisher)
        lookup = self._lookup(addr, txs)
        if lookup.header is None:
            raise HeaderNotFound(address=addr, data_records=lookup.data_records, transactions=lookup.transactions)
        header = lookup.header.header
        chunks = collect_chunks(txs, header.cartridge_id)
        expected = header.expected_chunks
        return ChunkStatus(
            lookup=lookup,
            info=lookup.header,
            found=count_found(chunks, expected),
            expected=expected,
            missing=tuple(missing_indices(chunks, expected)),
        )

    def cached(self, header: CartridgeHeader) -> bool:
        """True if a copy that still verifies is in the cache."""
        return self._from_cache(header) is not None

    # ---- cache ----

    def _from_cache(self, header: CartridgeHeader) -> Optional[bytes]:
        if self.cache is None:
            return None
        digest = header.sha256_hex
        data = self.cache.get(header.cartridge_id, digest)
        if data is None:
            return None
        if len(data) == header.total_size and sha256_hex(data) == digest:
            log_event(_log, "cache_hit", key=cache_key(header.cartridge_id, digest), size=len(data))
            return data
        self.cache.delete(header.cartridge_id, digest)
        log_event(
            _log,
            "cache_purged",
            level=logging.WARNING,
            key=cache_key(header.cartridge_id, digest),
            size=len(data),
            reason="reverify_failed",
        )
        return None

    # ---- sync ----

    def sync(
        self,
        address: str,
        publisher: Optional[str] = None,
        *,
        known_header: Optional[CartridgeHeader] = None,
        filename: str = "",
    ) -> SyncResult:
        """Reconstruct and verify the cartridge at ``address``.

        With ``known_header`` (e.g. from a catalog entry) a verified cache hit
        returns without touching the ledger.
        """
        addr = normalize_address(address)

        if known_header is not None:
            cached = self._from_cache(known_header)
            if cached is not None:
                self._phase("complete")
                return SyncResult(address=addr, header=known_header, data=cached, from_cache=True)

        txs = self.fetch(addr, publisher)
        lookup = self._lookup(addr, txs)
        if lookup.header is None:
            self._phase("error")
            raise HeaderNotFound(address=addr, data_records=lookup.data_records, transactions=lookup.transactions)

        info = lookup.header
        header = info.header
        self.progress.chunks_expected = header.expected_chunks

        if known_header is None or known_header != header:
            cached = self._from_cache(header)
            if cached is not None:
                self._phase("complete")
                return SyncResult(
                    address=addr,
                    header=header,
                    data=cached,
                    from_cache=True,
                    header_tx_hash=info.tx_hash,
                    transactions=len(txs),
                )

        return self._assemble(addr, header, txs, header_tx_hash=info.tx_hash, filename=filename)

    def _assemble(
        self,
        addr: str,
        header: CartridgeHeader,
        txs: List[LedgerTx],
        *,
        header_tx_hash: str,
        filename: str,
    ) -> SyncResult:
        self._phase("collecting")
        chunks = collect_chunks(txs, header.cartridge_id)
        expected = header.expected_chunks
        found = count_found(chunks, expected)
        self.progress.chunks_expected = expected
        self.progress.chunks_found = found

        if found < expected:
            missing = missing_indices(chunks, expected)
            log_event(
                _log,
                "sync_partial",
                level=logging.WARNING,
                address=addr,
                cartridge_id=header.cartridge_id,
                found=found,
                expected=expected,
                missing_head=missing[:16],
            )
            self._phase("partial")
            raise IncompleteData(found=found, expected=expected, missing=missing)

        self._phase("verifying")
        try:
            data = reassemble(chunks, header.total_size, header.chunk_size)
            verify_digest(data, header.sha256_hex)
        except IntegrityError as e:
            e.details["cartridge_id"] = header.cartridge_id
            if self.cache is not None:
                self.cache.delete(header.cartridge_id, header.sha256_hex)
            self._phase("error")
            raise
        except CartError:
            self._phase("error")
            raise

        if self.cache is not None:
            self.cache.put(
                header.cartridge_id,
                header.sha256_hex,
                data,
                {
                    "filename": filename,
                    "cartridge_id": header.cartridge_id,
                    "sha256": header.sha256_hex,
                    "size": len(data),
                    "address": addr,
                    "header_tx_hash": header_tx_hash,
                },
            )

        log_event(
            _log,
            "sync_complete",
            address=addr,
            cartridge_id=header.cartridge_id,
            size=len(data),
            chunks=expected,
            transactions=len(txs),
        )
        self._phase("complete")
        return SyncResult(
            address=addr,
            header=header,
            data=data,
            from_cache=False,
            header_tx_hash=header_tx_hash,
            transactions=len(txs),
            chunks_found=found,
            chunks_expected=expected,
        )

    # ---- manifest ----

    def fetch_by_hash(self, hashes: List[str]) -> Tuple[List[LedgerTx], List[str]]:
        """Fetch each transaction by hash, in order, once per distinct hash.

        Returns ``(transactions, unconfirmed)``. A hash the node does not know,
        reports without a block height, or fails to return is unconfirmed. When
        every lookup fails with a network error, that error is raised.
        """
        self._phase("fetching")
        txs: List[LedgerTx] = []
        unconfirmed: List[str] = []
        last_error: Optional[NetworkError] = None
        errors = 0
        seen = set()
        for h in hashes:
            if h in seen:
                continue
            seen.add(h)
            self.cancel.raise_if_cancelled("fetch_tx")
            try:
                tx = self.ledger.get_transaction_by_hash(h)
            except NetworkError as e:
                last_error = e
                errors += 1
                unconfirmed.append(h)
                log_event(_log, "sync_tx_unavailable", level=logging.WARNING, tx_hash=h, error=e.code)
                continue
            if tx is None or tx.height <= 0:
                unconfirmed.append(h)
                continue
            txs.append(tx)
            self.progress.transactions = len(txs)

        if last_error is not None and errors == len(seen):
            self._phase("error")
            raise last_error
        return txs, unconfirmed

    def sync_from_manifest(self, manifest: Manifest) -> SyncResult:
        """Rebuild the cartridge described by an upload manifest.

        Only the transactions listed in ``expected_tx_hashes`` are read, one
        hash lookup each, so the cartridge identity's full history is never
        paged. The manifest's size, chunk size and digest define what a
        complete cartridge is. When ``sender_address`` is set, records from
        other senders are ignored.
        """
        header = manifest_header(manifest)
        addr = normalize_address(manifest.cartridge_address) if manifest.cartridge_address else ""
        self.progress.chunks_expected = header.expected_chunks

        cached = self._from_cache(header)
        if cached is not None:
            self._phase("complete")
            return SyncResult(address=addr, header=header, data=cached, from_cache=True)

        txs, unconfirmed = self.fetch_by_hash(manifest.expected_tx_hashes)
        if manifest.sender_address:
            txs = filter_by_publisher(txs, manifest.sender_address)

        header_tx_hash = ""
        on_ledger = find_header(txs)
        if on_ledger is not None and on_ledger.header.cartridge_id == header.cartridge_id:
            if _same_content(on_ledger.header, header):
                header = on_ledger.header
                header_tx_hash = on_ledger.tx_hash
            else:
                log_event(
                    _log,
                    "manifest_header_mismatch",
                    level=logging.WARNING,
                    cartridge_id=header.cartridge_id,
                    tx_hash=on_ledger.tx_hash,
                    ledger_sha256=on_ledger.header.sha256_hex,
                    manifest_sha256=header.sha256_hex,
                )

        log_event(
            _log,
            "sync_manifest",
            cartridge_id=header.cartridge_id,
            listed=len(manifest.expected_tx_hashes),
            fetched=len(txs),
            unconfirmed=len(unconfirmed),
        )
        return self._assemble(addr, header, txs, header_tx_hash=header_tx_hash, filename=manifest.filename)


def _same_content(a: CartridgeHeader, b: CartridgeHeader) -> bool:
    return (a.total_size, a.chunk_size, a.sha256) == (b.total_size, b.chunk_size, b.sha256)


def manifest_header(manifest: Manifest) -> CartridgeHeader:
    """The CartridgeHeader a manifest implies; FormatError if its fields are unusable."""
    if not manifest.expected_tx_hashes:
        raise FormatError("manifest lists no transaction hashes (dry-run upload?)")
    if not 0 <= manifest.cartridge_id <= 0xFFFFFFFF:
        raise FormatError("manifest cartridge_id out of range", details={"cartridge_id": manifest.cartridge_id})
    if not 1 <= manifest.chunk_size <= MAX_CHUNK_SIZE:
        raise FormatError("manifest chunk_size out of range", details={"chunk_size": manifest.chunk_size})
    if not 0 <= manifest.total_size <= MAX_CARTRIDGE_SIZE:
        raise FormatError("manifest total_size out of range", details={"total_size": manifest.total_size})
    try:
        digest = bytes.fromhex(manifest.sha256)
    except ValueError:
        digest = b""
    if len(digest) != 32:
        raise FormatError("manifest sha256 must be 64 hex characters")
    return CartridgeHeader(
        schema=0,
        platform=0,
        chunk_size=manifest.chunk_size,
        flags=0,
        cartridge_id=manifest.cartridge_id,
        total_size=manifest.total_size,
        sha256=digest,
    )
