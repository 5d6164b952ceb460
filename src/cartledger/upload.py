"""Upload pipeline: one file -> DATA records, then CART, then CENT.

Stages run strictly in order:

    idle -> preparing -> uploading -> cart -> cent -> complete
                                (any non-terminal) -> error

The header goes out only after every chunk has been attempted, so on the read
side a present header means the chunk stream is finished. Nothing is rolled
back; records already on the ledger stay there when a later stage fails.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from cartledger.cancellation import CancellationToken
from cartledger.catalog import DEFAULT_SCAN_PAGES, NOT_FOUND, CatalogScanner, fallback_app_id
from cartledger.chunker import sha256_hex, split
from cartledger.codec.address import decode_address, normalize_address
from cartledger.codec.records import (
    DEFAULT_CHUNK_SIZE,
    MAX_CARTRIDGE_SIZE,
    CartridgeHeader,
    CatalogEntry,
    encode_cart,
    encode_cent,
    encode_data,
    parse_semver,
    platform_code,
)
from cartledger.errors import BudgetExceeded, CartError, NetworkError, PayloadTooLarge, PreconditionFailed
from cartledger.ledger.client import LedgerClient
from cartledger.ledger.paging import DEFAULT_PAGE_SIZE
from cartledger.ratelimit import RateLimiter
from cartledger.structured_logging import log_event

DEFAULT_RATE_LIMIT = 25.0
MAX_CONSECUTIVE_FAILURES = 5
MAX_FILE_SIZE = MAX_CARTRIDGE_SIZE
PROGRESS_LOG_EVERY = 50
SCHEMA_VERSION = 1

DRY_RUN_CART_HASH = "dry-run-cart-hash"
DRY_RUN_CENT_HASH = "dry-run-cent-hash"

_log = logging.getLogger("cartledger.upload")


class UploadStage(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    UPLOADING = "uploading"
    CART = "cart"
    CENT = "cent"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (UploadStage.COMPLETE, UploadStage.ERROR)


@dataclass
class UploadRequest:
    cartridge_address: str
    title: str
    semver: str = "1.0.0"
    platform: Union[str, int] = "DOS"
    cartridge_id: int = 0  # 0 = derive from the clock
    app_id: int = 0  # 0 = resolve through the catalog
    schema: int = SCHEMA_VERSION
    flags: int = 0
    filename: str = ""


@dataclass(frozen=True)
class FailedChunk:
    index: int
    message: str


@dataclass
class UploadProgress:
    stage: UploadStage = UploadStage.IDLE
    total_chunks: int = 0
    sent_chunks: int = 0
    failed_chunks: List[FailedChunk] = field(default_factory=list)
    cart_tx_hash: str = ""
    cent_tx_hash: str = ""
    current_rate: float = 0.0

    @property
    def failed_indices(self) -> List[int]:
        return [f.index for f in self.failed_chunks]

    @property
    def percent(self) -> int:
        if self.total_chunks == 0:
            return 0
        return round(self.sent_chunks * 100 / self.total_chunks)


@dataclass(frozen=True)
class UploadResult:
    cartridge_id: int
    app_id: int
    cartridge_address: str
    catalog_address: str
    sender_address: str
    sha256: str
    total_size: int
    chunk_size: int
    total_chunks: int
    sent_chunks: int
    failed_chunks: Tuple[FailedChunk, ...]
    chunk_tx_hashes: Tuple[str, ...]
    cart_tx_hash: str
    cent_tx_hash: str
    dry_run: bool
    filename: str = ""

    @property
    def complete(self) -> bool:
        return not self.failed_chunks and self.sent_chunks == self.total_chunks


ProgressHook = Callable[[UploadProgress], None]


class UploadPipeline:
    def __init__(
        self,
        ledger: Optional[LedgerClient],
        *,
        catalog_address: str,
        sender_address: str,
        rate_limiter: Optional[RateLimiter] = None,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        max_file_size: int = MAX_FILE_SIZE,
        preflight: bool = True,
        dry_run: bool = False,
        strict_checksum: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
        catalog_scan_pages: int = DEFAULT_SCAN_PAGES,
        cancel: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressHook] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ledger is None and not dry_run:
            raise ValueError("a ledger client is required unless dry_run is set")
        if max_consecutive_failures <= 0:
            raise ValueError("max_consecutive_failures must be > 0")

        self.ledger = ledger
        self.strict_checksum = bool(strict_checksum)
        decode_address(catalog_address, strict=self.strict_checksum)
        decode_address(sender_address, strict=self.strict_checksum)
        self.catalog_address = normalize_address(catalog_address)
        self.sender_address = normalize_address(sender_address)

        self.rate_limiter = rate_limiter or RateLimiter(rate_limit)
        self.chunk_size = int(chunk_size)
        self.max_consecutive_failures = int(max_consecutive_failures)
        self.max_file_size = int(max_file_size)
        self.preflight = bool(preflight)
        self.dry_run = bool(dry_run)
        self.page_size = int(page_size)
        self.catalog_scan_pages = int(catalog_scan_pages)
        self.cancel = cancel or CancellationToken()
        self.on_progress = on_progress
        self._clock = clock

        self.progress = UploadProgress()

    @classmethod
    def from_config(cls, ledger: Optional[LedgerClient], cfg, **kwargs) -> "UploadPipeline":
        opts = dict(
            catalog_address=cfg.catalog_address,
            sender_address=cfg.publisher_address,
            rate_limit=cfg.rate_limit,
            chunk_size=cfg.chunk_size,
            max_consecutive_failures=cfg.max_consecutive_failures,
            preflight=cfg.preflight,
            strict_checksum=cfg.strict_checksum,
            page_size=cfg.page_size,
            catalog_scan_pages=cfg.catalog_scan_pages,
        )
        opts.update(kwargs)
        return cls(ledger, **opts)

    @property
    def stage(self) -> UploadStage:
        return self.progress.stage

    # ---- internals ----

    def _set_stage(self, stage: UploadStage) -> None:
        self.progress.stage = stage
        log_event(_log, "upload_stage", stage=stage.value)
        self._notify()

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress)

    def _client(self) -> LedgerClient:
        if self.ledger is None:
            raise PreconditionFailed("no ledger client configured for a live upload", code="no_ledger")
        return self.ledger

    def _submit(self, recipient: str, payload: bytes, where: str) -> str:
        ledger = self._client()
        self.rate_limiter.wait(self.cancel)
        self.cancel.raise_if_cancelled(where)
        height = ledger.get_block_number()
        self.cancel.raise_if_cancelled(where)
        return ledger.send_transaction(
            self.sender_address,
            recipient,
            payload,
            value=1,
            fee=0,
            validity_start_height=height,
        )

    def _check_preconditions(self) -> None:
        ledger = self._client()
        self.cancel.raise_if_cancelled("preflight")
        if not ledger.is_consensus_established():
            raise PreconditionFailed(
                "node does not have consensus with the network",
                code="no_consensus",
            )
        self.cancel.raise_if_cancelled("preflight")
        if not ledger.is_account_unlocked(self.sender_address):
            raise PreconditionFailed(
                "sender account is locked; unlock it on the node first",
                code="account_locked",
                details={"sender": self.sender_address},
            )

    def _resolve_app_id(self, request: UploadRequest) -> int:
        if request.app_id:
            return int(request.app_id)
        if self.ledger is None:
            app_id = fallback_app_id(self._clock())
            log_event(_log, "catalog_fallback_id", app_id=app_id, reason="offline")
            return app_id

        scanner = CatalogScanner(
            self.ledger,
            self.catalog_address,
            page_size=self.page_size,
            scan_pages=self.catalog_scan_pages,
        )
        if request.title:
            try:
                existing = scanner.find_app_id_by_title(request.title, self.sender_address)
            except NetworkError as e:
                log_event(_log, "catalog_lookup_failed", level=logging.WARNING, error=e.code, message=e.message)
                existing = NOT_FOUND
            if existing != NOT_FOUND:
                log_event(_log, "upload_app_id", app_id=existing, source="title")
                return existing

        app_id = scanner.next_app_id(self.sender_address)
        log_event(_log, "upload_app_id", app_id=app_id, source="next")
        return app_id

    # ---- run ----

    def run(self, data: bytes, request: UploadRequest) -> UploadResult:
        if self.progress.stage != UploadStage.IDLE:
            raise RuntimeError("UploadPipeline instances are single-use")
        try:
            return self._run(bytes(data), request)
        except CartError as e:
            self.progress.stage = UploadStage.ERROR
            log_event(
                _log,
                "upload_aborted",
                level=logging.ERROR,
                error=e.code,
                message=e.message,
                sent=self.progress.sent_chunks,
                total=self.progress.total_chunks,
                failed=self.progress.failed_indices,
            )
            self._notify()
            raise

    def _run(self, data: bytes, request: UploadRequest) -> UploadResult:
        self._set_stage(UploadStage.PREPARING)

        if len(data) > self.max_file_size:
            raise PayloadTooLarge(
                f"file too large: {len(data)} bytes (max {self.max_file_size})",
                details={"size": len(data), "max": self.max_file_size},
            )
        cartridge_raw = decode_address(request.cartridge_address, strict=self.strict_checksum)
        cartridge_address = normalize_address(request.cartridge_address)
        semver = parse_semver(request.semver)
        platform = platform_code(request.platform)
        digest = sha256_hex(data)

        log_event(
            _log,
            "upload_started",
            filename=request.filename,
            size=len(data),
            sha256=digest,
            title=request.title,
            semver=request.semver,
            cartridge=cartridge_address,
            catalog=self.catalog_address,
            sender=self.sender_address,
            dry_run=self.dry_run,
        )

        if self.preflight and not self.dry_run:
            self._check_preconditions()

        cartridge_id = int(request.cartridge_id) or int(self._clock()) % 0xFFFFFFFF
        app_id = self._resolve_app_id(request)

        # Encode everything up front; a bad field fails before anything is sent.
        chunks = split(data, self.chunk_size, cartridge_id=cartridge_id)
        header = CartridgeHeader(
            schema=request.schema,
            platform=platform,
            chunk_size=self.chunk_size,
            flags=request.flags,
            cartridge_id=cartridge_id,
            total_size=len(data),
            sha256=bytes.fromhex(digest),
        )
        entry = CatalogEntry(
            schema=request.schema,
            platform=platform,
            flags=request.flags,
            app_id=app_id,
            semver=semver,
            cartridge_address=cartridge_raw,
            title_short=request.title,
        )
        cart_payload = encode_cart(header)
        cent_payload = encode_cent(entry)

        self.progress.total_chunks = len(chunks)
        self._set_stage(UploadStage.UPLOADING)
        chunk_hashes = self._send_chunks(chunks, cartridge_address)

        self._set_stage(UploadStage.CART)
        if self.dry_run:
            self.progress.cart_tx_hash = DRY_RUN_CART_HASH
        else:
            self.progress.cart_tx_hash = self._submit(cartridge_address, cart_payload, "cart")
        log_event(_log, "upload_header_sent", tx_hash=self.progress.cart_tx_hash, cartridge_id=cartridge_id)

        self._set_stage(UploadStage.CENT)
        if self.dry_run:
            self.progress.cent_tx_hash = DRY_RUN_CENT_HASH
        else:
            self.progress.cent_tx_hash = self._submit(self.catalog_address, cent_payload, "cent")
        log_event(_log, "upload_catalog_sent", tx_hash=self.progress.cent_tx_hash, app_id=app_id)

        self._set_stage(UploadStage.COMPLETE)

        result = UploadResult(
            cartridge_id=cartridge_id,
            app_id=app_id,
            cartridge_address=cartridge_address,
            catalog_address=self.catalog_address,
            sender_address=self.sender_address,
            sha256=digest,
            total_size=len(data),
            chunk_size=self.chunk_size,
            total_chunks=self.progress.total_chunks,
            sent_chunks=self.progress.sent_chunks,
            failed_chunks=tuple(self.progress.failed_chunks),
            chunk_tx_hashes=tuple(chunk_hashes),
            cart_tx_hash=self.progress.cart_tx_hash,
            cent_tx_hash=self.progress.cent_tx_hash,
            dry_run=self.dry_run,
            filename=request.filename,
        )
        log_event(
            _log,
            "upload_complete",
            level=logging.WARNING if result.failed_chunks else logging.INFO,
            cartridge_id=cartridge_id,
            app_id=app_id,
            sent=result.sent_chunks,
            total=result.total_chunks,
            failed=[f.index for f in result.failed_chunks],
            cart_tx_hash=result.cart_tx_hash,
            cent_tx_hash=result.cent_tx_hash,
        )
        return result

    def _send_chunks(self, chunks, cartridge_address: str) -> List[str]:
        hashes: List[str] = []
        total = len(chunks)
        consecutive = 0
        started = self._clock()

        for chunk in chunks:
            i = chunk.chunk_index
            payload = encode_data(chunk, chunk_size=self.chunk_size)

            if self.dry_run:
                self.progress.sent_chunks += 1
            else:
                try:
                    tx_hash = self._submit(cartridge_address, payload, "data")
                except NetworkError as e:
                    consecutive += 1
                    self.progress.failed_chunks.append(FailedChunk(index=i, message=e.message))
                    log_event(
                        _log,
                        "upload_chunk_failed",
                        level=logging.ERROR,
                        index=i,
                        consecutive=consecutive,
                        error=e.code,
                        message=e.message,
                    )
                    self._notify()
                    if consecutive >= self.max_consecutive_failures:
                        raise BudgetExceeded(
                            failed_indices=self.progress.failed_indices,
                            sent=self.progress.sent_chunks,
                            total=total,
                            limit=self.max_consecutive_failures,
                        ) from e
                    continue

                consecutive = 0
                hashes.append(tx_hash)
                self.progress.sent_chunks += 1
                elapsed = self._clock() - started
                if elapsed > 0:
                    self.progress.current_rate = self.progress.sent_chunks / elapsed

            if (i + 1) % PROGRESS_LOG_EVERY == 0 or i == total - 1:
                log_event(
                    _log,
                    "upload_chunk_sent",
                    index=i,
                    sent=self.progress.sent_chunks,
                    total=total,
                    rate=round(self.progress.current_rate, 1),
                    dry_run=self.dry_run,
                )
            self._notify()

        return hashes
