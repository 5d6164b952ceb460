from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from cartledger.api.errors import ApiError
from cartledger.api.schemas import (
    CacheClearResponse,
    CartridgeStatus,
    CatalogEntryOut,
    CatalogResponse,
    HeaderOut,
    HealthResponse,
    ManifestListResponse,
    ManifestOut,
    ManifestSummary,
    VerifyResponse,
)
from cartledger.catalog import CatalogScanner
from cartledger.codec.records import platform_name
from cartledger.errors import IntegrityError, NetworkError
from cartledger.manifest import Manifest, list_manifests, manifest_path, read_manifest
from cartledger.sync import SyncPipeline
from cartledger.structured_logging import log_event

router = APIRouter(prefix="/v1")

_log = logging.getLogger("cartledger.http")


def _cfg(request: Request):
    cfg = getattr(request.app.state, "cfg", None)
    if cfg is None:
        raise ApiError.internal("not_ready", "config not attached to app.state", {})
    return cfg


def _ledger(request: Request):
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise ApiError.internal("not_ready", "ledger client not attached to app.state", {})
    return ledger


def _pipeline(request: Request) -> SyncPipeline:
    cache = getattr(request.app.state, "cache", None)
    return SyncPipeline.from_config(_ledger(request), _cfg(request), cache=cache)


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    cfg = _cfg(request)
    consensus: Optional[bool] = None
    error: Optional[str] = None
    try:
        consensus = bool(_ledger(request).is_consensus_established())
    except NetworkError as e:
        error = e.code
    return HealthResponse(mode=cfg.mode, rpc_url=cfg.rpc_url, consensus=consensus, error=error)


@router.get("/catalog", response_model=CatalogResponse)
def catalog(
    request: Request,
    publisher: Optional[str] = Query(default=None),
    title: Optional[str] = Query(default=None, description="Case-insensitive title filter"),
) -> CatalogResponse:
    cfg = _cfg(request)
    scanner = CatalogScanner(
        _ledger(request),
        cfg.catalog_address,
        page_size=cfg.page_size,
        scan_pages=cfg.catalog_scan_pages,
    )
    records = scanner.entries(publisher)
    if title:
        want = title.strip().lower()
        records = [r for r in records if r.entry.title_short.strip().lower() == want]

    entries = [
        CatalogEntryOut(
            app_id=r.entry.app_id,
            title=r.entry.title_short,
            semver=r.entry.semver_str,
            platform=platform_name(r.entry.platform),
            schema_version=r.entry.schema,
            flags=r.entry.flags,
            cartridge_address=r.cartridge_address,
            tx_hash=r.tx_hash,
            height=r.height,
            sender=r.sender,
        )
        for r in records
    ]
    return CatalogResponse(catalog_address=cfg.catalog_address, publisher=publisher, count=len(entries), entries=entries)


@router.get("/cartridges/{address}", response_model=CartridgeStatus)
def cartridge_status(request: Request, address: str, publisher: Optional[str] = Query(default=None)) -> CartridgeStatus:
    pipeline = _pipeline(request)
    st = pipeline.inspect(address, publisher)
    info = st.info
    h = info.header
    return CartridgeStatus(
        address=st.lookup.address,
        header=HeaderOut(
            cartridge_id=h.cartridge_id,
            schema_version=h.schema,
            platform=platform_name(h.platform),
            chunk_size=h.chunk_size,
            flags=h.flags,
            total_size=h.total_size,
            sha256=h.sha256_hex,
            tx_hash=info.tx_hash,
            height=info.height,
        ),
        transactions=st.lookup.transactions,
        chunks_found=st.found,
        chunks_expected=st.expected,
        complete=st.complete,
        missing=list(st.missing[:64]),
        cached=pipeline.cached(h),
    )


@router.get("/cartridges/{address}/raw")
def cartridge_raw(request: Request, address: str, publisher: Optional[str] = Query(default=None)) -> Response:
    result = _pipeline(request).sync(address, publisher)
    return Response(
        content=result.data,
        media_type="application/octet-stream",
        headers={
            "x-cartridge-id": str(result.header.cartridge_id),
            "x-sha256": result.sha256,
            "x-from-cache": "1" if result.from_cache else "0",
        },
    )


@router.get("/cartridges/{address}/verify", response_model=VerifyResponse)
def cartridge_verify(request: Request, address: str, publisher: Optional[str] = Query(default=None)) -> VerifyResponse:
    try:
        result = _pipeline(request).sync(address, publisher)
    except IntegrityError as e:
        return VerifyResponse(
            address=address,
            cartridge_id=int(e.details.get("cartridge_id", 0)),
            valid=False,
            expected_sha256=e.expected,
            actual_sha256=e.actual,
            size=len(e.data),
        )
    return VerifyResponse(
        address=result.address,
        cartridge_id=result.header.cartridge_id,
        valid=True,
        expected_sha256=result.sha256,
        actual_sha256=result.sha256,
        size=len(result.data),
        from_cache=result.from_cache,
    )


@router.delete("/cache", response_model=CacheClearResponse)
def cache_clear(request: Request) -> CacheClearResponse:
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        raise ApiError.not_found("no_cache", "no cartridge cache configured", {})
    removed = cache.clear_all()
    log_event(_log, "cache_purged", scope="all", removed=removed)
    return CacheClearResponse(removed=removed)


def _summary(name: str, m: Manifest) -> ManifestSummary:
    return ManifestSummary(
        name=name,
        cartridge_id=m.cartridge_id,
        filename=m.filename,
        total_size=m.total_size,
        chunk_size=m.chunk_size,
        network=m.network,
        sender_address=m.sender_address,
        cartridge_address=m.cartridge_address,
        tx_count=len(m.expected_tx_hashes),
    )


def _load_manifest(request: Request, name: str) -> Manifest:
    path = manifest_path(_cfg(request).manifest_dir, name)
    if path is None:
        raise ApiError.bad_request("bad_manifest_name", "manifest name must be a plain file name", {"name": name})
    if not path.is_file():
        raise ApiError.not_found("manifest_not_found", "no such manifest", {"name": name})
    try:
        return read_manifest(str(path))
    except ValueError as e:
        raise ApiError(422, "bad_manifest", str(e), {"name": name})


@router.get("/manifests", response_model=ManifestListResponse)
def manifests(request: Request) -> ManifestListResponse:
    items = [_summary(name, m) for name, m in list_manifests(_cfg(request).manifest_dir)]
    return ManifestListResponse(count=len(items), manifests=items)


@router.get("/manifests/{name}", response_model=ManifestOut)
def manifest_detail(request: Request, name: str) -> ManifestOut:
    m = _load_manifest(request, name)
    return ManifestOut(name=name, **m.to_json())


@router.get("/manifests/{name}/raw")
def manifest_raw(request: Request, name: str) -> Response:
    result = _pipeline(request).sync_from_manifest(_load_manifest(request, name))
    return Response(
        content=result.data,
        media_type="application/octet-stream",
        headers={
            "x-cartridge-id": str(result.header.cartridge_id),
            "x-sha256": result.sha256,
            "x-from-cache": "1" if result.from_cache else "0",
        },
    )
