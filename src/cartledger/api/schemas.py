"""Pydantic response schemas for the read API."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = True
    service: str = "cartledger"
    mode: str
    rpc_url: str
    consensus: Optional[bool] = Field(default=None, description="None when the node could not be reached")
    error: Optional[str] = None


class CatalogEntryOut(BaseModel):
    app_id: int
    title: str
    semver: str
    platform: str
    schema_version: int
    flags: int
    cartridge_address: str
    tx_hash: str
    height: int
    sender: str


class CatalogResponse(BaseModel):
    ok: bool = True
    catalog_address: str
    publisher: Optional[str] = None
    count: int
    entries: List[CatalogEntryOut]


class HeaderOut(BaseModel):
    cartridge_id: int
    schema_version: int
    platform: str
    chunk_size: int
    flags: int
    total_size: int
    sha256: str
    tx_hash: str
    height: int


class CartridgeStatus(BaseModel):
    ok: bool = True
    address: str
    header: HeaderOut
    transactions: int
    chunks_found: int
    chunks_expected: int
    complete: bool
    missing: List[int] = Field(default_factory=list, description="First missing indices, capped")
    cached: bool = False


class VerifyResponse(BaseModel):
    ok: bool = True
    address: str
    cartridge_id: int
    valid: bool
    expected_sha256: str
    actual_sha256: str
    size: int
    from_cache: bool = False


class CacheClearResponse(BaseModel):
    ok: bool = True
    removed: int


class ManifestSummary(BaseModel):
    name: str
    cartridge_id: int
    filename: str
    total_size: int
    chunk_size: int
    network: str
    sender_address: str
    cartridge_address: str
    tx_count: int


class ManifestListResponse(BaseModel):
    ok: bool = True
    count: int
    manifests: List[ManifestSummary]


class ManifestOut(BaseModel):
    ok: bool = True
    name: str
    cartridge_id: int
    filename: str
    total_size: int
    chunk_size: int
    sha256: str
    sender_address: str
    network: str
    cartridge_address: str
    app_id: int
    expected_tx_hashes: List[str]
