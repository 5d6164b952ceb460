"""Offline transaction plan for a cartridge upload.

Produces the exact CART / DATA / CENT payloads an upload would send, in
submission order, without a ledger connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from cartledger.chunker import sha256_hex, split
from cartledger.codec.address import decode_address, normalize_address
from cartledger.codec.records import (
    DEFAULT_CHUNK_SIZE,
    CartridgeHeader,
    CatalogEntry,
    encode_cart,
    encode_cent,
    encode_data,
    parse_semver,
    platform_code,
    platform_name,
)
from cartledger.errors import FormatError

Json = Dict[str, Any]

CATALOG_PLACEHOLDER = "<CATALOG_ADDRESS>"
TITLE_MAX_CHARS = 16


@dataclass(frozen=True)
class PlanStep:
    kind: str  # "DATA" | "CART" | "CENT"
    recipient: str
    payload_hex: str
    chunk_index: int = -1


@dataclass(frozen=True)
class TransactionPlan:
    app_id: int
    cartridge_id: int
    title: str
    semver: Tuple[int, int, int]
    platform: int
    schema: int
    chunk_size: int
    cartridge_address: str
    catalog_address: str
    total_size: int
    sha256: str
    cart_hex: str
    cent_hex: str
    steps: Tuple[PlanStep, ...]

    @property
    def data_steps(self) -> List[PlanStep]:
        return [s for s in self.steps if s.kind == "DATA"]

    @property
    def transaction_count(self) -> int:
        return len(self.steps)

    def summary(self) -> Json:
        return {
            "app_id": self.app_id,
            "cartridge_id": self.cartridge_id,
            "title": self.title,
            "semver": ".".join(str(v) for v in self.semver),
            "platform": platform_name(self.platform),
            "schema": self.schema,
            "chunk_size": self.chunk_size,
            "cartridge_address": self.cartridge_address,
            "catalog_address": self.catalog_address,
            "total_size": self.total_size,
            "sha256": self.sha256,
            "expected_chunks": len(self.data_steps),
            "transactions": self.transaction_count,
            "cart_hex": self.cart_hex,
            "cent_hex": self.cent_hex,
        }


def build_plan(
    data: bytes,
    *,
    app_id: int,
    cartridge_id: int,
    title: str,
    semver: str,
    cartridge_address: str,
    catalog_address: str = CATALOG_PLACEHOLDER,
    platform: Union[str, int] = 0,
    schema: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> TransactionPlan:
    """Encode every record for ``data`` and order them as the uploader sends them."""
    if not app_id:
        raise FormatError("app_id is required", details={"field": "app_id"})
    if not cartridge_id:
        raise FormatError("cartridge_id is required", details={"field": "cartridge_id"})
    if not title or len(title) > TITLE_MAX_CHARS:
        raise FormatError(f"title is required and must be <= {TITLE_MAX_CHARS} characters", details={"field": "title"})

    raw_addr = decode_address(cartridge_address)
    cart_to = normalize_address(cartridge_address)
    catalog_to = catalog_address if catalog_address == CATALOG_PLACEHOLDER else normalize_address(catalog_address)
    version = parse_semver(semver)
    plat = platform_code(platform)
    digest = sha256_hex(data)

    cart = encode_cart(
        CartridgeHeader(
            schema=schema,
            platform=plat,
            chunk_size=chunk_size,
            flags=0,
            cartridge_id=cartridge_id,
            total_size=len(data),
            sha256=bytes.fromhex(digest),
        )
    )
    cent = encode_cent(
        CatalogEntry(
            schema=schema,
            platform=plat,
            flags=0,
            app_id=app_id,
            semver=version,
            cartridge_address=raw_addr,
            title_short=title,
        )
    )

    steps = [
        PlanStep(
            kind="DATA",
            recipient=cart_to,
            payload_hex=encode_data(c, chunk_size=chunk_size).hex(),
            chunk_index=c.chunk_index,
        )
        for c in split(data, chunk_size, cartridge_id=cartridge_id)
    ]
    steps.append(PlanStep(kind="CART", recipient=cart_to, payload_hex=cart.hex()))
    steps.append(PlanStep(kind="CENT", recipient=catalog_to, payload_hex=cent.hex()))

    return TransactionPlan(
        app_id=app_id,
        cartridge_id=cartridge_id,
        title=title,
        semver=version,
        platform=plat,
        schema=schema,
        chunk_size=chunk_size,
        cartridge_address=cart_to,
        catalog_address=catalog_to,
        total_size=len(data),
        sha256=digest,
        cart_hex=cart.hex(),
        cent_hex=cent.hex(),
        steps=tuple(steps),
    )


def render_plan(plan: TransactionPlan, *, show_chunks: int = 3) -> str:
    """Human-readable plan: header fields, CART/CENT hex, first and last chunks."""
    bar = "=" * 80
    lines = [
        bar,
        "TRANSACTION PLAN",
        bar,
        f"Size: {plan.total_size:,} bytes",
        f"SHA256: {plan.sha256}",
        f"App ID: {plan.app_id}",
        f"Cartridge ID: {plan.cartridge_id}",
        f'Title: "{plan.title}"',
        f"Platform: {plan.platform} ({platform_name(plan.platform)})",
        f"Semver: {'.'.join(str(v) for v in plan.semver)}",
        f"Cartridge Address: {plan.cartridge_address}",
        f"Schema: {plan.schema}",
        f"Chunk Size: {plan.chunk_size} bytes",
        f"Expected Chunks: {len(plan.data_steps)}",
        "",
    ]

    data = plan.data_steps
    shown = list(range(min(show_chunks, len(data))))
    tail_start = max(show_chunks, len(data) - show_chunks)
    if len(data) > show_chunks * 2:
        shown.append(-1)
    shown.extend(range(tail_start, len(data)))

    lines += [bar, f"1. DATA chunks -> {plan.cartridge_address} ({len(data)} transactions)", bar]
    for i in shown:
        if i < 0:
            lines.append(f"... ({len(data) - show_chunks * 2} more chunks) ...")
            continue
        lines.append(f"Chunk {data[i].chunk_index}: {data[i].payload_hex}")

    lines += [
        "",
        bar,
        f"2. CART header -> {plan.cartridge_address}",
        bar,
        plan.cart_hex,
        "",
        bar,
        f"3. CENT entry -> {plan.catalog_address}",
        bar,
        plan.cent_hex,
        "",
        f"Total: {plan.transaction_count} transactions",
    ]
    return "\n".join(lines)


def write_payloads(plan: TransactionPlan, out_dir: str) -> List[Path]:
    """Write CART.hex, CENT.hex and DATA_<index>.hex files; returns the paths written."""
    d = Path(out_dir)
    d.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for name, text in (("CART.hex", plan.cart_hex), ("CENT.hex", plan.cent_hex)):
        p = d / name
        p.write_text(text, encoding="utf-8")
        written.append(p)
    width = max(4, len(str(len(plan.data_steps))))
    for step in plan.data_steps:
        p = d / f"DATA_{step.chunk_index:0{width}d}.hex"
        p.write_text(step.payload_hex, encoding="utf-8")
        written.append(p)
    return written
