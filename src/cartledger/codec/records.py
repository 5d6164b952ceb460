"""Fixed-layout 64-byte ledger records.

Three record kinds share one envelope: a 4-byte ASCII tag followed by a
kind-specific little-endian layout, always exactly 64 bytes with zeroed
reserved regions.

    CART  0:tag 4:schema 5:platform 6:chunk_size 7:flags 8:cartridge_id(u32)
          12:total_size(u64) 20:sha256(32) 52:reserved(12)
    DATA  0:tag 4:cartridge_id(u32) 8:chunk_index(u32) 12:len 13:bytes(51)
    CENT  0:tag 4:schema 5:platform 6:flags 7:app_id(u32) 11:semver(3)
          14:cartridge_address(20) 34:title_short(16) 50:reserved(14)

Decoders return ``None`` for "not this kind" so callers can try every
kind against one transaction payload.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union

from cartledger.errors import DecodeMismatch, FormatError, PayloadTooLarge

PAYLOAD_SIZE = 64
MAX_CHUNK_SIZE = 51
# Largest total_size a reader accepts in a CART header.
MAX_CARTRIDGE_SIZE = 6 * 1024 * 1024
DEFAULT_CHUNK_SIZE = MAX_CHUNK_SIZE
TITLE_FIELD_SIZE = 16
TITLE_MAX_BYTES = TITLE_FIELD_SIZE - 1

MAGIC_CART = b"CART"
MAGIC_DATA = b"DATA"
MAGIC_CENT = b"CENT"

_CART_STRUCT = struct.Struct("<4sBBBBIQ32s")  # 52 bytes, 12 reserved
_DATA_STRUCT = struct.Struct("<4sIIB")  # 13 bytes, then 51 data bytes
_CENT_STRUCT = struct.Struct("<4sBBBI3s20s16s")  # 50 bytes, 14 reserved

_U8 = 0xFF
_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


class Platform(IntEnum):
    DOS = 0
    GB = 1
    GBC = 2
    NES = 3


def platform_code(name: Union[str, int, None]) -> int:
    """Map a platform name (or code) to its byte value. Unknown names map to DOS."""
    if isinstance(name, int) and not isinstance(name, bool):
        return _uint(name, _U8, "platform")
    key = (name or "DOS").strip().upper()
    if key.isdigit():
        return _uint(int(key), _U8, "platform")
    member = Platform.__members__.get(key)
    return int(member) if member is not None else int(Platform.DOS)


def platform_name(code: int) -> str:
    try:
        return Platform(code).name
    except ValueError:
        return f"UNKNOWN({code})"


def _uint(value: object, limit: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise FormatError(
            f"{field} must be an integer, got {type(value).__name__}",
            details={"field": field},
        )
    if value < 0 or value > limit:
        raise FormatError(
            f"{field} out of range: {value} (0..{limit})",
            details={"field": field, "value": value, "max": limit},
        )
    return value


@dataclass(frozen=True)
class CartridgeHeader:
    schema: int
    platform: int
    chunk_size: int
    flags: int
    cartridge_id: int
    total_size: int
    sha256: bytes

    @property
    def sha256_hex(self) -> str:
        return self.sha256.hex()

    @property
    def expected_chunks(self) -> int:
        if self.chunk_size <= 0:
            return 0
        return -(-self.total_size // self.chunk_size)


@dataclass(frozen=True)
class DataChunk:
    cartridge_id: int
    chunk_index: int
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CatalogEntry:
    schema: int
    platform: int
    flags: int
    app_id: int
    semver: Tuple[int, int, int]
    cartridge_address: bytes
    title_short: str

    @property
    def semver_str(self) -> str:
        return ".".join(str(v) for v in self.semver)


AnyRecord = Union[CartridgeHeader, DataChunk, CatalogEntry]


def parse_semver(text: str) -> Tuple[int, int, int]:
    parts = (text or "").strip().split(".")
    if len(parts) != 3:
        raise FormatError("semver must be major.minor.patch (e.g. 1.0.0)", details={"semver": text})
    out = []
    for part in parts:
        if not part.isdigit():
            raise FormatError(f"invalid semver component: {part!r} (must be 0-255)", details={"semver": text})
        v = int(part)
        if v > 255:
            raise FormatError(f"invalid semver component: {part!r} (must be 0-255)", details={"semver": text})
        out.append(v)
    return (out[0], out[1], out[2])


def fit_title(title: str) -> str:
    """``title`` as it reads back from a CENT record.

    Cut at the first NUL, then to the whole characters that fit in
    TITLE_MAX_BYTES of UTF-8; a multibyte character is never split.
    """
    text = (title or "").split("\x00", 1)[0]
    return text.encode("utf-8")[:TITLE_MAX_BYTES].decode("utf-8", errors="ignore")


def _title_bytes(title: str) -> bytes:
    return fit_title(title).encode("utf-8")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_cart(header: CartridgeHeader) -> bytes:
    sha = bytes(header.sha256 or b"")
    if len(sha) != 32:
        raise FormatError(f"sha256 must be 32 bytes, got {len(sha)}", details={"length": len(sha)})
    head = _CART_STRUCT.pack(
        MAGIC_CART,
        _uint(header.schema, _U8, "schema"),
        _uint(header.platform, _U8, "platform"),
        _uint(header.chunk_size, _U8, "chunk_size"),
        _uint(header.flags, _U8, "flags"),
        _uint(header.cartridge_id, _U32, "cartridge_id"),
        _uint(header.total_size, _U64, "total_size"),
        sha,
    )
    return head + bytes(PAYLOAD_SIZE - len(head))


def encode_data(chunk: DataChunk, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    limit = min(_uint(chunk_size, _U8, "chunk_size"), MAX_CHUNK_SIZE)
    data = bytes(chunk.data or b"")
    if len(data) > limit:
        raise PayloadTooLarge(
            f"chunk data too large: {len(data)} bytes (max {limit})",
            details={"length": len(data), "max": limit, "chunk_index": chunk.chunk_index},
        )
    head = _DATA_STRUCT.pack(
        MAGIC_DATA,
        _uint(chunk.cartridge_id, _U32, "cartridge_id"),
        _uint(chunk.chunk_index, _U32, "chunk_index"),
        len(data),
    )
    return head + data + bytes(PAYLOAD_SIZE - len(head) - len(data))


def encode_cent(entry: CatalogEntry) -> bytes:
    addr = bytes(entry.cartridge_address or b"")
    if len(addr) != 20:
        raise FormatError(f"cartridge_address must be 20 bytes, got {len(addr)}", details={"length": len(addr)})
    if len(entry.semver) != 3:
        raise FormatError("semver must have three components", details={"semver": list(entry.semver)})
    semver = bytes(_uint(v, _U8, "semver") for v in entry.semver)

    # struct pads the 16-byte title field with NULs; at most 15 bytes are used.
    head = _CENT_STRUCT.pack(
        MAGIC_CENT,
        _uint(entry.schema, _U8, "schema"),
        _uint(entry.platform, _U8, "platform"),
        _uint(entry.flags, _U8, "flags"),
        _uint(entry.app_id, _U32, "app_id"),
        semver,
        addr,
        _title_bytes(entry.title_short),
    )
    return head + bytes(PAYLOAD_SIZE - len(head))


def encode_record(record: AnyRecord) -> bytes:
    if isinstance(record, CartridgeHeader):
        return encode_cart(record)
    if isinstance(record, DataChunk):
        return encode_data(record)
    if isinstance(record, CatalogEntry):
        return encode_cent(record)
    raise FormatError(f"not a record: {type(record).__name__}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _has_tag(payload: Optional[bytes], tag: bytes) -> bool:
    return payload is not None and len(payload) >= PAYLOAD_SIZE and bytes(payload[:4]) == tag


def decode_cart(payload: Optional[bytes]) -> Optional[CartridgeHeader]:
    if not _has_tag(payload, MAGIC_CART):
        return None
    _, schema, platform, chunk_size, flags, cartridge_id, total_size, sha = _CART_STRUCT.unpack_from(payload)
    return CartridgeHeader(
        schema=schema,
        platform=platform,
        chunk_size=chunk_size,
        flags=flags,
        cartridge_id=cartridge_id,
        total_size=total_size,
        sha256=bytes(sha),
    )


def decode_data(payload: Optional[bytes]) -> Optional[DataChunk]:
    if not _has_tag(payload, MAGIC_DATA):
        return None
    _, cartridge_id, chunk_index, length = _DATA_STRUCT.unpack_from(payload)
    start = _DATA_STRUCT.size
    if length > MAX_CHUNK_SIZE or len(payload) < start + length:
        return None
    return DataChunk(cartridge_id=cartridge_id, chunk_index=chunk_index, data=bytes(payload[start : start + length]))


def decode_cent(payload: Optional[bytes]) -> Optional[CatalogEntry]:
    if not _has_tag(payload, MAGIC_CENT):
        return None
    _, schema, platform, flags, app_id, semver, addr, title_raw = _CENT_STRUCT.unpack_from(payload)
    title = bytes(title_raw).split(b"\x00", 1)[0].decode("utf-8", errors="replace")
    return CatalogEntry(
        schema=schema,
        platform=platform,
        flags=flags,
        app_id=app_id,
        semver=(semver[0], semver[1], semver[2]),
        cartridge_address=bytes(addr),
        title_short=title,
    )


def detect_record(payload: Optional[bytes]) -> Optional[AnyRecord]:
    """Decode ``payload`` as whichever record kind its tag names, else None."""
    for decoder in (decode_data, decode_cart, decode_cent):
        rec = decoder(payload)
        if rec is not None:
            return rec
    return None


_DECODERS = {"CART": decode_cart, "DATA": decode_data, "CENT": decode_cent}


def expect_record(payload: Optional[bytes], kind: str) -> AnyRecord:
    """Strict variant of the decoders: raise DecodeMismatch instead of returning None."""
    decoder = _DECODERS.get(kind.upper())
    if decoder is None:
        raise FormatError(f"unknown record kind: {kind}", details={"kind": kind})
    rec = decoder(payload)
    if rec is None:
        tag = bytes(payload[:4]) if payload else b""
        raise DecodeMismatch(
            f"payload is not a {kind.upper()} record",
            details={"kind": kind.upper(), "tag": tag.decode("ascii", errors="replace"), "size": len(payload or b"")},
        )
    return rec


def payload_to_hex(payload: bytes) -> str:
    return bytes(payload).hex()


def payload_from_hex(text: str) -> bytes:
    s = (text or "").strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    try:
        return bytes.fromhex(s)
    except ValueError as e:
        raise FormatError(f"invalid hex payload: {e}") from e
