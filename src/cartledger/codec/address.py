"""Ledger identity codec.

An identity is 20 raw bytes. Its human form is IBAN-like:

    "NQ" + 2 check digits + 32 symbols of a custom base32 alphabet

The body is the 160-bit big-endian integer split into 5-bit groups. The check
digits follow ISO 7064 MOD 97-10 over ``<body>NQ00``.

Decoding checks shape only unless ``strict=True``; the check pair is then
verified as well.
"""

from __future__ import annotations

import re

from cartledger.errors import FormatError

ADDRESS_PREFIX = "NQ"
ADDRESS_BYTES = 20
BODY_SYMBOLS = 32

# 0-9 and A-Z without I, O, W, Z.
ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVXY"
_SYMBOL_VALUES = {ch: i for i, ch in enumerate(ALPHABET)}

_WS_RE = re.compile(r"\s+")


def normalize_address(text: str) -> str:
    """Strip all whitespace and uppercase."""
    return _WS_RE.sub("", text or "").upper()


def format_address(text: str) -> str:
    """Display form: groups of four separated by single spaces."""
    s = normalize_address(text)
    return " ".join(s[i : i + 4] for i in range(0, len(s), 4))


def _mod97(numeric: str) -> int:
    rem = 0
    for ch in numeric:
        rem = (rem * 10 + (ord(ch) - 48)) % 97
    return rem


def _to_numeric(s: str) -> str:
    out = []
    for ch in s:
        if "0" <= ch <= "9":
            out.append(ch)
        elif "A" <= ch <= "Z":
            out.append(str(ord(ch) - 55))
        else:
            raise FormatError(f"invalid symbol for checksum: {ch!r}", details={"symbol": ch})
    return "".join(out)


def mod97_check_digits(body: str) -> str:
    rem = _mod97(_to_numeric(body + ADDRESS_PREFIX + "00"))
    return f"{98 - rem:02d}"


def encode_address(raw: bytes) -> str:
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise FormatError("identity must be bytes", details={"type": type(raw).__name__})
    raw = bytes(raw)
    if len(raw) != ADDRESS_BYTES:
        raise FormatError(
            f"identity must be {ADDRESS_BYTES} bytes, got {len(raw)}",
            details={"length": len(raw)},
        )

    n = int.from_bytes(raw, "big")
    symbols = []
    for shift in range((BODY_SYMBOLS - 1) * 5, -1, -5):
        symbols.append(ALPHABET[(n >> shift) & 0x1F])
    body = "".join(symbols)

    return ADDRESS_PREFIX + mod97_check_digits(body) + body


def decode_address(text: str, *, strict: bool = False) -> bytes:
    s = normalize_address(text)
    if not s.startswith(ADDRESS_PREFIX):
        raise FormatError(f"identity must start with {ADDRESS_PREFIX}", details={"address": s[:8]})

    body = s[4:]
    if len(s) < 4 or len(body) != BODY_SYMBOLS:
        raise FormatError(
            f"identity body must be {BODY_SYMBOLS} symbols, got {max(0, len(body))}",
            details={"length": len(body)},
        )

    n = 0
    for ch in body:
        v = _SYMBOL_VALUES.get(ch)
        if v is None:
            raise FormatError(f"invalid base32 symbol: {ch!r}", details={"symbol": ch})
        n = (n << 5) | v

    if strict and s[2:4] != mod97_check_digits(body):
        raise FormatError(
            "identity checksum mismatch",
            details={"have": s[2:4], "want": mod97_check_digits(body)},
        )

    return n.to_bytes(ADDRESS_BYTES, "big")


def checksum_ok(text: str) -> bool:
    s = normalize_address(text)
    if len(s) != 4 + BODY_SYMBOLS or not s.startswith(ADDRESS_PREFIX):
        return False
    try:
        return s[2:4] == mod97_check_digits(s[4:])
    except FormatError:
        return False


def is_address(text: str, *, strict: bool = False) -> bool:
    try:
        decode_address(text, strict=strict)
        return True
    except FormatError:
        return False
