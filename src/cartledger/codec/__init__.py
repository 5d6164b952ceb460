"""
cartledger codec package

  - address: 20-byte identity <-> "NQ.." checksummed string
  - records: fixed 64-byte CART / DATA / CENT ledger payloads
"""

from __future__ import annotations

from cartledger.codec.address import decode_address, encode_address, format_address, normalize_address
from cartledger.codec.records import (
    CartridgeHeader,
    CatalogEntry,
    DataChunk,
    Platform,
    decode_cart,
    decode_cent,
    decode_data,
    encode_cart,
    encode_cent,
    encode_data,
    detect_record,
)

__all__ = [
    "CartridgeHeader",
    "CatalogEntry",
    "DataChunk",
    "Platform",
    "decode_address",
    "decode_cart",
    "decode_cent",
    "decode_data",
    "encode_address",
    "encode_cart",
    "encode_cent",
    "encode_data",
    "format_address",
    "normalize_address",
    "detect_record",
]
