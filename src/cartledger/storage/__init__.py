from __future__ import annotations

from cartledger.storage.cache import CacheEntry, CartridgeCache, MemoryCartridgeCache, SqliteCartridgeCache

__all__ = ["CacheEntry", "CartridgeCache", "MemoryCartridgeCache", "SqliteCartridgeCache"]
