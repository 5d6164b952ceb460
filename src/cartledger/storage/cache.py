from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cartledger.storage.sqlite_db import SqliteDB
from cartledger.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("cartledger.cache")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _key(cartridge_id: int, digest: str) -> Tuple[int, str]:
    return int(cartridge_id), (digest or "").strip().lower()


def cache_key(cartridge_id: int, digest: str) -> str:
    """Display form of the cache key: ``<cartridge_id>_<sha256>``."""
    cid, d = _key(cartridge_id, digest)
    return f"{cid}_{d}"


@dataclass(frozen=True)
class CacheEntry:
    cartridge_id: int
    sha256: str
    size: int
    filename: str
    created_ts_ms: int
    meta: Json = field(default_factory=dict)


class CartridgeCache(Protocol):
    """Keyed store for verified cartridge bytes, keyed by (cartridge_id, sha256)."""

    def get(self, cartridge_id: int, digest: str) -> Optional[bytes]: ...

    def put(self, cartridge_id: int, digest: str, data: bytes, metadata: Optional[Json] = None) -> None: ...

    def delete(self, cartridge_id: int, digest: str) -> bool: ...

    def clear_all(self) -> int: ...


class SqliteCartridgeCache:
    """SQLite-backed cartridge cache with an explicit open/close lifecycle.

    Construct with a path, then ``open()`` (or use as a context manager).
    Every operation on a closed cache raises RuntimeError.
    """

    def __init__(self, path: str) -> None:
        self._db = SqliteDB(path=path)
        self._open = False

    @property
    def path(self) -> str:
        return self._db.path

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "SqliteCartridgeCache":
        if not self._open:
            self._db.init_schema()
            self._open = True
        return self

    def close(self) -> None:
        self._open = False

    def __enter__(self) -> "SqliteCartridgeCache":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError(f"cartridge cache is closed: {self.path}")

    def get(self, cartridge_id: int, digest: str) -> Optional[bytes]:
        self._require_open()
        cid, d = _key(cartridge_id, digest)
        with self._db.connection() as con:
            row = con.execute(
                "SELECT data FROM cartridge_cache WHERE cartridge_id=? AND sha256=?;",
                (cid, d),
            ).fetchone()
        if row is None:
            return None
        return bytes(row["data"])

    def put(self, cartridge_id: int, digest: str, data: bytes, metadata: Optional[Json] = None) -> None:
        self._require_open()
        cid, d = _key(cartridge_id, digest)
        meta = dict(metadata or {})
        filename = str(meta.pop("filename", "") or "")
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO cartridge_cache(cartridge_id, sha256, data, size, filename, meta_json, created_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cartridge_id, sha256) DO UPDATE SET
                  data=excluded.data,
                  size=excluded.size,
                  filename=excluded.filename,
                  meta_json=excluded.meta_json,
                  created_ts_ms=excluded.created_ts_ms;
                """,
                (
                    cid,
                    d,
                    bytes(data),
                    len(data),
                    filename,
                    json.dumps(meta, sort_keys=True, separators=(",", ":")),
                    _now_ms(),
                ),
            )
        log_event(_log, "cache_put", level=logging.DEBUG, key=cache_key(cid, d), size=len(data))

    def delete(self, cartridge_id: int, digest: str) -> bool:
        self._require_open()
        cid, d = _key(cartridge_id, digest)
        with self._db.write_tx() as con:
            cur = con.execute("DELETE FROM cartridge_cache WHERE cartridge_id=? AND sha256=?;", (cid, d))
            removed = cur.rowcount > 0
        return removed

    def clear_all(self) -> int:
        self._require_open()
        with self._db.write_tx() as con:
            cur = con.execute("DELETE FROM cartridge_cache;")
            n = int(cur.rowcount)
        log_event(_log, "cache_cleared", entries=n)
        return n

    def entries(self) -> List[CacheEntry]:
        self._require_open()
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT cartridge_id, sha256, size, filename, meta_json, created_ts_ms "
                "FROM cartridge_cache ORDER BY created_ts_ms DESC, cartridge_id;"
            ).fetchall()
        out: List[CacheEntry] = []
        for r in rows:
            try:
                meta = json.loads(str(r["meta_json"]))
            except json.JSONDecodeError:
                meta = {}
            out.append(
                CacheEntry(
                    cartridge_id=int(r["cartridge_id"]),
                    sha256=str(r["sha256"]),
                    size=int(r["size"]),
                    filename=str(r["filename"]),
                    created_ts_ms=int(r["created_ts_ms"]),
                    meta=meta if isinstance(meta, dict) else {},
                )
            )
        return out


class MemoryCartridgeCache:
    """Dict-backed cache for tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._items: Dict[Tuple[int, str], Tuple[bytes, Json]] = {}

    def get(self, cartridge_id: int, digest: str) -> Optional[bytes]:
        item = self._items.get(_key(cartridge_id, digest))
        return item[0] if item is not None else None

    def put(self, cartridge_id: int, digest: str, data: bytes, metadata: Optional[Json] = None) -> None:
        self._items[_key(cartridge_id, digest)] = (bytes(data), dict(metadata or {}))

    def delete(self, cartridge_id: int, digest: str) -> bool:
        return self._items.pop(_key(cartridge_id, digest), None) is not None

    def clear_all(self) -> int:
        n = len(self._items)
        self._items.clear()
        return n

    def metadata(self, cartridge_id: int, digest: str) -> Optional[Json]:
        item = self._items.get(_key(cartridge_id, digest))
        return dict(item[1]) if item is not None else None

    def __len__(self) -> int:
        return len(self._items)
