from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

_SYNC_LEVELS = ("OFF", "NORMAL", "FULL", "EXTRA")

_CACHE_DDL = (
    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);",
    """
    CREATE TABLE IF NOT EXISTS cartridge_cache (
      cartridge_id INTEGER NOT NULL,
      sha256 TEXT NOT NULL,
      data BLOB NOT NULL,
      size INTEGER NOT NULL,
      filename TEXT NOT NULL DEFAULT '',
      meta_json TEXT NOT NULL DEFAULT '{}',
      created_ts_ms INTEGER NOT NULL,
      PRIMARY KEY (cartridge_id, sha256)
    );
    """,
)


def _env_ms(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class SqliteDB:
    """SQLite file behind the cartridge cache.

    Every operation opens its own connection. Connections run in WAL mode with
    the busy timeout and synchronous level taken from the environment, and all
    writes go through write_tx(), which takes the write lock up front with
    BEGIN IMMEDIATE and backs off while another writer holds it.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _synchronous_pragma() -> str:
        """FULL in prod, NORMAL otherwise; CARTLEDGER_SQLITE_SYNCHRONOUS overrides."""
        prod = (os.environ.get("CARTLEDGER_MODE") or "prod").strip().lower() == "prod"
        default = "FULL" if prod else "NORMAL"
        level = (os.environ.get("CARTLEDGER_SQLITE_SYNCHRONOUS") or default).strip().upper()
        return level if level in _SYNC_LEVELS else default

    def _pragmas(self) -> List[str]:
        busy_ms = max(0, _env_ms("CARTLEDGER_SQLITE_BUSY_TIMEOUT_MS", 30_000))
        return [
            f"PRAGMA synchronous={self._synchronous_pragma()};",
            f"PRAGMA busy_timeout={busy_ms};",
        ]

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; write_tx issues BEGIN/COMMIT itself.
        con = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row

        journal = str(con.execute("PRAGMA journal_mode=WAL;").fetchone()[0]).lower()
        if journal != "wal":
            con.close()
            raise RuntimeError(f"cache database refused WAL journal mode (got {journal!r})")
        for stmt in self._pragmas():
            con.execute(stmt)
        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            for ddl in _CACHE_DDL:
                con.execute(ddl)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
                return
            have = str(row["value"])
            if have != str(self.SCHEMA_VERSION):
                raise RuntimeError(f"cache schema_version is {have}, this build expects {self.SCHEMA_VERSION}")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _begin_immediate(con: sqlite3.Connection) -> None:
        give_up_at = time.monotonic() + max(250, _env_ms("CARTLEDGER_SQLITE_WRITE_DEADLINE_MS", 30_000)) / 1000.0
        delay = 0.005
        while True:
            try:
                con.execute("BEGIN IMMEDIATE;")
                return
            except sqlite3.OperationalError as e:
                locked = "locked" in str(e).lower() or "busy" in str(e).lower()
                if not locked or time.monotonic() >= give_up_at:
                    raise
                time.sleep(delay * random.uniform(0.5, 1.5))
                delay = min(0.25, delay * 2)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception."""
        with self.connection() as con:
            self._begin_immediate(con)
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK;")
                raise
            con.execute("COMMIT;")
