from __future__ import annotations

import hashlib
import sys
from pathlib import Path

import pytest

# Local "src/" takes precedence over any installed cartledger.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


from cartledger.chunker import split  # noqa: E402
from cartledger.codec.address import decode_address, encode_address  # noqa: E402
from cartledger.codec.records import CartridgeHeader, CatalogEntry, encode_cart, encode_cent, encode_data  # noqa: E402
from cartledger.ledger.memory import InMemoryLedger  # noqa: E402


def make_address(seed: int) -> str:
    return encode_address(bytes([seed & 0xFF]) * 20)


PUBLISHER = make_address(0x11)
CATALOG = make_address(0x22)
CARTRIDGE = make_address(0x33)
STRANGER = make_address(0x44)


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def ledger() -> InMemoryLedger:
    lg = InMemoryLedger()
    lg.unlocked.add(PUBLISHER)
    return lg


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def put_cartridge(
    ledger: InMemoryLedger,
    data: bytes,
    *,
    address: str = CARTRIDGE,
    cartridge_id: int = 7,
    sender: str = PUBLISHER,
    chunk_size: int = 51,
    skip=(),
    digest_of: bytes | None = None,
) -> CartridgeHeader:
    """Append DATA records (minus ``skip``) and then the CART header."""
    for c in split(data, chunk_size, cartridge_id=cartridge_id):
        if c.chunk_index in skip:
            continue
        ledger.append(sender=sender, recipient=address, payload=encode_data(c, chunk_size=chunk_size))

    header = CartridgeHeader(
        schema=1,
        platform=0,
        chunk_size=chunk_size,
        flags=0,
        cartridge_id=cartridge_id,
        total_size=len(data),
        sha256=hashlib.sha256(data if digest_of is None else digest_of).digest(),
    )
    ledger.append(sender=sender, recipient=address, payload=encode_cart(header))
    return header


def publish_entry(
    ledger: InMemoryLedger,
    *,
    app_id: int,
    title: str,
    sender: str = PUBLISHER,
    cartridge: str = CARTRIDGE,
    catalog: str = CATALOG,
) -> None:
    entry = CatalogEntry(
        schema=1,
        platform=0,
        flags=0,
        app_id=app_id,
        semver=(1, 0, 0),
        cartridge_address=decode_address(cartridge),
        title_short=title,
    )
    ledger.append(sender=sender, recipient=catalog, payload=encode_cent(entry))
