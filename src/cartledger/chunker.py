from __future__ import annotations

import hashlib
import itertools
from dataclasses import dataclass
from typing import Iterator, List, Mapping

from cartledger.codec.records import DEFAULT_CHUNK_SIZE, DataChunk
from cartledger.errors import FormatError, IncompleteData, IntegrityError, SizeMismatch


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def expected_chunk_count(total_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    if chunk_size <= 0:
        raise FormatError(f"chunk_size must be > 0, got {chunk_size}", details={"chunk_size": chunk_size})
    if total_size < 0:
        raise FormatError(f"total_size must be >= 0, got {total_size}", details={"total_size": total_size})
    return -(-total_size // chunk_size)


@dataclass(frozen=True)
class Chunks:
    """Lazy, restartable view of ``data`` as ordered chunks.

    Each iteration starts again at index 0; nothing is copied until a chunk
    is yielded.
    """

    data: bytes
    chunk_size: int = DEFAULT_CHUNK_SIZE
    cartridge_id: int = 0

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise FormatError(f"chunk_size must be > 0, got {self.chunk_size}", details={"chunk_size": self.chunk_size})

    def __len__(self) -> int:
        return expected_chunk_count(len(self.data), self.chunk_size)

    def __iter__(self) -> Iterator[DataChunk]:
        view = memoryview(self.data)
        for index, offset in enumerate(range(0, len(view), self.chunk_size)):
            yield DataChunk(
                cartridge_id=self.cartridge_id,
                chunk_index=index,
                data=bytes(view[offset : offset + self.chunk_size]),
            )


def split(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE, *, cartridge_id: int = 0) -> Chunks:
    return Chunks(data=bytes(data), chunk_size=chunk_size, cartridge_id=cartridge_id)


def collect_first_seen(chunks) -> dict[int, bytes]:
    """Index-keyed map of chunk bytes; the first occurrence of an index wins."""
    out: dict[int, bytes] = {}
    for c in chunks:
        if c.chunk_index not in out:
            out[c.chunk_index] = c.data
    return out


MISSING_REPORT_LIMIT = 64


def count_found(chunks: Mapping[int, bytes], expected: int) -> int:
    """Number of distinct indices in 0..expected-1 present in ``chunks``."""
    return sum(1 for i in chunks if 0 <= i < expected)


def missing_indices(chunks: Mapping[int, bytes], expected: int, limit: int = MISSING_REPORT_LIMIT) -> List[int]:
    """The first ``limit`` absent indices, lowest first."""
    absent = (i for i in range(expected) if i not in chunks)
    return list(itertools.islice(absent, max(0, int(limit))))


def reassemble(chunks: Mapping[int, bytes], expected_total_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """Concatenate chunks 0..N-1 in index order.

    Raises IncompleteData when any index in 0..N-1 is missing (never guesses)
    and SizeMismatch when the concatenation is not ``expected_total_size`` bytes.
    Indices outside 0..N-1 are ignored.
    """
    expected = expected_chunk_count(expected_total_size, chunk_size)
    found = count_found(chunks, expected)
    if found < expected:
        raise IncompleteData(found=found, expected=expected, missing=missing_indices(chunks, expected))

    out = b"".join(chunks[i] for i in range(expected))
    if len(out) != expected_total_size:
        raise SizeMismatch(actual=len(out), expected=expected_total_size)
    return out


def verify_digest(data: bytes, expected_hex: str) -> bytes:
    """Return ``data`` if its sha256 matches ``expected_hex`` (case-insensitive)."""
    actual = sha256_hex(data)
    expected = (expected_hex or "").strip().lower()
    if actual != expected:
        raise IntegrityError(expected=expected, actual=actual, data=data)
    return data


def reassemble_verified(
    chunks: Mapping[int, bytes],
    expected_total_size: int,
    expected_digest: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> bytes:
    return verify_digest(reassemble(chunks, expected_total_size, chunk_size), expected_digest)
