from __future__ import annotations

import hashlib
import random

import pytest

from cartledger.chunker import (
    MISSING_REPORT_LIMIT,
    collect_first_seen,
    count_found,
    expected_chunk_count,
    missing_indices,
    reassemble,
    reassemble_verified,
    split,
    verify_digest,
)
from cartledger.codec.records import DataChunk
from cartledger.errors import FormatError, IncompleteData, IntegrityError, SizeMismatch


def test_split_130_bytes() -> None:
    data = bytes(range(130))
    chunks = list(split(data, 51, cartridge_id=9))

    assert [c.chunk_index for c in chunks] == [0, 1, 2]
    assert [len(c.data) for c in chunks] == [51, 51, 28]
    assert all(c.cartridge_id == 9 for c in chunks)
    assert b"".join(c.data for c in chunks) == data


def test_split_is_restartable() -> None:
    view = split(b"abcdefghij", 3)
    assert len(view) == 4
    first = [c.data for c in view]
    second = [c.data for c in view]
    assert first == second == [b"abc", b"def", b"ghi", b"j"]


def test_empty_input() -> None:
    assert len(split(b"")) == 0
    assert list(split(b"")) == []
    assert reassemble({}, 0) == b""


def test_bad_chunk_size() -> None:
    with pytest.raises(FormatError):
        split(b"abc", 0)
    with pytest.raises(FormatError):
        expected_chunk_count(10, -1)


def test_reassemble_inverts_split_across_sizes() -> None:
    rng = random.Random(20240601)
    for _ in range(150):
        size = rng.randint(0, 10_000)
        chunk_size = rng.randint(1, 64)
        data = rng.randbytes(size)

        chunks = split(data, chunk_size)
        assert len(chunks) == -(-size // chunk_size)

        by_index = {c.chunk_index: c.data for c in chunks}
        assert reassemble(by_index, size, chunk_size) == data


def test_missing_index_is_reported_not_guessed() -> None:
    data = bytes(200)
    by_index = {c.chunk_index: c.data for c in split(data, 51)}
    del by_index[2]

    with pytest.raises(IncompleteData) as ei:
        reassemble(by_index, len(data), 51)

    e = ei.value
    assert (e.found, e.expected, e.missing) == (3, 4, [2])
    assert e.details["found"] == 3 and e.details["expected"] == 4


def test_short_last_chunk_is_a_size_mismatch() -> None:
    data = bytes(130)
    by_index = {c.chunk_index: c.data for c in split(data, 51)}
    by_index[2] = by_index[2][:-1]

    with pytest.raises(SizeMismatch) as ei:
        reassemble(by_index, 130, 51)
    assert (ei.value.actual, ei.value.expected) == (129, 130)


def test_indices_beyond_the_header_are_ignored() -> None:
    by_index = {0: b"ab", 1: b"c", 7: b"zzz"}
    assert reassemble(by_index, 3, 2) == b"abc"


def test_digest_mismatch_keeps_the_bytes() -> None:
    data = b"cartridge bytes"
    good = hashlib.sha256(data).hexdigest()

    assert verify_digest(data, good.upper()) == data

    with pytest.raises(IntegrityError) as ei:
        verify_digest(data, "00" * 32)
    assert ei.value.data == data
    assert ei.value.actual == good
    assert ei.value.code == "integrity_error"


def test_reassemble_verified() -> None:
    data = bytes(range(256)) * 3
    by_index = {c.chunk_index: c.data for c in split(data, 40)}
    assert reassemble_verified(by_index, len(data), hashlib.sha256(data).hexdigest(), 40) == data


def test_collect_first_seen_keeps_the_first_copy() -> None:
    chunks = [
        DataChunk(cartridge_id=1, chunk_index=0, data=b"first"),
        DataChunk(cartridge_id=1, chunk_index=1, data=b"b"),
        DataChunk(cartridge_id=1, chunk_index=0, data=b"second"),
    ]
    assert collect_first_seen(chunks) == {0: b"first", 1: b"b"}


def test_missing_indices_are_bounded() -> None:
    chunks = {0: b"a", 2: b"c", 10_000: b"stray", -1: b"neg"}
    assert count_found(chunks, 5) == 2
    assert missing_indices(chunks, 5) == [1, 3, 4]
    assert missing_indices(chunks, 5, limit=2) == [1, 3]
    assert missing_indices(chunks, 5, limit=0) == []

    huge = missing_indices(chunks, 6 * 1024 * 1024)
    assert len(huge) == MISSING_REPORT_LIMIT
    assert huge[:3] == [1, 3, 4]


def test_reassemble_caps_the_missing_list() -> None:
    with pytest.raises(IncompleteData) as ei:
        reassemble({0: b"x"}, 1000, 1)
    assert (ei.value.found, ei.value.expected) == (1, 1000)
    assert ei.value.missing == list(range(1, 1 + MISSING_REPORT_LIMIT))
