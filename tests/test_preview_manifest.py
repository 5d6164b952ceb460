from __future__ import annotations

import hashlib
import json
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import CARTRIDGE, CATALOG, PUBLISHER
from cartledger.codec.records import decode_cart, decode_cent, decode_data, payload_from_hex
from cartledger.errors import FormatError
from cartledger.manifest import (
    Manifest,
    list_manifests,
    manifest_from_upload,
    manifest_path,
    read_manifest,
    write_manifest,
)
from cartledger.preview import CATALOG_PLACEHOLDER, build_plan, render_plan, write_payloads
from cartledger.upload import FailedChunk, UploadResult


def _plan(data: bytes, **kw):
    base = dict(app_id=3, cartridge_id=9, title="Doom", semver="1.2.3", cartridge_address=CARTRIDGE)
    base.update(kw)
    return build_plan(data, **base)


def test_plan_order_and_payloads() -> None:
    data = bytes(range(130))
    plan = _plan(data, catalog_address=CATALOG, platform="GB")

    assert [s.kind for s in plan.steps] == ["DATA", "DATA", "DATA", "CART", "CENT"]
    assert [s.recipient for s in plan.steps] == [CARTRIDGE] * 4 + [CATALOG]
    assert [s.chunk_index for s in plan.data_steps] == [0, 1, 2]

    chunk = decode_data(payload_from_hex(plan.steps[2].payload_hex))
    assert chunk.data == data[102:]

    header = decode_cart(payload_from_hex(plan.cart_hex))
    assert header.total_size == 130
    assert header.sha256 == hashlib.sha256(data).digest()
    assert header.platform == 1

    entry = decode_cent(payload_from_hex(plan.cent_hex))
    assert (entry.app_id, entry.semver, entry.title_short) == (3, (1, 2, 3), "Doom")

    s = plan.summary()
    assert s["transactions"] == 5
    assert s["platform"] == "GB"


def test_catalog_placeholder_when_unset() -> None:
    plan = _plan(b"abc")
    assert plan.steps[-1].recipient == CATALOG_PLACEHOLDER


@pytest.mark.parametrize(
    "kw",
    [
        {"app_id": 0},
        {"cartridge_id": 0},
        {"title": ""},
        {"title": "A title that is far too long"},
        {"semver": "1"},
        {"cartridge_address": "nope"},
    ],
)
def test_plan_rejects_bad_inputs(kw) -> None:
    with pytest.raises(FormatError):
        _plan(b"abc", **kw)


def test_render_elides_middle_chunks() -> None:
    text = render_plan(_plan(bytes(51 * 10)))
    assert "Expected Chunks: 10" in text
    assert "... (4 more chunks) ..." in text
    assert "Chunk 0:" in text and "Chunk 9:" in text
    assert "Chunk 5:" not in text
    assert "Total: 12 transactions" in text


def test_write_payloads(tmp_path: Path) -> None:
    plan = _plan(bytes(60))
    written = write_payloads(plan, str(tmp_path / "out"))
    assert [p.name for p in written] == ["CART.hex", "CENT.hex", "DATA_0000.hex", "DATA_0001.hex"]
    assert (tmp_path / "out" / "CART.hex").read_text() == plan.cart_hex


def _result(**kw) -> UploadResult:
    base = dict(
        cartridge_id=5,
        app_id=2,
        cartridge_address=CARTRIDGE,
        catalog_address=CATALOG,
        sender_address=PUBLISHER,
        sha256="ab" * 32,
        total_size=100,
        chunk_size=51,
        total_chunks=2,
        sent_chunks=2,
        failed_chunks=(),
        chunk_tx_hashes=("h0", "h1"),
        cart_tx_hash="hc",
        cent_tx_hash="he",
        dry_run=False,
        filename="game.bin",
    )
    base.update(kw)
    return UploadResult(**base)


def test_manifest_from_upload(tmp_path: Path) -> None:
    m = manifest_from_upload(_result(), network="testnet")
    assert m.expected_tx_hashes == ["h0", "h1", "hc"]
    assert m.network == "testnet"

    path = write_manifest(m, str(tmp_path / "m" / "game.manifest.json"))
    assert read_manifest(str(path)) == m

    dry = manifest_from_upload(_result(dry_run=True, chunk_tx_hashes=(), cart_tx_hash="dry-run-cart-hash"), network="x")
    assert dry.expected_tx_hashes == []


def test_partial_upload_result_is_not_complete() -> None:
    r = _result(sent_chunks=1, failed_chunks=(FailedChunk(index=1, message="rpc"),))
    assert not r.complete


def test_manifest_accepts_the_older_id_field() -> None:
    m = Manifest.from_json(json.loads('{"game_id": 77, "filename": "a.zip", "sha256": "AB", "total_size": 3}'))
    assert m.cartridge_id == 77
    assert m.sha256 == "ab"

    with pytest.raises(ValueError):
        Manifest.from_json({"filename": "x"})
    with pytest.raises(ValueError):
        Manifest.from_json([])  # type: ignore[arg-type]


def test_list_manifests_skips_unreadable_files(tmp_path: Path) -> None:
    m = manifest_from_upload(_result(), network="testnet")
    write_manifest(m, str(tmp_path / "b.json"))
    write_manifest(replace(m, cartridge_id=1), str(tmp_path / "a.json"))
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "readme.txt").write_text("x", encoding="utf-8")
    (tmp_path / "dir.json").mkdir()

    listed = list_manifests(str(tmp_path))
    assert [name for name, _ in listed] == ["a", "b"]
    assert listed[1][1] == m
    assert list_manifests(str(tmp_path / "nowhere")) == []


@pytest.mark.parametrize("name", ["", "  ", ".json", ".hidden", "../x", "a/b", "a\\b"])
def test_manifest_path_rejects_escaping_names(tmp_path: Path, name: str) -> None:
    assert manifest_path(str(tmp_path), name) is None


def test_manifest_path_adds_the_suffix(tmp_path: Path) -> None:
    assert manifest_path(str(tmp_path), "game") == tmp_path / "game.json"
    assert manifest_path(str(tmp_path), "game.JSON") == tmp_path / "game.json"
