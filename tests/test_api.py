from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

from conftest import CARTRIDGE, CATALOG, PUBLISHER, STRANGER, put_cartridge, publish_entry
from cartledger.api.app import create_app
from cartledger.api.errors import ApiError
from cartledger.config import default_client_config
from cartledger.errors import HeaderNotFound, NetworkError, PreconditionFailed
from cartledger.ledger.memory import InMemoryLedger
from cartledger.manifest import Manifest, write_manifest
from cartledger.storage.cache import MemoryCartridgeCache


def _client(ledger, *, cache=None, mode: str = "dev", **overrides) -> TestClient:
    cfg = replace(
        default_client_config(), catalog_address=CATALOG, publisher_address=PUBLISHER, mode=mode, **overrides
    )
    app = create_app(cfg=cfg, ledger=ledger, cache=cache, boot_runtime=False)
    return TestClient(app)


def test_health_reports_consensus(ledger: InMemoryLedger) -> None:
    r = _client(ledger).get("/v1/health")
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["consensus"] is True
    assert j["mode"] == "dev"
    assert r.headers.get("x-request-id")


def test_health_survives_an_unreachable_node() -> None:
    class _Down:
        def is_consensus_established(self):
            raise NetworkError("refused", code="transport_error")

    j = _client(_Down()).get("/v1/health").json()
    assert j["consensus"] is None
    assert j["error"] == "transport_error"


def test_catalog_listing(ledger: InMemoryLedger) -> None:
    publish_entry(ledger, app_id=1, title="Doom")
    publish_entry(ledger, app_id=2, title="Heretic")
    publish_entry(ledger, app_id=3, title="Spam", sender=STRANGER)

    c = _client(ledger)

    j = c.get("/v1/catalog").json()
    assert j["count"] == 3
    assert [e["app_id"] for e in j["entries"]] == [3, 2, 1]

    j = c.get("/v1/catalog", params={"publisher": PUBLISHER}).json()
    assert [e["title"] for e in j["entries"]] == ["Heretic", "Doom"]
    assert j["entries"][0]["cartridge_address"] == CARTRIDGE
    assert j["entries"][0]["semver"] == "1.0.0"

    j = c.get("/v1/catalog", params={"title": "doom"}).json()
    assert [e["app_id"] for e in j["entries"]] == [1]


def test_cartridge_status_and_raw(ledger: InMemoryLedger) -> None:
    data = bytes(range(256)) * 2
    header = put_cartridge(ledger, data, cartridge_id=12)
    c = _client(ledger, cache=MemoryCartridgeCache())

    r = c.get(f"/v1/cartridges/{CARTRIDGE}")
    assert r.status_code == 200
    j = r.json()
    assert j["complete"] is True
    assert j["cached"] is False
    assert j["chunks_found"] == j["chunks_expected"] == 11
    assert j["header"]["sha256"] == header.sha256_hex

    r = c.get(f"/v1/cartridges/{CARTRIDGE}/raw")
    assert r.status_code == 200
    assert r.content == data
    assert r.headers["x-cartridge-id"] == "12"
    assert r.headers["x-from-cache"] == "0"

    assert c.get(f"/v1/cartridges/{CARTRIDGE}/raw").headers["x-from-cache"] == "1"
    assert c.get(f"/v1/cartridges/{CARTRIDGE}").json()["cached"] is True


def test_partial_cartridge_is_a_conflict(ledger: InMemoryLedger) -> None:
    put_cartridge(ledger, bytes(200), skip={1})
    c = _client(ledger)

    j = c.get(f"/v1/cartridges/{CARTRIDGE}").json()
    assert j["complete"] is False
    assert j["missing"] == [1]

    r = c.get(f"/v1/cartridges/{CARTRIDGE}/raw")
    assert r.status_code == 409
    err = r.json()["error"]
    assert err["code"] == "incomplete_data"
    assert (err["details"]["found"], err["details"]["expected"]) == (3, 4)


def test_missing_header_is_not_found(ledger: InMemoryLedger) -> None:
    r = _client(ledger).get(f"/v1/cartridges/{CARTRIDGE}")
    assert r.status_code == 404
    assert r.json()["ok"] is False
    assert r.json()["error"]["code"] == "header_not_found"


def test_malformed_identity_is_a_bad_request(ledger: InMemoryLedger) -> None:
    r = _client(ledger).get("/v1/cartridges/NQ00BOGUS")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "format_error"


def test_verify_reports_digest_mismatch(ledger: InMemoryLedger) -> None:
    put_cartridge(ledger, bytes(90), cartridge_id=4, digest_of=b"other")
    c = _client(ledger)

    j = c.get(f"/v1/cartridges/{CARTRIDGE}/verify").json()
    assert j["valid"] is False
    assert j["cartridge_id"] == 4
    assert j["size"] == 90
    assert j["expected_sha256"] != j["actual_sha256"]

    r = c.get(f"/v1/cartridges/{CARTRIDGE}/raw")
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "integrity_error"


def test_verify_valid(ledger: InMemoryLedger) -> None:
    header = put_cartridge(ledger, b"hello cartridge")
    j = _client(ledger).get(f"/v1/cartridges/{CARTRIDGE}/verify").json()
    assert j["valid"] is True
    assert j["actual_sha256"] == header.sha256_hex


def test_cache_clear(ledger: InMemoryLedger) -> None:
    cache = MemoryCartridgeCache()
    put_cartridge(ledger, bytes(60))
    c = _client(ledger, cache=cache)
    c.get(f"/v1/cartridges/{CARTRIDGE}/raw")
    assert len(cache) == 1

    r = c.delete("/v1/cache")
    assert r.status_code == 200
    assert r.json()["removed"] == 1
    assert len(cache) == 0

    r = _client(ledger).delete("/v1/cache")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "no_cache"


def test_prod_mode_hides_docs(ledger: InMemoryLedger) -> None:
    assert _client(ledger, mode="prod").get("/docs").status_code == 404
    assert _client(ledger, mode="dev").get("/docs").status_code == 200


def test_error_status_mapping() -> None:
    e = ApiError.from_cart_error(HeaderNotFound(address=CARTRIDGE, data_records=0, transactions=0))
    assert (e.status_code, e.code) == (404, "header_not_found")

    assert ApiError.from_cart_error(PreconditionFailed("x", code="no_consensus")).status_code == 503
    assert ApiError.from_cart_error(PreconditionFailed("x", code="account_locked")).status_code == 412
    # Unlisted codes fall back to the error family.
    assert ApiError.from_cart_error(NetworkError("x", code="weird")).status_code == 502

    body = ApiError.bad_request("bad", "nope").to_body()
    assert body == {"ok": False, "error": {"code": "bad", "message": "nope", "details": {}}}


def _write_manifest(ledger: InMemoryLedger, directory, data: bytes) -> Manifest:
    header = put_cartridge(ledger, data, cartridge_id=21)
    m = Manifest(
        cartridge_id=21,
        filename="game.bin",
        total_size=len(data),
        chunk_size=header.chunk_size,
        sha256=header.sha256_hex,
        sender_address=PUBLISHER,
        network="test",
        cartridge_address=CARTRIDGE,
        expected_tx_hashes=[t.hash for t in ledger.transactions()],
    )
    write_manifest(m, str(directory / "game.json"))
    return m


def test_manifest_listing_and_detail(ledger: InMemoryLedger, tmp_path) -> None:
    m = _write_manifest(ledger, tmp_path, bytes(range(120)))
    (tmp_path / "broken.json").write_text("{}", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignore me", encoding="utf-8")
    c = _client(ledger, manifest_dir=str(tmp_path))

    j = c.get("/v1/manifests").json()
    assert j["count"] == 1
    assert j["manifests"][0]["name"] == "game"
    assert j["manifests"][0]["tx_count"] == len(m.expected_tx_hashes)

    j = c.get("/v1/manifests/game").json()
    assert j["cartridge_id"] == 21
    assert j["sha256"] == m.sha256
    assert j["expected_tx_hashes"] == m.expected_tx_hashes

    r = c.get("/v1/manifests/broken")
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "bad_manifest"


def test_manifest_raw_rebuilds_the_cartridge(ledger: InMemoryLedger, tmp_path) -> None:
    data = bytes(range(120))
    _write_manifest(ledger, tmp_path, data)
    c = _client(ledger, cache=MemoryCartridgeCache(), manifest_dir=str(tmp_path))

    r = c.get("/v1/manifests/game/raw")
    assert r.status_code == 200
    assert r.content == data
    assert r.headers["x-cartridge-id"] == "21"
    assert r.headers["x-from-cache"] == "0"
    assert c.get("/v1/manifests/game.json/raw").headers["x-from-cache"] == "1"


def test_manifest_lookup_errors(ledger: InMemoryLedger, tmp_path) -> None:
    c = _client(ledger, manifest_dir=str(tmp_path))

    r = c.get("/v1/manifests/missing")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "manifest_not_found"

    r = c.get("/v1/manifests/.hidden")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "bad_manifest_name"

    assert c.get("/v1/manifests").json()["count"] == 0
