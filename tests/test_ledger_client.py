from __future__ import annotations

import pytest

from conftest import CARTRIDGE, PUBLISHER, STRANGER
from cartledger.codec.address import format_address
from cartledger.errors import NetworkError
from cartledger.ledger.client import LedgerTx, normalize_transaction, same_address
from cartledger.ledger.memory import InMemoryLedger


def test_normalize_common_field_names() -> None:
    tx = normalize_transaction(
        {
            "hash": "abc",
            "blockNumber": 17,
            "from": format_address(PUBLISHER).lower(),
            "to": CARTRIDGE,
            "data": "0x44415441",
        }
    )
    assert tx == LedgerTx(hash="abc", height=17, sender=PUBLISHER, recipient=CARTRIDGE, payload=b"DATA")


def test_normalize_alternate_field_names() -> None:
    tx = normalize_transaction(
        {
            "Hash": "def",
            "Height": "0x1f",
            "From": PUBLISHER,
            "To": CARTRIDGE,
            "RecipientData": [67, 65, 82, 84],
        }
    )
    assert tx is not None
    assert tx.height == 31
    assert tx.payload == b"CART"

    # senderData is used when there is no recipient data.
    tx2 = normalize_transaction({"transactionHash": "x", "senderData": "00ff"})
    assert tx2.payload == b"\x00\xff"
    assert tx2.height == 0


def test_normalize_rejects_non_objects_and_hashless_objects() -> None:
    assert normalize_transaction("abc") is None
    assert normalize_transaction(None) is None
    assert normalize_transaction({"blockNumber": 3}) is None

    already = LedgerTx(hash="h", height=1, sender="", recipient="", payload=b"")
    assert normalize_transaction(already) is already


def test_bad_hex_payload_decodes_to_empty() -> None:
    tx = normalize_transaction({"hash": "h", "data": "not-hex"})
    assert tx.payload == b""


def test_same_address() -> None:
    assert same_address(format_address(PUBLISHER).lower(), PUBLISHER)
    assert not same_address(PUBLISHER, STRANGER)


def test_memory_ledger_cursor_is_exclusive() -> None:
    ledger = InMemoryLedger()
    txs = [ledger.append(sender=PUBLISHER, recipient=CARTRIDGE, payload=bytes([i])) for i in range(5)]

    first = ledger.get_transactions_by_address(CARTRIDGE, 2)
    assert [t.hash for t in first] == [txs[4].hash, txs[3].hash]

    rest = ledger.get_transactions_by_address(CARTRIDGE, 10, first[-1].hash)
    assert [t.hash for t in rest] == [txs[2].hash, txs[1].hash, txs[0].hash]

    assert ledger.get_transactions_by_address(CARTRIDGE, 10, "unknown") == []
    assert ledger.get_transactions_by_address(STRANGER, 10) == []


def test_memory_ledger_scripted_failures() -> None:
    ledger = InMemoryLedger(height=10)
    ledger.fail_next(1)

    with pytest.raises(NetworkError) as ei:
        ledger.send_transaction(PUBLISHER, CARTRIDGE, b"x", validity_start_height=10)
    assert ei.value.code == "rpc_error"

    tx_hash = ledger.send_transaction(PUBLISHER, CARTRIDGE, b"y", validity_start_height=10)
    assert ledger.get_transaction_by_hash(tx_hash).payload == b"y"
    assert ledger.get_block_number() == 11
    assert [c.payload for c in ledger.sent] == [b"x", b"y"]
    assert len(ledger.transactions()) == 1

    ledger.fail_when(lambda call: call.payload == b"z")
    with pytest.raises(NetworkError):
        ledger.send_transaction(PUBLISHER, CARTRIDGE, b"z", validity_start_height=11)
