from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from cartledger.cancellation import CancellationToken
from cartledger.env import load_dotenv_if_present, reset_dotenv_state
from cartledger.errors import Cancelled
from cartledger.structured_logging import log_event


def test_log_event_emits_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("cartledger.test")
    caplog.set_level(logging.INFO, logger="cartledger.test")

    log_event(logger, "upload_chunk_sent", index=3, total=10)

    [rec] = caplog.records
    doc = json.loads(rec.getMessage())
    assert doc["event"] == "upload_chunk_sent"
    assert doc["index"] == 3 and doc["total"] == 10
    assert isinstance(doc["ts_ms"], int)


def test_log_event_falls_back_for_unserializable_fields(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("cartledger.test")
    caplog.set_level(logging.INFO, logger="cartledger.test")

    log_event(logger, "odd", blob=object())
    assert caplog.records[0].getMessage().startswith("event=odd blob=")


def test_log_event_respects_level(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("cartledger.test")
    caplog.set_level(logging.WARNING, logger="cartledger.test")

    log_event(logger, "quiet", level=logging.DEBUG)
    assert caplog.records == []


def test_dotenv_loads_once_without_overriding(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / "node.env"
    env_file.write_text("CARTLEDGER_TEST_FROM_FILE=file\nCARTLEDGER_TEST_KEEP=file\n")

    # setenv then delenv so both names are restored after the test.
    monkeypatch.setenv("CARTLEDGER_TEST_FROM_FILE", "x")
    monkeypatch.delenv("CARTLEDGER_TEST_FROM_FILE")
    monkeypatch.setenv("CARTLEDGER_TEST_KEEP", "process")
    monkeypatch.setenv("CARTLEDGER_DOTENV_PATH", str(env_file))

    reset_dotenv_state()
    try:
        assert load_dotenv_if_present() is True
        assert os.environ["CARTLEDGER_TEST_FROM_FILE"] == "file"
        assert os.environ["CARTLEDGER_TEST_KEEP"] == "process"
        assert load_dotenv_if_present() is False
    finally:
        reset_dotenv_state()


def test_dotenv_missing_file(tmp_path: Path) -> None:
    reset_dotenv_state()
    try:
        assert load_dotenv_if_present(str(tmp_path / "absent.env")) is False
    finally:
        reset_dotenv_state()


def test_cancellation_token() -> None:
    token = CancellationToken()
    token.raise_if_cancelled("start")

    token.cancel()
    assert token.is_cancelled()
    with pytest.raises(Cancelled) as ei:
        token.raise_if_cancelled("send")
    assert ei.value.code == "cancelled"
    assert ei.value.details == {"where": "send"}

    token.reset()
    assert not token.is_cancelled()
