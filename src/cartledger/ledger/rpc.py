from __future__ import annotations

import itertools
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from cartledger.codec.address import normalize_address
from cartledger.errors import NetworkError
from cartledger.ledger.client import LedgerTx, normalize_transaction
from cartledger.structured_logging import log_event

Json = Dict[str, Any]

SEND_METHOD = "sendBasicTransactionWithData"

_log = logging.getLogger("cartledger.rpc")


class JsonRpcLedger:
    """JSON-RPC 2.0 ledger client over HTTP POST.

    - Results wrapped as ``{"data": ...}`` are unwrapped.
    - Transport failures, non-2xx responses and RPC errors raise NetworkError
      with code ``transport_error`` / ``http_error`` / ``rpc_error``.
    - Payloads travel hex-encoded.
    """

    def __init__(self, url: str, *, timeout_s: float = 30.0) -> None:
        if not isinstance(url, str) or not url.strip():
            raise ValueError("rpc url must be a non-empty string")
        self.url = url.strip()
        self.timeout_s = float(timeout_s)
        self._ids = itertools.count(1)

    # ---- transport ----

    def _post(self, body: Json) -> Any:
        data = json.dumps(body).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            raise NetworkError(
                f"HTTP {e.code}: {e.reason}",
                code="http_error",
                details={"method": body.get("method"), "status": int(e.code or 0)},
            ) from e
        except urllib.error.URLError as e:
            raise NetworkError(
                f"transport failure: {getattr(e, 'reason', e)}",
                code="transport_error",
                details={"method": body.get("method")},
            ) from e
        except (OSError, TimeoutError) as e:
            raise NetworkError(
                f"transport failure: {e}",
                code="transport_error",
                details={"method": body.get("method")},
            ) from e

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise NetworkError(
                "invalid json in rpc response",
                code="bad_response",
                details={"method": body.get("method"), "raw": raw[:200]},
            ) from e

    def call(self, method: str, params: Any = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": {} if params is None else params}
        doc = self._post(body)
        if not isinstance(doc, dict):
            raise NetworkError("rpc response is not an object", code="bad_response", details={"method": method})

        err = doc.get("error")
        if err:
            msg = err.get("message") if isinstance(err, dict) else None
            code_num = err.get("code") if isinstance(err, dict) else None
            raise NetworkError(
                f"RPC error: {msg or json.dumps(err)}",
                code="rpc_error",
                details={"method": method, "rpc_code": code_num},
            )

        result = doc.get("result")
        if isinstance(result, dict) and "data" in result:
            return result["data"]
        return result

    # ---- query contract ----

    def is_consensus_established(self) -> bool:
        return self.call("isConsensusEstablished", {}) is True

    def is_account_unlocked(self, address: str) -> bool:
        return self.call("isAccountUnlocked", {"address": normalize_address(address)}) is True

    def get_block_number(self) -> int:
        result = self.call("getBlockNumber", {})
        height = _parse_height(result)
        if height is None:
            raise NetworkError(
                "failed to parse block number",
                code="bad_response",
                details={"result": repr(result)[:200]},
            )
        return height

    def get_transaction_by_hash(self, tx_hash: str) -> Optional[LedgerTx]:
        result = self.call("getTransactionByHash", {"hash": tx_hash})
        return normalize_transaction(result)

    def get_transactions_by_address(
        self, address: str, page_size: int, cursor: Optional[str] = None
    ) -> List[LedgerTx]:
        params: Json = {"address": normalize_address(address), "max": int(page_size)}
        if cursor:
            params["startAt"] = cursor
        result = self.call("getTransactionsByAddress", params)

        if isinstance(result, dict):
            result = result.get("transactions") or result.get("data") or []
        if not isinstance(result, list):
            raise NetworkError(
                "no transaction array in response",
                code="bad_response",
                details={"address": params["address"]},
            )

        out: List[LedgerTx] = []
        for raw in result:
            tx = normalize_transaction(raw)
            if tx is not None:
                out.append(tx)
        return out

    # ---- command contract ----

    def send_transaction(
        self,
        sender: str,
        recipient: str,
        payload: bytes,
        *,
        value: int = 1,
        fee: int = 0,
        validity_start_height: int,
    ) -> str:
        wallet = normalize_address(sender)
        to = normalize_address(recipient)
        data_hex = bytes(payload).hex()
        vsh = int(validity_start_height)

        named = {
            "wallet": wallet,
            "recipient": to,
            "data": data_hex,
            "value": int(value),
            "fee": int(fee),
            "validityStartHeight": vsh,
        }
        try:
            result = self.call(SEND_METHOD, named)
        except NetworkError as e:
            if e.code != "rpc_error":
                raise
            # Some backends only accept positional params.
            log_event(_log, "rpc_send_positional_fallback", level=logging.DEBUG, reason=e.message)
            result = self.call(SEND_METHOD, [wallet, to, data_hex, int(value), int(fee), vsh])

        tx_hash = _extract_tx_hash(result)
        if not tx_hash:
            raise NetworkError("no transaction hash in response", code="bad_response", details={"result": repr(result)[:200]})
        return tx_hash


def _parse_height(result: Any) -> Optional[int]:
    if isinstance(result, bool):
        return None
    if isinstance(result, int):
        return result
    if isinstance(result, float):
        return int(result)
    if isinstance(result, str):
        s = result.strip()
        try:
            return int(s, 16) if s[:2] in ("0x", "0X") else int(s)
        except ValueError:
            return None
    if isinstance(result, dict):
        for k in ("data", "number", "height", "blockNumber"):
            if k in result:
                v = _parse_height(result[k])
                if v is not None:
                    return v
    return None


def _extract_tx_hash(result: Any) -> str:
    if isinstance(result, str):
        return result.strip()
    if isinstance(result, dict):
        for k in ("Blake2bHash", "hash"):
            v = result.get(k)
            if isinstance(v, str) and v.strip():
                return v.strip()
    return ""
