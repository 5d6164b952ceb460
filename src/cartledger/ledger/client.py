from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from cartledger.codec.address import normalize_address

Json = Dict[str, Any]


@dataclass(frozen=True)
class LedgerTx:
    """One ledger transaction in the fixed shape the pipelines consume."""

    hash: str
    height: int
    sender: str
    recipient: str
    payload: bytes


class LedgerClient(Protocol):
    """Query/command contract of a ledger node.

    ``get_transactions_by_address`` returns newest-first; ``cursor`` is an
    exclusive transaction hash (results are strictly older than it).
    """

    def is_consensus_established(self) -> bool: ...

    def is_account_unlocked(self, address: str) -> bool: ...

    def get_block_number(self) -> int: ...

    def get_transaction_by_hash(self, tx_hash: str) -> Optional[LedgerTx]: ...

    def get_transactions_by_address(
        self, address: str, page_size: int, cursor: Optional[str] = None
    ) -> List[LedgerTx]: ...

    def send_transaction(
        self,
        sender: str,
        recipient: str,
        payload: bytes,
        *,
        value: int = 1,
        fee: int = 0,
        validity_start_height: int,
    ) -> str: ...


_HASH_KEYS = ("hash", "Hash", "transactionHash", "txHash")
_HEIGHT_KEYS = ("height", "Height", "blockNumber", "BlockNumber", "block_number")
_SENDER_KEYS = ("from", "From", "from_", "sender")
_RECIPIENT_KEYS = ("to", "To", "to_", "recipient")
_PAYLOAD_KEYS = (
    "recipientData",
    "RecipientData",
    "recipient_data",
    "senderData",
    "SenderData",
    "sender_data",
    "data",
    "Data",
)


def _first(raw: Json, keys: tuple) -> Any:
    for k in keys:
        v = raw.get(k)
        if v not in (None, "", 0):
            return v
    return None


def _as_height(v: Any) -> int:
    if v is None or isinstance(v, bool):
        return 0
    if isinstance(v, int):
        return v
    s = str(v).strip()
    try:
        return int(s, 16) if s[:2] in ("0x", "0X") else int(s)
    except ValueError:
        return 0


def _as_payload(v: Any) -> bytes:
    if v is None:
        return b""
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    if isinstance(v, list):
        try:
            return bytes(int(x) & 0xFF for x in v)
        except (TypeError, ValueError):
            return b""
    s = str(v).strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    try:
        return bytes.fromhex(s)
    except ValueError:
        return b""


def normalize_transaction(raw: Any) -> Optional[LedgerTx]:
    """Adapt one backend transaction object to LedgerTx.

    This is the only place that knows about backend field-name variance.
    Returns None for non-objects and for objects without a hash.
    """
    if isinstance(raw, LedgerTx):
        return raw
    if not isinstance(raw, dict):
        return None
    tx_hash = _first(raw, _HASH_KEYS)
    if not tx_hash:
        return None
    return LedgerTx(
        hash=str(tx_hash),
        height=_as_height(_first(raw, _HEIGHT_KEYS)),
        sender=normalize_address(str(_first(raw, _SENDER_KEYS) or "")),
        recipient=normalize_address(str(_first(raw, _RECIPIENT_KEYS) or "")),
        payload=_as_payload(_first(raw, _PAYLOAD_KEYS)),
    )


def same_address(a: str, b: str) -> bool:
    """Case- and whitespace-insensitive identity comparison."""
    return normalize_address(a) == normalize_address(b)
