from __future__ import annotations

from typing import Any, Dict, List, Optional

Json = Dict[str, Any]


class CartError(Exception):
    """Base error for the cartridge transport engine.

    Every error carries a stable machine ``code``, a human message and a
    ``details`` dict holding the counts/indices a caller needs to decide on a
    retry (e.g. ``{"found": 47, "expected": 212}``).
    """

    code = "cart_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Json] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.details: Json = dict(details or {})

    def to_dict(self) -> Json:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}

    def __str__(self) -> str:  # pragma: no cover
        if not self.details:
            return f"{self.code}:{self.message}"
        return f"{self.code}:{self.message}:{self.details}"


class FormatError(CartError, ValueError):
    """Malformed identity string, bad base32 symbol or out-of-range field value."""

    code = "format_error"


class DecodeMismatch(CartError):
    """Payload is not the requested record kind (wrong tag or too short)."""

    code = "decode_mismatch"


class PayloadTooLarge(CartError):
    code = "payload_too_large"


class IncompleteData(CartError):
    code = "incomplete_data"

    def __init__(self, *, found: int, expected: int, missing: Optional[List[int]] = None) -> None:
        missing_list = list(missing or [])
        super().__init__(
            f"{found}/{expected} chunks found, cannot reconstruct yet",
            details={"found": int(found), "expected": int(expected), "missing": missing_list[:64]},
        )
        self.found = int(found)
        self.expected = int(expected)
        self.missing = missing_list


class HeaderNotFound(CartError):
    """No CART record at the identity yet; the upload may still be in flight.

    Nothing is known about the expected chunk count until a header shows up,
    so only the DATA records already seen are reported.
    """

    code = "header_not_found"

    def __init__(self, *, address: str, data_records: int, transactions: int) -> None:
        super().__init__(
            f"no cartridge header found ({data_records} DATA records in {transactions} transactions)",
            details={"address": address, "data_records": int(data_records), "transactions": int(transactions)},
        )
        self.address = address
        self.data_records = int(data_records)
        self.transactions = int(transactions)


class SizeMismatch(CartError):
    code = "size_mismatch"

    def __init__(self, *, actual: int, expected: int) -> None:
        super().__init__(
            f"reassembled {actual} bytes, header declares {expected}",
            details={"actual": int(actual), "expected": int(expected)},
        )
        self.actual = int(actual)
        self.expected = int(expected)


class IntegrityError(CartError):
    """Digest mismatch. ``data`` still holds the assembled bytes for inspection."""

    code = "integrity_error"

    def __init__(self, *, expected: str, actual: str, data: bytes = b"") -> None:
        super().__init__(
            f"sha256 mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual, "size": len(data)},
        )
        self.expected = expected
        self.actual = actual
        self.data = data


class NetworkError(CartError):
    code = "network_error"


class PreconditionFailed(CartError):
    code = "precondition_failed"


class BudgetExceeded(CartError):
    code = "budget_exceeded"

    def __init__(self, *, failed_indices: List[int], sent: int, total: int, limit: int) -> None:
        super().__init__(
            f"upload stopped: {limit} consecutive chunk failures ({sent}/{total} chunks sent)",
            details={"failed_indices": list(failed_indices), "sent": int(sent), "total": int(total), "limit": int(limit)},
        )
        self.failed_indices = list(failed_indices)
        self.sent = int(sent)
        self.total = int(total)


class Cancelled(CartError):
    code = "cancelled"
