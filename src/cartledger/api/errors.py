from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from cartledger.errors import CartError

# CartError.code -> HTTP status
_STATUS_BY_CODE: Dict[str, int] = {
    "format_error": 400,
    "decode_mismatch": 400,
    "payload_too_large": 413,
    "header_not_found": 404,
    "incomplete_data": 409,
    "size_mismatch": 422,
    "integrity_error": 422,
    "precondition_failed": 412,
    "no_consensus": 503,
    "account_locked": 412,
    "network_error": 502,
    "transport_error": 502,
    "http_error": 502,
    "rpc_error": 502,
    "bad_response": 502,
    "budget_exceeded": 502,
    "cancelled": 503,
}


@dataclass(eq=False)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    def to_body(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": dict(self.details)}}

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def from_cart_error(e: CartError) -> "ApiError":
        status = _STATUS_BY_CODE.get(e.code)
        if status is None:
            # Subclass codes not listed fall back to the family's status.
            for cls in type(e).__mro__:
                status = _STATUS_BY_CODE.get(getattr(cls, "code", ""))
                if status is not None:
                    break
        return ApiError(status or 500, e.code, e.message, dict(e.details))
