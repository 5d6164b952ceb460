from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from cartledger.structured_logging import log_event

_OFF = {"0", "false", "no", "off"}


def request_logging_enabled() -> bool:
    """CARTLEDGER_LOG_REQUESTS=0 turns the http_request events off."""
    return (os.environ.get("CARTLEDGER_LOG_REQUESTS") or "1").strip().lower() not in _OFF


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Tags each request with an x-request-id and logs one ``http_request`` event.

    Cartridge downloads also report how many bytes were served.
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._logger = logging.getLogger("cartledger.http")

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.monotonic()

        fields = {"request_id": request_id, "method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception as e:
            self._emit(fields, started, status=500, error=str(e))
            raise

        response.headers.setdefault("x-request-id", request_id)
        self._emit(fields, started, status=response.status_code, served=response.headers.get("content-length"))
        return response

    def _emit(self, fields: dict, started: float, *, status: int, error: Optional[str] = None, served=None) -> None:
        log_event(
            self._logger,
            "http_request",
            status=int(status),
            duration_ms=int((time.monotonic() - started) * 1000),
            bytes=int(served) if served and served.isdigit() else None,
            error=error,
            **fields,
        )
