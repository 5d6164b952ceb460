from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cartledger.api.errors import ApiError
from cartledger.api.routes import router
from cartledger.api.structured_logging import RequestLogMiddleware, request_logging_enabled
from cartledger.config import ClientConfig, load_client_config
from cartledger.errors import CartError
from cartledger.ledger.rpc import JsonRpcLedger
from cartledger.storage.cache import SqliteCartridgeCache


def build_ledger(cfg: ClientConfig):
    """Ledger client for the API; tests monkeypatch this."""
    return JsonRpcLedger(cfg.rpc_url, timeout_s=cfg.request_timeout_s)


def create_app(
    *,
    cfg: Optional[ClientConfig] = None,
    ledger: Any = None,
    cache: Any = None,
    boot_runtime: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load config, build the JSON-RPC ledger client and
        open the SQLite cache at cfg.cache_path for anything not passed in
      - False: use only what is passed in (unit tests)
    """
    if cfg is None:
        cfg = load_client_config()

    owns_cache = False
    if boot_runtime:
        if ledger is None:
            ledger = build_ledger(cfg)
        if cache is None:
            cache = SqliteCartridgeCache(cfg.cache_path).open()
            owns_cache = True

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        yield
        if owns_cache:
            cache.close()

    if cfg.mode == "prod":
        app = FastAPI(title="cartledger", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)
    else:
        app = FastAPI(title="cartledger", lifespan=_lifespan)

    app.state.cfg = cfg
    app.state.ledger = ledger
    app.state.cache = cache

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(CartError)
    async def _cart_error(request: Request, exc: CartError) -> JSONResponse:
        err = ApiError.from_cart_error(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_body())

    if request_logging_enabled():
        app.add_middleware(RequestLogMiddleware)
    app.include_router(router)
    return app
