from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cartledger.codec.address import is_address, normalize_address
from cartledger.codec.records import MAX_CHUNK_SIZE

Json = Dict[str, Any]

ENV_PREFIX = "CARTLEDGER_"

# Well-known catalog identities.
CATALOG_ADDRESSES: Dict[str, str] = {
    "main": "NQ15 NXMP 11A0 TMKP G1Q8 4ABD U16C XD6Q D948",
    "test": "NQ32 0VD4 26TR 1394 KXBJ 862C NFKG 61M5 GFJ0",
}

DEFAULT_PUBLISHER_ADDRESS = "NQ89 4GDH 0J4U C2FY TU0Y TP1X J1H7 3HX3 PVSE"


def _as_int(v: Any, default: int) -> int:
    if v is None or isinstance(v, bool):
        return int(default)
    try:
        return int(str(v).strip())
    except ValueError:
        return int(default)


def _as_float(v: Any, default: float) -> float:
    if v is None or isinstance(v, bool):
        return float(default)
    try:
        return float(str(v).strip())
    except ValueError:
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class ClientConfig:
    rpc_url: str
    mode: str  # "dev" | "testnet" | "prod"

    catalog_address: str
    publisher_address: str

    # SQLite file holding reconstructed cartridges.
    cache_path: str

    # Directory of upload manifests served by the HTTP API.
    manifest_dir: str

    rate_limit: float  # tx/s
    page_size: int
    max_pages: int
    catalog_scan_pages: int
    chunk_size: int
    max_consecutive_failures: int

    preflight: bool
    strict_checksum: bool

    request_timeout_s: float

    log_level: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}


def resolve_catalog_address(value: str) -> str:
    """Expand the ``main``/``test`` shortcuts; anything else is returned normalized."""
    key = (value or "").strip().lower()
    if key in CATALOG_ADDRESSES:
        return normalize_address(CATALOG_ADDRESSES[key])
    return normalize_address(value)


def validate_client_config(cfg: ClientConfig) -> None:
    """Fail-fast validation; raises ValueError naming the offending field."""

    if not isinstance(cfg.rpc_url, str) or not cfg.rpc_url.strip():
        raise ValueError("rpc_url must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {sorted(_ALLOWED_MODES)}; got: {cfg.mode!r}")

    if float(cfg.rate_limit) <= 0:
        raise ValueError(f"rate_limit must be > 0; got: {cfg.rate_limit}")

    if int(cfg.page_size) <= 0:
        raise ValueError(f"page_size must be > 0; got: {cfg.page_size}")

    if int(cfg.max_pages) <= 0:
        raise ValueError(f"max_pages must be > 0; got: {cfg.max_pages}")

    if int(cfg.catalog_scan_pages) <= 0:
        raise ValueError(f"catalog_scan_pages must be > 0; got: {cfg.catalog_scan_pages}")

    if not 1 <= int(cfg.chunk_size) <= MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be 1..{MAX_CHUNK_SIZE}; got: {cfg.chunk_size}")

    if int(cfg.max_consecutive_failures) <= 0:
        raise ValueError(f"max_consecutive_failures must be > 0; got: {cfg.max_consecutive_failures}")

    if float(cfg.request_timeout_s) <= 0:
        raise ValueError(f"request_timeout_s must be > 0; got: {cfg.request_timeout_s}")

    if not isinstance(cfg.cache_path, str) or not cfg.cache_path.strip():
        raise ValueError("cache_path must be a non-empty string")
    if not isinstance(cfg.manifest_dir, str) or not cfg.manifest_dir.strip():
        raise ValueError("manifest_dir must be a non-empty string")

    for name, addr in (("catalog_address", cfg.catalog_address), ("publisher_address", cfg.publisher_address)):
        if not is_address(addr, strict=cfg.strict_checksum):
            raise ValueError(f"{name} is not a valid identity: {addr!r}")


def default_client_config() -> ClientConfig:
    return ClientConfig(
        rpc_url="http://127.0.0.1:8648",
        mode="prod",
        catalog_address=resolve_catalog_address("main"),
        publisher_address=normalize_address(DEFAULT_PUBLISHER_ADDRESS),
        cache_path="./data/cartledger.db",
        manifest_dir="./manifests",
        rate_limit=25.0,
        page_size=500,
        max_pages=100,
        catalog_scan_pages=20,
        chunk_size=MAX_CHUNK_SIZE,
        max_consecutive_failures=5,
        preflight=True,
        strict_checksum=False,
        request_timeout_s=30.0,
        log_level="INFO",
    )


def _merge(base: ClientConfig, raw: Mapping[str, Any]) -> ClientConfig:
    catalog_raw = raw.get("catalog_address")
    return ClientConfig(
        rpc_url=_as_str(raw.get("rpc_url"), base.rpc_url),
        mode=_as_str(raw.get("mode"), base.mode).strip().lower(),
        catalog_address=resolve_catalog_address(catalog_raw) if catalog_raw else base.catalog_address,
        publisher_address=normalize_address(_as_str(raw.get("publisher_address"), base.publisher_address)),
        cache_path=_as_str(raw.get("cache_path"), base.cache_path),
        manifest_dir=_as_str(raw.get("manifest_dir"), base.manifest_dir),
        rate_limit=_as_float(raw.get("rate_limit"), base.rate_limit),
        page_size=_as_int(raw.get("page_size"), base.page_size),
        max_pages=_as_int(raw.get("max_pages"), base.max_pages),
        catalog_scan_pages=_as_int(raw.get("catalog_scan_pages"), base.catalog_scan_pages),
        chunk_size=_as_int(raw.get("chunk_size"), base.chunk_size),
        max_consecutive_failures=_as_int(raw.get("max_consecutive_failures"), base.max_consecutive_failures),
        preflight=_as_bool(raw.get("preflight"), base.preflight),
        strict_checksum=_as_bool(raw.get("strict_checksum"), base.strict_checksum),
        request_timeout_s=_as_float(raw.get("request_timeout_s"), base.request_timeout_s),
        log_level=_as_str(raw.get("log_level"), base.log_level),
    )


def read_client_config_file(path: str, base: Optional[ClientConfig] = None) -> ClientConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("client config must be a JSON object")
    return _merge(base or default_client_config(), raw)


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Json:
    """CARTLEDGER_<FIELD> variables present in ``environ``, keyed by field name."""
    env = os.environ if environ is None else environ
    out: Json = {}
    for f in fields(ClientConfig):
        v = env.get(ENV_PREFIX + f.name.upper())
        if v is not None and str(v).strip():
            out[f.name] = v
    return out


def load_client_config(
    *,
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ClientConfig:
    """defaults -> JSON file -> CARTLEDGER_* env -> explicit keyword overrides."""
    env = os.environ if environ is None else environ

    cfg = default_client_config()
    p = config_path or env.get(ENV_PREFIX + "CONFIG_PATH")
    if p:
        cfg = read_client_config_file(p, cfg)

    cfg = _merge(cfg, env_overrides(env))

    explicit = {k: v for k, v in overrides.items() if v is not None}
    if explicit:
        unknown = set(explicit) - {f.name for f in fields(ClientConfig)}
        if unknown:
            raise ValueError(f"unknown config fields: {sorted(unknown)}")
        if "catalog_address" in explicit:
            explicit["catalog_address"] = resolve_catalog_address(explicit["catalog_address"])
        cfg = replace(cfg, **explicit)

    validate_client_config(cfg)
    return cfg
