from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from cartledger.cancellation import CancellationToken
from cartledger.catalog import NOT_FOUND, CatalogScanner
from cartledger.codec.records import platform_name
from cartledger.config import ClientConfig, load_client_config
from cartledger.env import load_dotenv_if_present
from cartledger.errors import CartError
from cartledger.ledger.rpc import JsonRpcLedger
from cartledger.manifest import manifest_from_upload, read_manifest, write_manifest
from cartledger.preview import build_plan, render_plan, write_payloads
from cartledger.storage.cache import SqliteCartridgeCache
from cartledger.structured_logging import configure_structured_logging
from cartledger.sync import SyncPipeline
from cartledger.upload import UploadPipeline, UploadRequest

Json = Dict[str, Any]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 3
EXIT_INTERRUPTED = 130


def build_ledger(cfg: ClientConfig):
    """Ledger client for CLI commands; tests monkeypatch this."""
    return JsonRpcLedger(cfg.rpc_url, timeout_s=cfg.request_timeout_s)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


@contextmanager
def _cancel_on_sigint(token: CancellationToken) -> Iterator[None]:
    """First Ctrl-C stops the run at its next suspension point."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    prev = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        if token.is_cancelled():
            signal.signal(signal.SIGINT, prev)
            raise KeyboardInterrupt
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, prev)


def _config(args: argparse.Namespace) -> ClientConfig:
    return load_client_config(
        config_path=args.config,
        rpc_url=args.rpc_url,
        catalog_address=args.catalog,
        publisher_address=args.publisher,
        cache_path=args.cache_path,
        log_level=args.log_level,
    )


# ---- commands ----


def cmd_preview(args: argparse.Namespace, cfg: ClientConfig) -> int:
    data = Path(args.file).read_bytes()
    plan = build_plan(
        data,
        app_id=args.app_id,
        cartridge_id=args.cartridge_id,
        title=args.title,
        semver=args.semver,
        cartridge_address=args.cartridge_address,
        catalog_address=cfg.catalog_address,
        platform=args.platform,
        schema=args.schema,
        chunk_size=args.chunk_size or cfg.chunk_size,
    )
    if args.json:
        _print_json(plan.summary())
    else:
        print(render_plan(plan))
    if args.out_dir:
        written = write_payloads(plan, args.out_dir)
        print(f"wrote {len(written)} payload files to {args.out_dir}", file=sys.stderr)
    return EXIT_OK


def cmd_upload(args: argparse.Namespace, cfg: ClientConfig) -> int:
    path = Path(args.file)
    data = path.read_bytes()
    token = CancellationToken()

    overrides: Json = {"cancel": token, "dry_run": bool(args.dry_run)}
    if args.rate:
        overrides["rate_limit"] = float(args.rate)
    if args.no_preflight:
        overrides["preflight"] = False

    ledger = None if (args.dry_run and args.offline) else build_ledger(cfg)
    pipeline = UploadPipeline.from_config(ledger, cfg, **overrides)
    request = UploadRequest(
        cartridge_address=args.cartridge_address,
        title=args.title,
        semver=args.semver,
        platform=args.platform,
        cartridge_id=args.cartridge_id,
        app_id=args.app_id,
        filename=path.name,
    )

    with _cancel_on_sigint(token):
        result = pipeline.run(data, request)

    if args.manifest:
        write_manifest(manifest_from_upload(result, network=args.network or cfg.mode), args.manifest)

    _print_json(
        {
            "ok": result.complete,
            "dry_run": result.dry_run,
            "cartridge_id": result.cartridge_id,
            "app_id": result.app_id,
            "sha256": result.sha256,
            "total_size": result.total_size,
            "chunks": {"total": result.total_chunks, "sent": result.sent_chunks},
            "failed_chunks": [{"index": f.index, "message": f.message} for f in result.failed_chunks],
            "cart_tx_hash": result.cart_tx_hash,
            "cent_tx_hash": result.cent_tx_hash,
        }
    )
    return EXIT_OK if result.complete else EXIT_PARTIAL


def cmd_sync(args: argparse.Namespace, cfg: ClientConfig) -> int:
    if bool(args.address) == bool(args.manifest):
        print("sync needs exactly one of ADDRESS or --manifest", file=sys.stderr)
        return EXIT_USAGE
    manifest = None
    if args.manifest:
        try:
            manifest = read_manifest(args.manifest)
        except (OSError, ValueError) as e:
            print(f"manifest error: {e}", file=sys.stderr)
            return EXIT_USAGE

    token = CancellationToken()
    with SqliteCartridgeCache(cfg.cache_path) as cache:
        pipeline = SyncPipeline.from_config(build_ledger(cfg), cfg, cache=cache, cancel=token)
        with _cancel_on_sigint(token):
            if manifest is not None:
                result = pipeline.sync_from_manifest(manifest)
            else:
                result = pipeline.sync(args.address, args.publisher_filter)

    if args.out:
        Path(args.out).write_bytes(result.data)
    _print_json(
        {
            "ok": True,
            "address": result.address,
            "cartridge_id": result.header.cartridge_id,
            "size": len(result.data),
            "sha256": result.sha256,
            "from_cache": result.from_cache,
            "out": args.out or None,
        }
    )
    return EXIT_OK


def cmd_info(args: argparse.Namespace, cfg: ClientConfig) -> int:
    pipeline = SyncPipeline.from_config(build_ledger(cfg), cfg)
    lookup = pipeline.load_header(args.address, args.publisher_filter)
    out: Json = {
        "ok": lookup.found,
        "address": lookup.address,
        "transactions": lookup.transactions,
        "data_records": lookup.data_records,
        "other_records": lookup.other_records,
    }
    if lookup.header is not None:
        h = lookup.header.header
        out["header"] = {
            "cartridge_id": h.cartridge_id,
            "schema": h.schema,
            "platform": platform_name(h.platform),
            "chunk_size": h.chunk_size,
            "total_size": h.total_size,
            "sha256": h.sha256_hex,
            "expected_chunks": h.expected_chunks,
            "tx_hash": lookup.header.tx_hash,
            "height": lookup.header.height,
        }
    _print_json(out)
    return EXIT_OK if lookup.found else EXIT_PARTIAL


def cmd_catalog(args: argparse.Namespace, cfg: ClientConfig) -> int:
    scanner = CatalogScanner(
        build_ledger(cfg),
        cfg.catalog_address,
        page_size=cfg.page_size,
        scan_pages=cfg.catalog_scan_pages,
    )
    publisher = None if args.any_publisher else cfg.publisher_address

    if args.catalog_cmd == "next-id":
        _print_json({"app_id": scanner.next_app_id(publisher)})
        return EXIT_OK

    if args.catalog_cmd == "find":
        app_id = scanner.find_app_id_by_title(args.title, publisher)
        _print_json({"title": args.title, "app_id": app_id, "found": app_id != NOT_FOUND})
        return EXIT_OK if app_id != NOT_FOUND else EXIT_PARTIAL

    rows: List[Json] = [
        {
            "app_id": r.entry.app_id,
            "title": r.entry.title_short,
            "semver": r.entry.semver_str,
            "platform": platform_name(r.entry.platform),
            "cartridge_address": r.cartridge_address,
            "height": r.height,
            "tx_hash": r.tx_hash,
        }
        for r in scanner.entries(publisher)
    ]
    _print_json(rows)
    return EXIT_OK


def cmd_cache(args: argparse.Namespace, cfg: ClientConfig) -> int:
    with SqliteCartridgeCache(cfg.cache_path) as cache:
        if args.cache_cmd == "clear":
            _print_json({"ok": True, "removed": cache.clear_all()})
            return EXIT_OK
        _print_json(
            [
                {"cartridge_id": e.cartridge_id, "sha256": e.sha256, "size": e.size, "filename": e.filename, "created_ts_ms": e.created_ts_ms}
                for e in cache.entries()
            ]
        )
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, cfg: ClientConfig) -> int:
    import uvicorn

    from cartledger.api.app import create_app

    uvicorn.run(create_app(cfg=cfg), host=args.host, port=args.port, log_level="info")
    return EXIT_OK


# ---- parser ----


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cartledger", description="Store and fetch cartridges as ledger records")
    p.add_argument("--config", default=None, help="JSON config file (else CARTLEDGER_CONFIG_PATH)")
    p.add_argument("--rpc-url", default=None)
    p.add_argument("--catalog", default=None, help="catalog identity, or main/test")
    p.add_argument("--publisher", default=None, help="sender/publisher identity")
    p.add_argument("--cache-path", default=None)
    p.add_argument("--log-level", default=None)
    sub = p.add_subparsers(dest="cmd", required=True)

    pv = sub.add_parser("preview", help="print the transaction plan for a file (offline)")
    pv.add_argument("file")
    pv.add_argument("--app-id", type=int, required=True)
    pv.add_argument("--cartridge-id", type=int, required=True)
    pv.add_argument("--title", required=True)
    pv.add_argument("--semver", required=True)
    pv.add_argument("--cartridge-address", required=True)
    pv.add_argument("--platform", default="DOS")
    pv.add_argument("--schema", type=int, default=1)
    pv.add_argument("--chunk-size", type=int, default=0)
    pv.add_argument("--out-dir", default="")
    pv.add_argument("--json", action="store_true")
    pv.set_defaults(func=cmd_preview)

    up = sub.add_parser("upload", help="upload a file as DATA/CART/CENT records")
    up.add_argument("file")
    up.add_argument("--cartridge-address", required=True)
    up.add_argument("--title", required=True)
    up.add_argument("--semver", default="1.0.0")
    up.add_argument("--platform", default="DOS")
    up.add_argument("--cartridge-id", type=int, default=0)
    up.add_argument("--app-id", type=int, default=0)
    up.add_argument("--rate", type=float, default=0.0, help="tx/s")
    up.add_argument("--dry-run", action="store_true")
    up.add_argument("--offline", action="store_true", help="with --dry-run: no ledger reads either")
    up.add_argument("--no-preflight", action="store_true")
    up.add_argument("--manifest", default="", help="write a manifest JSON here")
    up.add_argument("--network", default="")
    up.set_defaults(func=cmd_upload)

    sy = sub.add_parser("sync", help="reconstruct and verify a cartridge")
    sy.add_argument("address", nargs="?", default="")
    sy.add_argument("--manifest", default="", help="rebuild from the transaction hashes in this upload manifest")
    sy.add_argument("--publisher-filter", default=None, help="only trust records from this sender")
    sy.add_argument("--out", default="")
    sy.set_defaults(func=cmd_sync)

    inf = sub.add_parser("info", help="show the cartridge header at an identity")
    inf.add_argument("address")
    inf.add_argument("--publisher-filter", default=None)
    inf.set_defaults(func=cmd_info)

    cat = sub.add_parser("catalog", help="catalog queries")
    cat.add_argument("--any-publisher", action="store_true", help="do not filter by publisher")
    cat_sub = cat.add_subparsers(dest="catalog_cmd", required=True)
    cat_sub.add_parser("next-id")
    find = cat_sub.add_parser("find")
    find.add_argument("title")
    cat_sub.add_parser("list")
    cat.set_defaults(func=cmd_catalog)

    ca = sub.add_parser("cache", help="local cartridge cache")
    ca_sub = ca.add_subparsers(dest="cache_cmd", required=True)
    ca_sub.add_parser("clear")
    ca_sub.add_parser("list")
    ca.set_defaults(func=cmd_cache)

    sv = sub.add_parser("serve", help="run the HTTP read API")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8080)
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()
    args = build_parser().parse_args(argv)

    try:
        cfg = _config(args)
    except (ValueError, OSError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_structured_logging(cfg.log_level)

    try:
        return int(args.func(args, cfg))
    except CartError as e:
        print(json.dumps({"ok": False, "error": e.to_dict()}, sort_keys=True), file=sys.stderr)
        if e.code in ("incomplete_data", "header_not_found"):
            return EXIT_PARTIAL
        if e.code == "cancelled":
            return EXIT_INTERRUPTED
        return EXIT_ERROR
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
