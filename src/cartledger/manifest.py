from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cartledger.upload import UploadResult

Json = Dict[str, Any]


@dataclass(frozen=True)
class Manifest:
    """Upload record kept next to the source file so a later sync can be checked."""

    cartridge_id: int
    filename: str
    total_size: int
    chunk_size: int
    sha256: str
    sender_address: str
    network: str
    cartridge_address: str = ""
    app_id: int = 0
    expected_tx_hashes: List[str] = field(default_factory=list)

    def to_json(self) -> Json:
        return asdict(self)

    @staticmethod
    def from_json(obj: Json) -> "Manifest":
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        # "game_id" is the older name for cartridge_id.
        cid = obj.get("cartridge_id", obj.get("game_id"))
        if cid is None:
            raise ValueError("manifest is missing cartridge_id")
        hashes = obj.get("expected_tx_hashes") or []
        if not isinstance(hashes, list):
            raise ValueError("expected_tx_hashes must be a list")
        return Manifest(
            cartridge_id=int(cid),
            filename=str(obj.get("filename") or ""),
            total_size=int(obj.get("total_size") or 0),
            chunk_size=int(obj.get("chunk_size") or 0),
            sha256=str(obj.get("sha256") or "").lower(),
            sender_address=str(obj.get("sender_address") or ""),
            network=str(obj.get("network") or ""),
            cartridge_address=str(obj.get("cartridge_address") or ""),
            app_id=int(obj.get("app_id") or 0),
            expected_tx_hashes=[str(h) for h in hashes if h],
        )


def manifest_from_upload(result: UploadResult, *, network: str) -> Manifest:
    hashes = list(result.chunk_tx_hashes)
    if result.cart_tx_hash and not result.dry_run:
        hashes.append(result.cart_tx_hash)
    return Manifest(
        cartridge_id=result.cartridge_id,
        filename=result.filename,
        total_size=result.total_size,
        chunk_size=result.chunk_size,
        sha256=result.sha256,
        sender_address=result.sender_address,
        network=network,
        cartridge_address=result.cartridge_address,
        app_id=result.app_id,
        expected_tx_hashes=hashes,
    )


def write_manifest(manifest: Manifest, path: str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(manifest.to_json(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return p


def read_manifest(path: str) -> Manifest:
    return Manifest.from_json(json.loads(Path(path).read_text(encoding="utf-8")))


MANIFEST_SUFFIX = ".json"


def list_manifests(directory: str) -> List[Tuple[str, Manifest]]:
    """``(name, manifest)`` for every readable ``*.json`` manifest, sorted by name.

    Unreadable or malformed files are skipped. A missing directory lists nothing.
    """
    d = Path(directory)
    if not d.is_dir():
        return []
    out: List[Tuple[str, Manifest]] = []
    for p in sorted(d.iterdir()):
        if not p.is_file() or p.suffix.lower() != MANIFEST_SUFFIX:
            continue
        try:
            out.append((p.stem, read_manifest(str(p))))
        except (OSError, ValueError):
            continue
    return out


def manifest_path(directory: str, name: str) -> Optional[Path]:
    """Path of manifest ``name`` inside ``directory``; None for names that would escape it."""
    stem = (name or "").strip()
    if stem.lower().endswith(MANIFEST_SUFFIX):
        stem = stem[: -len(MANIFEST_SUFFIX)]
    if not stem or stem.startswith(".") or "/" in stem or "\\" in stem:
        return None
    return Path(directory) / f"{stem}{MANIFEST_SUFFIX}"
