"""Manifest creation and (de)serialization."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from localkb.errors import PersistenceError
from localkb.models import MANIFEST_VERSION, Manifest


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_manifest(model: str | None = None) -> Manifest:
    now = now_iso()
    return Manifest(created_at=now, updated_at=now, model=model)


def dumps_manifest(manifest: Manifest) -> bytes:
    return json.dumps(manifest.to_dict(), indent=2, sort_keys=False).encode("utf-8")


def loads_manifest(payload: bytes) -> Manifest:
    try:
        data = json.loads(payload.decode("utf-8"))
        manifest = Manifest.from_dict(data)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise PersistenceError(f"Unreadable manifest: {exc}") from exc
    if manifest.version != MANIFEST_VERSION:
        raise PersistenceError(
            f"Unsupported manifest version {manifest.version} (expected {MANIFEST_VERSION})"
        )
    return manifest
