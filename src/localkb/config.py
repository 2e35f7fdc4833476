"""Application configuration defaults and loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping

from localkb.embedding.encoder import DEFAULT_MODEL
from localkb.ingestion.chunks import ExtractOptions

LOGGER = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
DEFAULT_DATA_DIR = ".localkb"
DEFAULT_INCLUDE = [".pdf", ".md", ".markdown", ".txt", ".docx", ".pages"]
DEFAULT_EXCLUDE = ["**/node_modules/**", "**/.git/**"]


def _parse_retention(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        parsed = int(float(value))
    except ValueError:
        return fallback
    return parsed if parsed >= 0 else fallback


@dataclass(slots=True)
class MirrorConfig:
    enabled: bool = False
    url: str | None = None
    key: str | None = None
    slug: str = "localkb"
    title: str = "Local Knowledge Base"
    description: str | None = None
    manifest_retention: int = 5
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.url) and bool(self.key)

    @classmethod
    def from_env(cls, env: Mapping[str, str], base: "MirrorConfig | None" = None) -> "MirrorConfig":
        config = base or cls()
        if "SUPABASE_SYNC" in env:
            config.enabled = env["SUPABASE_SYNC"].strip().lower() == "true"
        config.url = env.get("SUPABASE_URL") or config.url
        config.key = (
            env.get("SUPABASE_SERVICE_ROLE_KEY")
            or env.get("SUPABASE_SERVICE_KEY")
            or env.get("SUPABASE_ANON_KEY")
            or config.key
        )
        config.slug = env.get("SUPABASE_KNOWLEDGE_SLUG") or config.slug
        config.title = env.get("SUPABASE_KNOWLEDGE_TITLE") or config.title
        config.description = env.get("SUPABASE_KNOWLEDGE_DESCRIPTION") or config.description
        config.manifest_retention = _parse_retention(
            env.get("SUPABASE_MANIFEST_RETENTION"), config.manifest_retention
        )
        return config


@dataclass(slots=True)
class AppConfig:
    roots: List[str] = field(default_factory=lambda: ["./docs"])
    include: List[str] = field(default_factory=lambda: list(DEFAULT_INCLUDE))
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    base_dir: Path | None = None
    model_name: str = DEFAULT_MODEL
    chunk_chars: int = 3500
    overlap: int = 120
    max_file_size_mb: float | None = 200
    ocr_trigger_min_chars: int = 100
    workers: int = 1
    isolate_failures: bool = False
    prune_missing: bool = True
    snapshot_backend: Literal["files", "sqlite"] = "files"
    mirror: MirrorConfig = field(default_factory=MirrorConfig)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.base_dir is None:
            self.base_dir = Path.cwd()
        self.base_dir = Path(self.base_dir)

    def resolve_data_dir(self, base_dir: Path | None = None) -> Path:
        if self.data_dir.is_absolute():
            return self.data_dir
        return (base_dir or self.base_dir) / self.data_dir

    def extract_options(self) -> ExtractOptions:
        return ExtractOptions(
            chunk_chars=self.chunk_chars,
            overlap=self.overlap,
            ocr_trigger_min_chars=self.ocr_trigger_min_chars,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known and key != "mirror"}
        mirror_data = data.get("mirror") or {}
        mirror_known = {f.name for f in fields(MirrorConfig)}
        mirror = MirrorConfig(**{k: v for k, v in mirror_data.items() if k in mirror_known})
        return cls(mirror=mirror, **values)


def load_config(
    data_dir: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    base_dir: Path | None = None,
) -> AppConfig:
    """Build the effective config from defaults, ``config.json`` and environment.

    ``data_dir`` wins over ``LOCALKB_DATA_DIR``; the config file inside the data
    directory is optional and may override any field.
    """
    env = os.environ if env is None else env
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    chosen = Path(data_dir or env.get("LOCALKB_DATA_DIR") or DEFAULT_DATA_DIR)
    resolved = chosen if chosen.is_absolute() else base / chosen

    file_values: Dict[str, Any] = {}
    config_path = resolved / CONFIG_FILE
    if config_path.exists():
        try:
            file_values = json.loads(config_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ValueError(f"Invalid config file {config_path}: {exc}") from exc
        LOGGER.debug("Loaded config file %s", config_path)

    file_values.setdefault("base_dir", str(base))
    config = AppConfig.from_dict(file_values)
    config.data_dir = resolved
    if env.get("LOCALKB_MODEL"):
        config.model_name = env["LOCALKB_MODEL"]
    config.mirror = MirrorConfig.from_env(env, config.mirror)
    return config

