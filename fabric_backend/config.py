from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


DEFAULT_DATA_DIR = Path.cwd() / "fabric_data"

# Upload limits (also enforced by proxy/browser typically).
DEFAULT_MAX_UPLOAD_MB = 100
DEFAULT_MAX_EXTRACTED_MB = 512

# App-storage pagination bounds.
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

APP_NAME_MAX_LENGTH = 128
LOG_LEVEL_MAX_LENGTH = 32


@dataclass(frozen=True)
class Settings:
    token: str | None
    database_url: str
    blob_root: Path
    max_upload_bytes: int
    max_extracted_bytes: int
    reconcile_interval_seconds: int
    orphan_grace_seconds: int
    log_level: str


def _positive_mb(raw: str | None, fallback: int) -> int:
    # Invalid or non-positive values fall back to the default.
    if not raw or not raw.strip():
        return fallback * 1024 * 1024
    try:
        numeric = float(raw)
    except ValueError:
        return fallback * 1024 * 1024
    if numeric <= 0:
        return fallback * 1024 * 1024
    return int(numeric * 1024 * 1024)


def _int(raw: str | None, fallback: int) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return fallback


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Read FABRIC_* variables once into an immutable Settings object."""
    env = os.environ if env is None else env

    token = (env.get("FABRIC_TOKEN") or "").strip() or None

    database_url = (env.get("FABRIC_DATABASE_URL") or "").strip()
    if not database_url:
        database_url = f"sqlite:///{DEFAULT_DATA_DIR / 'fabric.db'}"

    blob_root_raw = (env.get("FABRIC_BLOB_ROOT") or "").strip()
    blob_root = Path(blob_root_raw) if blob_root_raw else DEFAULT_DATA_DIR / "blobs"

    return Settings(
        token=token,
        database_url=database_url,
        blob_root=blob_root.resolve(),
        max_upload_bytes=_positive_mb(env.get("FABRIC_MAX_UPLOAD_MB"), DEFAULT_MAX_UPLOAD_MB),
        max_extracted_bytes=_positive_mb(env.get("FABRIC_MAX_EXTRACTED_MB"), DEFAULT_MAX_EXTRACTED_MB),
        reconcile_interval_seconds=max(0, _int(env.get("FABRIC_RECONCILE_INTERVAL_SECONDS"), 0)),
        orphan_grace_seconds=max(0, _int(env.get("FABRIC_ORPHAN_GRACE_SECONDS"), 3600)),
        log_level=(env.get("FABRIC_LOG_LEVEL") or "INFO").strip().upper(),
    )


def configure_logging(level_name: str = "INFO") -> None:
    """Install one stream handler on the root logger. Safe to call repeatedly."""
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if getattr(root, "_fabric_configured", False):
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    setattr(root, "_fabric_configured", True)
