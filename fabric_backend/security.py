from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from pathlib import Path


# Unambiguous alphabet: no 0/O, 1/I/l.
ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
ID_LENGTH = 20

SESSION_ID_PATTERN = rf"^[{ID_ALPHABET}]{{{ID_LENGTH}}}$"
APP_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def generate_id() -> str:
    """Return a fresh high-entropy id (~115 bits) from ID_ALPHABET."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def tokens_match(presented: str, configured: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), configured.encode("utf-8"))


def sanitize_path(value: str) -> str | None:
    """Normalize a relative path taken from an archive or URL.

    Returns None for anything that could escape its namespace: absolute paths,
    drive letters, NUL bytes or a '..' segment. Otherwise backslashes become
    '/', leading './' and '.' segments are dropped and repeated slashes collapse.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or "\x00" in trimmed:
        return None
    normalized = trimmed.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        return None

    parts = [p for p in normalized.split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        return None
    if not parts:
        return None
    return "/".join(parts)


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    This defends against path traversal when reading or writing blob keys.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
