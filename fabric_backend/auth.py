from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from fastapi import Request

from .errors import AuthError, ConfigurationError, ForbiddenError
from .security import sha256_hex, tokens_match


logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Fabric-Token"


@dataclass(frozen=True)
class Tenant:
    """Partition key derived from the bearer credential (sha256 hex, never shown)."""

    id: str


def extract_token(headers: Mapping[str, str]) -> str | None:
    header = headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        token = header[len("bearer ") :].strip()
        return token or None
    token = (headers.get(TOKEN_HEADER) or "").strip()
    return token or None


def authenticate(headers: Mapping[str, str], configured_token: str | None) -> Tenant:
    """Resolve the caller's tenant.

    No credential -> 401, server without a secret -> 500, mismatch -> 403.
    """
    token = extract_token(headers)
    if not token:
        raise AuthError("Missing Authorization token")

    if not configured_token:
        logger.error("FABRIC_TOKEN secret is not configured")
        raise ConfigurationError("Token configuration invalid")

    if not tokens_match(token, configured_token):
        raise ForbiddenError("Invalid token")

    return Tenant(id=sha256_hex(token))


def require_tenant(request: Request) -> Tenant:
    """FastAPI dependency: runs before path, query and body handling."""
    ctx = request.app.state.ctx
    return authenticate(request.headers, ctx.settings.token)
