"""Error taxonomy for the storage API.

Store and ingestion code raises these; a single exception handler in server.py
renders them as ``{"error": message, "details": ...}`` with the status code
carried by the exception.
"""

from __future__ import annotations

from typing import Any


class FabricError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(FabricError):
    """Malformed body, bad app name or an unsafe path."""

    status_code = 400


class AuthError(FabricError):
    """No credential presented."""

    status_code = 401


class ForbiddenError(FabricError):
    """Credential presented but it does not match the configured secret."""

    status_code = 403


class NotFoundError(FabricError):
    status_code = 404


class PayloadError(FabricError):
    """Wrong content type (415) or oversized body (413)."""

    status_code = 415

    @classmethod
    def too_large(cls, limit_bytes: int) -> "PayloadError":
        return cls(f"Payload too large (>{limit_bytes / (1024 * 1024):.0f} MiB)", status_code=413)


class StorageFault(FabricError):
    """Blob or metadata store failure. Details must never leak internals."""

    status_code = 500


class ConfigurationError(FabricError):
    status_code = 500
