"""Backend utilities for the Fabric storage worker.

This package keeps FastAPI route handlers thin:
- session / log / asset metadata in a relational store (SQLAlchemy)
- raw bytes in a key-addressed blob store
- ZIP ingestion and on-demand archive rebuilds with Zip Slip protection
- app-scoped logs and objects with cursor pagination

Security note:
Every protected route is partitioned by a tenant id derived from the bearer
token (sha256). Never log tokens, and never expose filesystem paths in
responses.
"""
