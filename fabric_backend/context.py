from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine

from .blobstore import BlobStore
from .config import Settings
from .db import create_db_engine, make_session_factory
from .metadata import MetadataStore


@dataclass(frozen=True)
class AppContext:
    """Everything a handler needs, built once at startup and never mutated."""

    settings: Settings
    engine: Engine
    store: MetadataStore
    blobs: BlobStore


def build_context(settings: Settings) -> AppContext:
    engine = create_db_engine(settings.database_url)
    return AppContext(
        settings=settings,
        engine=engine,
        store=MetadataStore(make_session_factory(engine)),
        blobs=BlobStore(settings.blob_root),
    )
