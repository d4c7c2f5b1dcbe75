from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (JSON, BigInteger, Column, DateTime, ForeignKey, Index,
                        Integer, String, Text, UniqueConstraint, create_engine)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


Base = declarative_base()


def utcnow() -> datetime:
    # Stored naive; every timestamp column is UTC by convention.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds") + "Z"


class SessionRecord(Base):
    """One logical run: groups logs and assets for a single tenant."""

    __tablename__ = "sessions"

    id = Column(String(32), primary_key=True)
    app_name = Column(String(128), nullable=False)
    tenant = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="active")
    metadata_ = Column("metadata", JSON, nullable=True)
    # Last allocated log sequence; bumped atomically per batch.
    last_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_sessions_tenant_updated", "tenant", "updated_at"),
    )


class LogRecord(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(32), ForeignKey("sessions.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    level = Column(String(32), nullable=False, default="info")
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_logs_session_sequence"),
    )


class AssetRecord(Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(32), ForeignKey("sessions.id"), nullable=False)
    object_key = Column(Text, nullable=False)
    filename = Column(String(1024), nullable=False)
    content_type = Column(String(255), nullable=True)
    size = Column(BigInteger, nullable=False)
    checksum = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "filename", name="uq_assets_session_filename"),
    )


class AppLogRecord(Base):
    __tablename__ = "app_storage_logs"

    id = Column(String(32), primary_key=True)
    tenant = Column(String(64), nullable=False)
    app_name = Column(String(64), nullable=False)
    level = Column(String(32), nullable=False, default="info")
    message = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_app_logs_page", "tenant", "app_name", "created_at", "id"),
    )


class AppObjectRecord(Base):
    __tablename__ = "app_storage_objects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant = Column(String(64), nullable=False)
    app_name = Column(String(64), nullable=False)
    object_key = Column(Text, nullable=False)
    filename = Column(String(1024), nullable=False)
    content_type = Column(String(255), nullable=True)
    size = Column(BigInteger, nullable=False)
    checksum = Column(String(64), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant", "app_name", "filename", name="uq_app_objects_filename"),
    )


def create_db_engine(database_url: str) -> Engine:
    """Create the engine and make sure all tables exist."""
    kwargs: dict = {"future": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = database_url.split("///", 1)[-1]
            if db_path:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)
