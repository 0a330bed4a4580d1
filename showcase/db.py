"""
Database handles shared by the blob store, the reference ledger and the
document store.

Two flavours exist: ``Database`` wraps a SQLAlchemy engine (Postgres in
production, SQLite in tests) and ``InMemoryDatabase`` holds plain dicts
behind one lock for development and tests. Each is built once at process
start and handed to every store that needs it.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

if TYPE_CHECKING:
    from showcase.ledger import ReferenceEntry
    from showcase.storage import BlobInfo


class Database:
    """
    SQLAlchemy engine and session factory. Accepts any SQLAlchemy URL.
    """

    def __init__(self, database_url: str, **engine_options: Any):
        if not database_url:
            raise ValueError("DATABASE_URL is required for Database")
        options = {"future": True, "pool_pre_ping": True, "pool_recycle": 1800}
        options.update(engine_options)
        self.engine = create_engine(database_url, **options)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


class InMemoryDatabase:
    """Dict-backed stand-in for ``Database``; one lock guards every table."""

    def __init__(self):
        self.lock = threading.RLock()
        self.blobs: Dict[str, tuple["BlobInfo", bytes]] = {}
        self.references: Dict[tuple[str, str, str], "ReferenceEntry"] = {}
        self.documents: Dict[tuple[str, str], Dict[str, Any]] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self.lock:
            self.blobs.clear()
            self.references.clear()
            self.documents.clear()

    def dispose(self) -> None:
        self.reset()


Base = declarative_base()


class MediaFileRow(Base):
    __tablename__ = "media_files"

    blob_id = Column(String(24), primary_key=True)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    length = Column(Integer, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    checksum = Column(String(64), nullable=False)
    created_at = Column(Float, nullable=False, index=True)


class MediaChunkRow(Base):
    __tablename__ = "media_chunks"

    blob_id = Column(String(24), primary_key=True)
    n = Column(Integer, primary_key=True)
    data = Column(LargeBinary, nullable=False)


class FileReferenceRow(Base):
    __tablename__ = "file_references"
    __table_args__ = (
        UniqueConstraint("blob_id", "owner_id", "kind", name="uq_file_reference"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    blob_id = Column(String(24), nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class DocumentRow(Base):
    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    doc_id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)
