"""
SQLAlchemy models for the annotation store and export publisher.

The layout mirrors a document hierarchy:

    files/{fileId}
      file_meta            (one metadata sub-record)
      ref_counters         (one counter row)
      pages/{pageNumber}
        strokes/*          (append-only, refNo)
        notes/{noteId}     (merge-upsert)
        camera_pins/{pinId} (refNo)
      export_history/*

Annotation payloads are kept as JSON documents and parsed defensively on load.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, Integer, DateTime, ForeignKey, ForeignKeyConstraint,
    Index, UniqueConstraint, LargeBinary, BigInteger, JSON, create_engine, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from sitemark.config import settings


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs/tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def _uuid_str() -> str:
    return str(uuid.uuid4())


class FileRecord(Base):
    """Canonical record for one logical remote document."""

    __tablename__ = "files"

    id = Column(String(40), primary_key=True)  # SHA-1 content digest
    file_url = Column(Text, nullable=False)
    file_name = Column(String(500), nullable=False)
    project_id = Column(String(255), nullable=True)
    exported_pdf_url = Column(Text, nullable=True)
    exported_at = Column(DateTime, nullable=True)
    exported_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    meta = relationship("FileMeta", back_populates="file", uselist=False, cascade="all, delete-orphan")
    pages = relationship("PageRecord", back_populates="file", cascade="all, delete-orphan")
    export_history = relationship(
        "ExportHistoryEntry",
        back_populates="file",
        cascade="all, delete-orphan",
        order_by="ExportHistoryEntry.exported_at",
    )


class FileMeta(Base):
    """Metadata sub-record; updated_at is the freshness marker for consumers."""

    __tablename__ = "file_meta"

    file_id = Column(String(40), ForeignKey("files.id", ondelete="CASCADE"), primary_key=True)
    file_url = Column(Text, nullable=False)
    file_name = Column(String(500), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    file = relationship("FileRecord", back_populates="meta")


class RefCounter(Base):
    """Per-file reference number counter (source of refNo)."""

    __tablename__ = "ref_counters"

    file_id = Column(String(40), ForeignKey("files.id", ondelete="CASCADE"), primary_key=True)
    last_ref = Column(BigInteger, nullable=False, default=0)


class PageRecord(Base):
    """One annotated page, created lazily on first write."""

    __tablename__ = "pages"

    file_id = Column(String(40), ForeignKey("files.id", ondelete="CASCADE"), primary_key=True)
    page_number = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    file = relationship("FileRecord", back_populates="pages")


class StrokeRecord(Base):
    """Immutable freehand stroke."""

    __tablename__ = "strokes"
    __table_args__ = (
        ForeignKeyConstraint(
            ["file_id", "page_number"],
            ["pages.file_id", "pages.page_number"],
            ondelete="CASCADE",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    file_id = Column(String(40), nullable=False)
    page_number = Column(Integer, nullable=False)
    ref_no = Column(BigInteger, nullable=True)
    data = Column(JSONDocument, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class NoteRecord(Base):
    """Text or sticky note keyed by a caller-supplied id."""

    __tablename__ = "notes"
    __table_args__ = (
        UniqueConstraint("file_id", "page_number", "note_id", name="uq_notes_file_page_note"),
        ForeignKeyConstraint(
            ["file_id", "page_number"],
            ["pages.file_id", "pages.page_number"],
            ondelete="CASCADE",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    file_id = Column(String(40), nullable=False)
    page_number = Column(Integer, nullable=False)
    note_id = Column(String(255), nullable=False)
    data = Column(JSONDocument, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class CameraPinRecord(Base):
    """Photo marker pinned to a page position."""

    __tablename__ = "camera_pins"
    __table_args__ = (
        UniqueConstraint("file_id", "page_number", "pin_id", name="uq_camera_pins_file_page_pin"),
        ForeignKeyConstraint(
            ["file_id", "page_number"],
            ["pages.file_id", "pages.page_number"],
            ondelete="CASCADE",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    file_id = Column(String(40), nullable=False)
    page_number = Column(Integer, nullable=False)
    pin_id = Column(String(255), nullable=False)
    ref_no = Column(BigInteger, nullable=True)
    data = Column(JSONDocument, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class StoredObject(Base):
    """Durable binary object (exports, pin photos) addressed by bucket path."""

    __tablename__ = "stored_objects"

    path = Column(String(1000), primary_key=True)
    bucket = Column(String(255), nullable=False)
    data = Column(LargeBinary, nullable=False)
    content_type = Column(String(100), nullable=True, default="application/octet-stream")
    size = Column(BigInteger, nullable=True)
    download_token = Column(String(64), nullable=False)
    object_metadata = Column("metadata", JSONDocument, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ExportHistoryEntry(Base):
    """One published report export for a file."""

    __tablename__ = "export_history"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    file_id = Column(String(40), ForeignKey("files.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text, nullable=False)
    storage_path = Column(String(1000), nullable=False)
    exported_by = Column(String(255), nullable=False)
    pdf_id = Column(String(255), nullable=True)
    exported_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    file = relationship("FileRecord", back_populates="export_history")


# Indexes
Index("idx_files_project_id", FileRecord.project_id)
Index("idx_strokes_file_page", StrokeRecord.file_id, StrokeRecord.page_number)
Index("idx_notes_file_page", NoteRecord.file_id, NoteRecord.page_number)
Index("idx_camera_pins_file_page", CameraPinRecord.file_id, CameraPinRecord.page_number)
Index("idx_export_history_file_id", ExportHistoryEntry.file_id)
Index("idx_export_history_storage_path", ExportHistoryEntry.storage_path)
Index("idx_stored_objects_created_at", StoredObject.created_at)


# Database engine and session factory
_engine = None
_SessionLocal = None


def make_engine(database_url: str, echo: bool = False):
    """Build an engine for the given URL with per-dialect pool settings."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        # pysqlite defers BEGIN until the first DML statement; take the write
        # lock up front so concurrent writers queue on busy_timeout instead of
        # failing lock upgrades.
        @event.listens_for(engine, "connect")
        def _configure_sqlite_connection(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=300,  # Recycle connections every 5 minutes
        pool_pre_ping=True,  # Test connection before using (auto-reconnect)
        echo=echo,
        connect_args={
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        }
    )


def make_session_factory(engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def get_engine():
    """Get or create the application database engine."""
    global _engine
    if _engine is None:
        _engine = make_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create session factory (dependency injection)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = make_session_factory(get_engine())
    return _SessionLocal


def init_schema(engine=None):
    """Initialize database schema (create tables if not exist)."""
    Base.metadata.create_all(bind=engine or get_engine())
