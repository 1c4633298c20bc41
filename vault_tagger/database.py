"""
Database models and session management for the auto-tagging pipeline.

The ``media``, ``tags`` and ``media_tags`` tables belong to the library; the
pipeline only reads them (and links tags on approval). The queue and result
tables are owned by the pipeline and keyed by the library media id.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .logging import get_logger

Base = declarative_base()

logger = get_logger("database")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaRecord(Base):
    __tablename__ = "media"

    id = Column(String(64), primary_key=True)
    filename = Column(String(512), nullable=False)
    path = Column(Text, nullable=False)
    type = Column(String(16), nullable=False, default="image")
    duration_sec = Column(Float)
    title = Column(Text)
    thumb_path = Column(Text)
    added_at = Column(DateTime, default=utcnow, nullable=False)


class TagRecord(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    color = Column(String(32))


class MediaTagRecord(Base):
    __tablename__ = "media_tags"

    media_id = Column(String(64), ForeignKey("media.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class QueueItemRecord(Base):
    __tablename__ = "ai_processing_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    media_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="pending")
    priority = Column(Integer, nullable=False, default=0)
    tier1_done = Column(Boolean, nullable=False, default=False)
    tier2_needed = Column(Boolean, nullable=False, default=False)
    tier2_done = Column(Boolean, nullable=False, default=False)
    error = Column(Text)
    processing_ms = Column(Integer)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


# Tag names are unique regardless of case
Index("ux_tags_name_lower", func.lower(TagRecord.name), unique=True)
Index("idx_ai_queue_status", QueueItemRecord.status, QueueItemRecord.priority.desc(), QueueItemRecord.id)


class AnalysisResultRecord(Base):
    __tablename__ = "ai_analysis_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    media_id = Column(String(64), nullable=False, unique=True)
    nsfw_category = Column(String(16))
    nsfw_confidence = Column(Float)
    tier1_raw_tags = Column(Text)
    suggested_title = Column(Text)
    description = Column(Text)
    tier2_extra_tags = Column(Text)
    attributes = Column(Text)
    matched_tags = Column(Text)
    new_tag_suggestions = Column(Text)
    review_status = Column(String(16), nullable=False, default="pending")
    approved_tag_ids = Column(Text)
    approved_title = Column(Text)
    reviewed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_ai_results_review", "review_status"),
    )


class Database:
    """Engine and session management."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.debug(f"Database schema ready at {self.url}")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
