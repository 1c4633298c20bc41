"""
Access to the library tables the pipeline collaborates with: media lookup,
the curated tag vocabulary and media-tag links.
"""

import random
from typing import Iterable, List, Optional

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .database import Database, MediaRecord, MediaTagRecord, QueueItemRecord, TagRecord
from .logging import get_logger
from .models import MediaInfo, Tag


class LibraryStore:
    """Read-mostly view over the media library and its tag vocabulary."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = get_logger("library")

    # Media

    def get_media(self, media_id: str) -> Optional[MediaInfo]:
        with self.database.session_scope() as session:
            record = session.get(MediaRecord, media_id)
            if record is None:
                return None
            return _media_info(record)

    def add_media(self, media: MediaInfo) -> None:
        """Register a media row (used by importers and tests)."""
        with self.database.session_scope() as session:
            session.merge(MediaRecord(
                id=media.id,
                filename=media.filename,
                path=media.path,
                type=media.type,
                duration_sec=media.duration_sec,
                title=media.title,
                thumb_path=media.thumb_path,
            ))

    def untagged_unqueued_media_ids(self) -> List[str]:
        """Media with no tag links that have never been queued."""
        with self.database.session_scope() as session:
            query = (
                select(MediaRecord.id)
                .where(~exists().where(MediaTagRecord.media_id == MediaRecord.id))
                .where(~exists().where(QueueItemRecord.media_id == MediaRecord.id))
                .order_by(MediaRecord.added_at, MediaRecord.id)
            )
            return list(session.scalars(query))

    def unqueued_media_ids(self) -> List[str]:
        with self.database.session_scope() as session:
            query = (
                select(MediaRecord.id)
                .where(~exists().where(QueueItemRecord.media_id == MediaRecord.id))
                .order_by(MediaRecord.added_at, MediaRecord.id)
            )
            return list(session.scalars(query))

    def untagged_count(self) -> int:
        with self.database.session_scope() as session:
            query = select(func.count()).select_from(MediaRecord).where(
                ~exists().where(MediaTagRecord.media_id == MediaRecord.id)
            )
            return session.scalar(query) or 0

    def set_title(self, session: Session, media_id: str, title: str) -> None:
        session.execute(update(MediaRecord).where(MediaRecord.id == media_id).values(title=title))

    # Vocabulary

    def all_tags(self) -> List[Tag]:
        with self.database.session_scope() as session:
            rows = session.execute(select(TagRecord.id, TagRecord.name).order_by(TagRecord.id))
            return [Tag(id=row.id, name=row.name) for row in rows]

    def find_tag_id(self, name: str) -> Optional[int]:
        """Case-insensitive lookup of a vocabulary tag by name."""
        with self.database.session_scope() as session:
            return session.scalar(
                select(TagRecord.id).where(func.lower(TagRecord.name) == name.strip().lower())
            )

    def insert_tag(self, name: str) -> int:
        """Insert a vocabulary tag and return its id."""
        with self.database.session_scope() as session:
            record = TagRecord(name=name.strip(), color=_pastel_color())
            session.add(record)
            session.flush()
            self.logger.debug(f"Created tag '{record.name}' (id {record.id})")
            return record.id

    def delete_tags(self, tag_ids: Iterable[int]) -> int:
        """Delete tags and their media links in one transaction."""
        tag_ids = list(tag_ids)
        if not tag_ids:
            return 0
        with self.database.session_scope() as session:
            session.execute(delete(MediaTagRecord).where(MediaTagRecord.tag_id.in_(tag_ids)))
            result = session.execute(delete(TagRecord).where(TagRecord.id.in_(tag_ids)))
            return result.rowcount

    # Links

    def link_tags(self, session: Session, media_id: str, tag_ids: Iterable[int]) -> int:
        """Link tags to a media item, ignoring links that already exist."""
        count = 0
        for tag_id in dict.fromkeys(tag_ids):
            statement = sqlite_insert(MediaTagRecord).values(media_id=media_id, tag_id=tag_id)
            result = session.execute(statement.on_conflict_do_nothing())
            count += result.rowcount
        return count

    def tag_ids_for_media(self, media_id: str) -> List[int]:
        with self.database.session_scope() as session:
            query = select(MediaTagRecord.tag_id).where(MediaTagRecord.media_id == media_id)
            return sorted(session.scalars(query))


def _media_info(record: MediaRecord) -> MediaInfo:
    return MediaInfo(
        id=record.id,
        filename=record.filename,
        path=record.path,
        type=record.type,
        duration_sec=record.duration_sec,
        title=record.title,
        thumb_path=record.thumb_path,
    )


def _pastel_color() -> str:
    return f"hsl({random.randint(0, 359)}, 70%, 60%)"
