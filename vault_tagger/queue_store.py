"""
Durable queue and analysis result storage.

Both tables are keyed by the library media id: enqueueing an id that is
already present is a no-op, and saving a result for a media item overwrites
the previous one.
"""

from typing import Dict, Iterable, List, Optional

from pydantic import TypeAdapter
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .database import AnalysisResultRecord, Database, MediaRecord, QueueItemRecord, utcnow
from .logging import get_logger
from .models import (
    AnalysisResult,
    MatchedTag,
    NewTagSuggestion,
    ProcessingStats,
    QueueItem,
    QueueItemStatus,
    ReviewItem,
    ReviewPage,
    ReviewStatus,
    TagScore,
    Tier1Result,
    Tier2Result,
    Tier3Result,
    VisionAttributes,
)

TAG_SCORES = TypeAdapter(List[TagScore])
STRINGS = TypeAdapter(List[str])
IDS = TypeAdapter(List[int])
MATCHED_TAGS = TypeAdapter(List[MatchedTag])
SUGGESTIONS = TypeAdapter(List[NewTagSuggestion])
ATTRIBUTES = TypeAdapter(VisionAttributes)

PRIORITY_UNTAGGED = 0
PRIORITY_SPECIFIC = 1
PRIORITY_ALL = -1


def _dump(adapter: TypeAdapter, value) -> Optional[str]:
    if value is None:
        return None
    return adapter.dump_json(value).decode("utf-8")


def _load(adapter: TypeAdapter, raw: Optional[str], default=None):
    if not raw:
        return default
    return adapter.validate_json(raw)


class QueueStore:
    """Repository for the processing queue and the per-media results."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = get_logger("queue_store")

    # Queue

    def enqueue(self, media_ids: Iterable[str], priority: int = PRIORITY_UNTAGGED) -> int:
        """Insert pending rows, ignoring ids already queued. Returns rows added."""
        added = 0
        with self.database.session_scope() as session:
            for media_id in dict.fromkeys(media_ids):
                statement = sqlite_insert(QueueItemRecord).values(
                    media_id=media_id,
                    status=QueueItemStatus.PENDING.value,
                    priority=priority,
                )
                result = session.execute(statement.on_conflict_do_nothing(index_elements=["media_id"]))
                added += max(result.rowcount, 0)
        return added

    def next_pending(self) -> Optional[QueueItem]:
        """Highest priority pending item, earliest inserted first."""
        with self.database.session_scope() as session:
            record = session.scalars(
                select(QueueItemRecord)
                .where(QueueItemRecord.status == QueueItemStatus.PENDING.value)
                .order_by(QueueItemRecord.priority.desc(), QueueItemRecord.id.asc())
                .limit(1)
            ).first()
            return _queue_item(record) if record else None

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self.database.session_scope() as session:
            record = session.get(QueueItemRecord, item_id)
            return _queue_item(record) if record else None

    def list_items(self, status: Optional[QueueItemStatus] = None) -> List[QueueItem]:
        with self.database.session_scope() as session:
            query = select(QueueItemRecord).order_by(QueueItemRecord.id)
            if status is not None:
                query = query.where(QueueItemRecord.status == status.value)
            return [_queue_item(record) for record in session.scalars(query)]

    def mark_processing(self, item_id: int) -> None:
        self._update_item(item_id, status=QueueItemStatus.PROCESSING.value, started_at=utcnow())

    def set_progress(self, item_id: int, **flags: bool) -> None:
        """Record partial pipeline progress (tier1_done, tier2_needed, tier2_done)."""
        self._update_item(item_id, **flags)

    def mark_completed(self, item_id: int, processing_ms: int) -> None:
        self._update_item(
            item_id,
            status=QueueItemStatus.COMPLETED.value,
            completed_at=utcnow(),
            processing_ms=processing_ms,
        )

    def mark_failed(self, item_id: int, error: str) -> None:
        self._update_item(
            item_id,
            status=QueueItemStatus.FAILED.value,
            error=error,
            completed_at=utcnow(),
        )

    def _update_item(self, item_id: int, **values) -> None:
        with self.database.session_scope() as session:
            session.execute(update(QueueItemRecord).where(QueueItemRecord.id == item_id).values(**values))

    def status_counts(self) -> Dict[str, int]:
        with self.database.session_scope() as session:
            rows = session.execute(
                select(QueueItemRecord.status, func.count()).group_by(QueueItemRecord.status)
            )
            counts = {status.value: 0 for status in QueueItemStatus}
            for status, count in rows:
                counts[status] = count
            return counts

    def retry_failed(self) -> int:
        """Reset failed rows to pending, clearing error and timestamps."""
        with self.database.session_scope() as session:
            result = session.execute(
                update(QueueItemRecord)
                .where(QueueItemRecord.status == QueueItemStatus.FAILED.value)
                .values(
                    status=QueueItemStatus.PENDING.value,
                    error=None,
                    started_at=None,
                    completed_at=None,
                )
            )
            return result.rowcount

    def clear_failed(self) -> int:
        with self.database.session_scope() as session:
            result = session.execute(
                delete(QueueItemRecord).where(QueueItemRecord.status == QueueItemStatus.FAILED.value)
            )
            return result.rowcount

    # Results

    def save_result(
        self,
        media_id: str,
        tier1: Tier1Result,
        tier2: Optional[Tier2Result],
        tier3: Tier3Result,
    ) -> None:
        """Upsert the pipeline outcome for one media item, resetting its review."""
        values = {
            "nsfw_category": tier1.nsfw_category.value,
            "nsfw_confidence": tier1.nsfw_confidence,
            "tier1_raw_tags": _dump(TAG_SCORES, tier1.tags),
            "suggested_title": tier2.title if tier2 else None,
            "description": tier2.description if tier2 else None,
            "tier2_extra_tags": _dump(STRINGS, tier2.additional_tags) if tier2 else None,
            "attributes": _dump(ATTRIBUTES, tier2.attributes) if tier2 else None,
            "matched_tags": _dump(MATCHED_TAGS, tier3.matched_tags),
            "new_tag_suggestions": _dump(SUGGESTIONS, tier3.new_tag_suggestions),
            "review_status": ReviewStatus.PENDING.value,
            "approved_tag_ids": None,
            "approved_title": None,
            "reviewed_at": None,
            "created_at": utcnow(),
        }
        statement = sqlite_insert(AnalysisResultRecord).values(media_id=media_id, **values)
        statement = statement.on_conflict_do_update(index_elements=["media_id"], set_=values)
        with self.database.session_scope() as session:
            session.execute(statement)

    def get_result(self, media_id: str) -> Optional[AnalysisResult]:
        with self.database.session_scope() as session:
            record = session.scalars(
                select(AnalysisResultRecord).where(AnalysisResultRecord.media_id == media_id)
            ).first()
            return _analysis_result(record) if record else None

    def mark_reviewed(
        self,
        session: Session,
        media_id: str,
        status: ReviewStatus,
        approved_tag_ids: Optional[List[int]] = None,
        approved_title: Optional[str] = None,
    ) -> int:
        values = {"review_status": status.value, "reviewed_at": utcnow()}
        if status == ReviewStatus.APPROVED:
            values["approved_tag_ids"] = _dump(IDS, approved_tag_ids or [])
            values["approved_title"] = approved_title
        result = session.execute(
            update(AnalysisResultRecord).where(AnalysisResultRecord.media_id == media_id).values(**values)
        )
        return result.rowcount

    def pending_review_ids(self) -> List[str]:
        with self.database.session_scope() as session:
            query = (
                select(AnalysisResultRecord.media_id)
                .where(AnalysisResultRecord.review_status == ReviewStatus.PENDING.value)
                .order_by(AnalysisResultRecord.created_at.desc(), AnalysisResultRecord.id.desc())
            )
            return list(session.scalars(query))

    def reject_all_pending(self) -> int:
        with self.database.session_scope() as session:
            result = session.execute(
                update(AnalysisResultRecord)
                .where(AnalysisResultRecord.review_status == ReviewStatus.PENDING.value)
                .values(review_status=ReviewStatus.REJECTED.value, reviewed_at=utcnow())
            )
            return result.rowcount

    def purge_orphaned_results(self) -> int:
        """Delete results whose media no longer exists in the library."""
        with self.database.session_scope() as session:
            result = session.execute(
                delete(AnalysisResultRecord).where(
                    AnalysisResultRecord.media_id.not_in(select(MediaRecord.id))
                )
            )
            return result.rowcount

    def review_page(self, limit: int = 50, offset: int = 0) -> ReviewPage:
        """Pending results joined against current media, newest first."""
        with self.database.session_scope() as session:
            base = (
                select(AnalysisResultRecord, MediaRecord.filename, MediaRecord.thumb_path)
                .join(MediaRecord, MediaRecord.id == AnalysisResultRecord.media_id)
                .where(AnalysisResultRecord.review_status == ReviewStatus.PENDING.value)
            )
            total = session.scalar(select(func.count()).select_from(base.subquery())) or 0
            rows = session.execute(
                base.order_by(AnalysisResultRecord.created_at.desc(), AnalysisResultRecord.id.desc())
                .limit(limit)
                .offset(offset)
            )
            items = [
                ReviewItem(
                    media_id=record.media_id,
                    filename=filename,
                    thumbnail_path=thumb_path,
                    suggested_title=record.suggested_title,
                    description=record.description,
                    matched_tags=_load(MATCHED_TAGS, record.matched_tags, []),
                    new_tag_suggestions=_load(SUGGESTIONS, record.new_tag_suggestions, []),
                    nsfw_category=record.nsfw_category,
                    nsfw_confidence=record.nsfw_confidence,
                    review_status=ReviewStatus(record.review_status),
                    created_at=record.created_at,
                )
                for record, filename, thumb_path in rows
            ]
            return ReviewPage(items=items, total=total)

    def stats(self) -> ProcessingStats:
        with self.database.session_scope() as session:
            total, tier2_used, avg_ms = session.execute(
                select(
                    func.count(),
                    func.sum(case((QueueItemRecord.tier2_done.is_(True), 1), else_=0)),
                    func.avg(QueueItemRecord.processing_ms),
                ).where(QueueItemRecord.status == QueueItemStatus.COMPLETED.value)
            ).one()

            tags_matched = 0
            new_tags_created = 0
            approved = session.execute(
                select(AnalysisResultRecord.matched_tags, AnalysisResultRecord.approved_tag_ids)
                .where(AnalysisResultRecord.review_status == ReviewStatus.APPROVED.value)
            )
            for matched_raw, approved_raw in approved:
                matched_ids = {tag.id for tag in _load(MATCHED_TAGS, matched_raw, [])}
                approved_ids = _load(IDS, approved_raw, [])
                tags_matched += len(matched_ids)
                new_tags_created += len([tag_id for tag_id in approved_ids if tag_id not in matched_ids])

        total = total or 0
        tier2_used = tier2_used or 0
        return ProcessingStats(
            total_processed=total,
            tier1_only=total - tier2_used,
            tier2_used=tier2_used,
            avg_processing_time=round((avg_ms or 0) / 1000.0, 3),
            tags_matched=tags_matched,
            new_tags_created=new_tags_created,
        )


def _queue_item(record: QueueItemRecord) -> QueueItem:
    return QueueItem(
        id=record.id,
        media_id=record.media_id,
        status=QueueItemStatus(record.status),
        priority=record.priority,
        tier1_done=record.tier1_done,
        tier2_needed=record.tier2_needed,
        tier2_done=record.tier2_done,
        error=record.error,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _analysis_result(record: AnalysisResultRecord) -> AnalysisResult:
    return AnalysisResult(
        media_id=record.media_id,
        nsfw_category=record.nsfw_category,
        nsfw_confidence=record.nsfw_confidence,
        tier1_tags=_load(TAG_SCORES, record.tier1_raw_tags, []),
        title=record.suggested_title,
        description=record.description,
        tier2_tags=_load(STRINGS, record.tier2_extra_tags),
        attributes=_load(ATTRIBUTES, record.attributes),
        matched_tags=_load(MATCHED_TAGS, record.matched_tags, []),
        new_tag_suggestions=_load(SUGGESTIONS, record.new_tag_suggestions, []),
        review_status=ReviewStatus(record.review_status),
        approved_tag_ids=_load(IDS, record.approved_tag_ids),
        approved_title=record.approved_title,
        reviewed_at=record.reviewed_at,
        created_at=record.created_at,
    )
