"""
Human review of analysis results.

Approval is the only path by which pipeline output reaches the library:
matched tags are linked to the media item, approved suggestions become new
vocabulary entries, and an edited title is written to the media row.
"""

from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .library import LibraryStore
from .logging import get_logger
from .models import (
    AnalysisResult,
    ApprovalEdits,
    NewTagSuggestion,
    OperationResult,
    ReviewPage,
    ReviewStatus,
)
from .queue_store import QueueStore
from .tag_resolver import TagResolver

AI_SUGGESTED_REASON = "ai suggested"
USER_CREATED_REASON = "user created"


class ReviewWorkflow:
    """Approve, edit or reject pending analysis results."""

    def __init__(
        self,
        database: Database,
        queue_store: QueueStore,
        library: LibraryStore,
        resolver: TagResolver,
        page_size: int = 50,
    ):
        self.database = database
        self.queue_store = queue_store
        self.library = library
        self.resolver = resolver
        self.page_size = page_size
        self.logger = get_logger("review")

    def get_review_list(self, limit: Optional[int] = None, offset: int = 0) -> ReviewPage:
        """Pending results for media that still exists, newest first.

        Results whose media was deleted from the library are removed first.
        """
        try:
            orphaned = self.queue_store.purge_orphaned_results()
            if orphaned:
                self.logger.warning(f"⚠️  Removed {orphaned} orphaned analysis results (media deleted)")
            return self.queue_store.review_page(limit=limit or self.page_size, offset=offset)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to load review list: {e}")
            return ReviewPage(items=[], total=0)

    def approve(self, media_id: str) -> OperationResult:
        """Accept every matched tag and suggestion for one item."""
        try:
            result = self.queue_store.get_result(media_id)
            error = _not_reviewable(media_id, result)
            if error:
                return OperationResult(success=False, error=error)

            matched_ids = [tag.id for tag in result.matched_tags]
            new_ids = self.resolver.create_new_tags([
                NewTagSuggestion(name=s.name, confidence=s.confidence, reason=AI_SUGGESTED_REASON)
                for s in result.new_tag_suggestions
            ])
            tag_ids = _unique(matched_ids + new_ids)

            with self.database.session_scope() as session:
                linked = self.library.link_tags(session, media_id, tag_ids)
                self.queue_store.mark_reviewed(session, media_id, ReviewStatus.APPROVED, approved_tag_ids=tag_ids)

            self.logger.info(f"✅ Approved {media_id}: {linked} new links ({len(tag_ids)} tags)")
            return OperationResult(success=True)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to approve {media_id}: {e}")
            return OperationResult(success=False, error=str(e))

    def approve_edited(self, media_id: str, edits: ApprovalEdits) -> OperationResult:
        """Approve with the reviewer's tag selection, title and extra tags."""
        try:
            error = _not_reviewable(media_id, self.queue_store.get_result(media_id))
            if error:
                return OperationResult(success=False, error=error)

            selected_ids = list(edits.selected_tag_ids or [])
            new_ids: List[int] = []
            new_names = [name.strip() for name in edits.new_tags or [] if name.strip()]
            if new_names:
                new_ids = self.resolver.create_new_tags([
                    NewTagSuggestion(name=name, confidence=1.0, reason=USER_CREATED_REASON)
                    for name in new_names
                ])
            tag_ids = _unique(selected_ids + new_ids)
            title = edits.edited_title.strip() if edits.edited_title and edits.edited_title.strip() else None

            with self.database.session_scope() as session:
                self.library.link_tags(session, media_id, tag_ids)
                if title:
                    self.library.set_title(session, media_id, title)
                self.queue_store.mark_reviewed(
                    session,
                    media_id,
                    ReviewStatus.APPROVED,
                    approved_tag_ids=tag_ids,
                    approved_title=title,
                )

            self.logger.info(f"✅ Approved {media_id} with edits ({len(tag_ids)} tags)")
            return OperationResult(success=True)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to approve {media_id} with edits: {e}")
            return OperationResult(success=False, error=str(e))

    def reject(self, media_id: str) -> OperationResult:
        try:
            error = _not_reviewable(media_id, self.queue_store.get_result(media_id))
            if error:
                return OperationResult(success=False, error=error)
            with self.database.session_scope() as session:
                self.queue_store.mark_reviewed(session, media_id, ReviewStatus.REJECTED)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to reject {media_id}: {e}")
            return OperationResult(success=False, error=str(e))
        return OperationResult(success=True)

    def bulk_approve(self) -> int:
        """Approve every pending result. Returns the number approved."""
        try:
            pending = self.queue_store.pending_review_ids()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to list pending results: {e}")
            return 0

        approved = sum(1 for media_id in pending if self.approve(media_id).success)
        self.logger.info(f"✅ Bulk approved {approved}/{len(pending)} results")
        return approved

    def bulk_reject(self) -> int:
        try:
            rejected = self.queue_store.reject_all_pending()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to bulk reject: {e}")
            return 0
        self.logger.info(f"🚫 Bulk rejected {rejected} results")
        return rejected


def _unique(ids: List[int]) -> List[int]:
    return list(dict.fromkeys(ids))


def _not_reviewable(media_id: str, result: Optional[AnalysisResult]) -> Optional[str]:
    """Only pending results can be approved or rejected."""
    if result is None:
        return f"No analysis result for {media_id}"
    if result.review_status != ReviewStatus.PENDING:
        return f"Result for {media_id} was already {result.review_status.value}"
    return None
