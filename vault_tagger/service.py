"""
Composition root: builds every pipeline component from one Settings object.
"""

from typing import List, Optional

from .config import Settings
from .database import Database
from .frame_sampler import FrameSampler
from .library import LibraryStore
from .local_tagger import LocalInferenceTagger, ScorerSet
from .logging import get_logger
from .model_assets import ModelAssets
from .models import (
    ApprovalEdits,
    OperationResult,
    ProcessingStats,
    QueueStatus,
    ReviewPage,
)
from .orchestrator import AnalysisOrchestrator, ProgressCallback
from .performance_monitor import PerformanceMonitor
from .queue_store import QueueStore
from .review import ReviewWorkflow
from .tag_cleanup import TagCleaner
from .tag_resolver import TagResolver
from .vision_client import RemoteVisionAnalyzer


class QueueNotInitializedError(Exception):
    """An operation was called before the service was initialized."""
    pass


class AutoTaggerService:
    """Owns the component graph and exposes the operations callers use."""

    def __init__(
        self,
        settings: Settings,
        scorers: Optional[ScorerSet] = None,
        vision_transport=None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.settings = settings
        self.logger = get_logger("service")
        self._scorers = scorers
        self._vision_transport = vision_transport
        self._progress_callback = progress_callback
        self.initialized = False

        self.database: Optional[Database] = None
        self.performance_monitor = PerformanceMonitor()
        self.assets = ModelAssets(settings.get_model_dir(), settings.required_models)
        self.library: Optional[LibraryStore] = None
        self.queue_store: Optional[QueueStore] = None
        self.sampler: Optional[FrameSampler] = None
        self.tier1: Optional[LocalInferenceTagger] = None
        self.vision: Optional[RemoteVisionAnalyzer] = None
        self.resolver: Optional[TagResolver] = None
        self.orchestrator: Optional[AnalysisOrchestrator] = None
        self.review: Optional[ReviewWorkflow] = None
        self.cleaner: Optional[TagCleaner] = None

    def initialize(self) -> None:
        """Open the database and wire up the components. Idempotent."""
        if self.initialized:
            return

        settings = self.settings
        self.database = Database(settings.database_url)
        self.database.create_all()

        self.library = LibraryStore(self.database)
        self.queue_store = QueueStore(self.database)
        self.sampler = FrameSampler(settings.ffmpeg_path, settings.get_frame_temp_dir())
        self.tier1 = LocalInferenceTagger(self.assets, settings, scorers=self._scorers)
        self.vision = RemoteVisionAnalyzer(settings, self.performance_monitor, transport=self._vision_transport)
        self.resolver = TagResolver(
            self.library,
            cache_ttl=settings.tag_cache_ttl,
            performance_monitor=self.performance_monitor,
        )
        self.orchestrator = AnalysisOrchestrator(
            self.queue_store,
            self.library,
            self.sampler,
            self.tier1,
            self.vision,
            self.resolver,
            performance_monitor=self.performance_monitor,
            progress_callback=self._progress_callback,
        )
        self.review = ReviewWorkflow(
            self.database,
            self.queue_store,
            self.library,
            self.resolver,
            page_size=settings.review_page_size,
        )
        self.cleaner = TagCleaner(self.library, self.resolver, settings.protected_tags)

        self.initialized = True
        self.logger.info(f"✅ Service initialized (database: {settings.database_url})")

    def _require(self) -> None:
        if not self.initialized:
            raise QueueNotInitializedError("Processing queue not initialized")

    @property
    def tier1_available(self) -> bool:
        return bool(self.tier1 and self.tier1.tier1_available)

    # Queue

    def queue_untagged(self) -> int:
        self._require()
        return self.orchestrator.queue_untagged()

    def queue_specific(self, media_ids: List[str]) -> int:
        self._require()
        return self.orchestrator.queue_specific(media_ids)

    def queue_all(self) -> int:
        self._require()
        return self.orchestrator.queue_all()

    def get_status(self) -> QueueStatus:
        self._require()
        return self.orchestrator.get_status()

    def untagged_count(self) -> int:
        self._require()
        return self.orchestrator.untagged_count()

    def retry_failed(self) -> int:
        self._require()
        return self.orchestrator.retry_failed()

    def clear_failed(self) -> int:
        self._require()
        return self.orchestrator.clear_failed()

    # Run control

    async def start(self, enable_tier2: Optional[bool] = None, concurrency: int = 1) -> OperationResult:
        self._require()
        if enable_tier2 is None:
            enable_tier2 = self.settings.tier2_enabled
        return await self.orchestrator.start(enable_tier2=enable_tier2, concurrency=concurrency)

    def pause(self) -> OperationResult:
        self._require()
        return self.orchestrator.pause()

    def resume(self) -> OperationResult:
        self._require()
        return self.orchestrator.resume()

    def stop(self) -> OperationResult:
        self._require()
        return self.orchestrator.stop()

    async def wait_idle(self) -> None:
        self._require()
        await self.orchestrator.wait_idle()

    def configure_vision(self, api_key: str) -> None:
        self._require()
        self.vision.configure(api_key)

    # Review

    def get_review_list(self, limit: Optional[int] = None, offset: int = 0) -> ReviewPage:
        self._require()
        return self.review.get_review_list(limit=limit, offset=offset)

    def approve(self, media_id: str) -> OperationResult:
        self._require()
        return self.review.approve(media_id)

    def approve_edited(self, media_id: str, edits: ApprovalEdits) -> OperationResult:
        self._require()
        return self.review.approve_edited(media_id, edits)

    def reject(self, media_id: str) -> OperationResult:
        self._require()
        return self.review.reject(media_id)

    def bulk_approve(self) -> int:
        self._require()
        return self.review.bulk_approve()

    def bulk_reject(self) -> int:
        self._require()
        return self.review.bulk_reject()

    def get_stats(self) -> ProcessingStats:
        self._require()
        return self.queue_store.stats()

    def cleanup_tags(self) -> int:
        self._require()
        return self.cleaner.cleanup()

    def check_models(self) -> dict:
        return self.assets.check_models()

    def get_metrics(self) -> dict:
        self._require()
        return self.orchestrator.get_metrics()

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        self._progress_callback = callback
        if self.orchestrator is not None:
            self.orchestrator.progress_callback = callback

    async def close(self) -> None:
        """Release the HTTP client, temp frames and database engine."""
        if not self.initialized:
            return
        if self.orchestrator.is_running:
            self.orchestrator.stop()
            await self.orchestrator.wait_idle()
        await self.vision.close()
        self.sampler.cleanup_all()
        self.database.dispose()
        self.initialized = False
