"""
Job orchestration for the auto-tagging pipeline.

A single asyncio task pulls the highest-priority pending queue item, runs
frame sampling, Tier 1, the optional Tier 2 and Tier 3, and stores the
result for review. Pause and stop are cooperative: they are checked between
items, never mid-item.
"""

import asyncio
import time
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .frame_sampler import FrameSampler, detect_media_type
from .library import LibraryStore
from .local_tagger import LocalInferenceTagger, Tier1InitializationError
from .logging import MetricsLogger, get_logger
from .models import OperationResult, ProgressEvent, QueueItem, QueueStatus, Tier2Result
from .performance_monitor import PerformanceMonitor
from .queue_store import PRIORITY_ALL, PRIORITY_SPECIFIC, PRIORITY_UNTAGGED, QueueStore
from .tag_resolver import TagResolver
from .vision_client import RemoteVisionAnalyzer, VisionAPIError

ProgressCallback = Callable[[ProgressEvent], Any]


class PipelineError(Exception):
    """Item-level failure that cannot fall back to a partial result."""
    pass


class AnalysisOrchestrator:
    """Owns the run loop over the durable processing queue."""

    def __init__(
        self,
        queue_store: QueueStore,
        library: LibraryStore,
        sampler: FrameSampler,
        tier1: LocalInferenceTagger,
        vision: RemoteVisionAnalyzer,
        resolver: TagResolver,
        performance_monitor: Optional[PerformanceMonitor] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.logger = get_logger("orchestrator")
        self.metrics = MetricsLogger()
        self.queue_store = queue_store
        self.library = library
        self.sampler = sampler
        self.tier1 = tier1
        self.vision = vision
        self.resolver = resolver
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.progress_callback = progress_callback

        self.is_running = False
        self.is_paused = False
        self.enable_tier2 = False
        self.concurrency = 1
        self.current_media_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._starting = False

    # Enqueue

    def queue_untagged(self) -> int:
        """Queue every media item without tags that has never been queued."""
        try:
            queued = self.queue_store.enqueue(self.library.untagged_unqueued_media_ids(), PRIORITY_UNTAGGED)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to queue untagged media: {e}")
            return 0
        self.logger.info(f"📥 Queued {queued} untagged items")
        return queued

    def queue_specific(self, media_ids: List[str]) -> int:
        try:
            queued = self.queue_store.enqueue(media_ids, PRIORITY_SPECIFIC)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to queue media: {e}")
            return 0
        self.logger.info(f"📥 Queued {queued}/{len(media_ids)} requested items")
        return queued

    def queue_all(self) -> int:
        try:
            queued = self.queue_store.enqueue(self.library.unqueued_media_ids(), PRIORITY_ALL)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to queue library: {e}")
            return 0
        self.logger.info(f"📥 Queued {queued} items from the whole library")
        return queued

    def untagged_count(self) -> int:
        try:
            return self.library.untagged_count()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to count untagged media: {e}")
            return 0

    def retry_failed(self) -> int:
        try:
            retried = self.queue_store.retry_failed()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to retry failed items: {e}")
            return 0
        self.logger.info(f"🔄 Requeued {retried} failed items")
        return retried

    def clear_failed(self) -> int:
        try:
            cleared = self.queue_store.clear_failed()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to clear failed items: {e}")
            return 0
        self.logger.info(f"🧹 Cleared {cleared} failed items")
        return cleared

    def get_status(self) -> QueueStatus:
        counts = self.queue_store.status_counts()
        return QueueStatus(
            total=sum(counts.values()),
            pending=counts["pending"],
            processing=counts["processing"],
            completed=counts["completed"],
            failed=counts["failed"],
            is_running=self.is_running,
            is_paused=self.is_paused,
            current_media_id=self.current_media_id,
        )

    # Run control

    async def start(self, enable_tier2: bool = False, concurrency: int = 1) -> OperationResult:
        """Start the run loop. Refused while already running or if Tier 1 cannot load."""
        if self.is_running or self._starting:
            return OperationResult(success=False, error="Already running")

        # Held across the initialize await so a concurrent start is refused
        self._starting = True
        try:
            await self.tier1.initialize()
        except Tier1InitializationError as e:
            self.logger.error(f"❌ Tier 1 initialization failed: {e}")
            return OperationResult(success=False, error=str(e))
        finally:
            self._starting = False

        self.enable_tier2 = enable_tier2
        # Accepted for API compatibility; items are always processed one at a time
        self.concurrency = max(1, concurrency)
        self.is_running = True
        self.is_paused = False
        self._emit_status("started")
        self.logger.info(f"🚀 Processing started (Tier 2 {'on' if enable_tier2 else 'off'})")
        # A stopped loop still finishing its last item carries on instead of a second one
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._process_loop())
        return OperationResult(success=True)

    def pause(self) -> OperationResult:
        if not self.is_running:
            return OperationResult(success=False, error="Not running")
        self.is_paused = True
        self._emit_status("paused")
        self.logger.info("⏸️  Processing will pause after the current item")
        return OperationResult(success=True)

    def resume(self) -> OperationResult:
        if not self.is_running or not self.is_paused:
            return OperationResult(success=False, error="Not paused")
        self.is_paused = False
        self._emit_status("resumed")
        self.logger.info("▶️  Processing resumed")
        # A loop still finishing its last item picks the flag up itself
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._process_loop())
        return OperationResult(success=True)

    def stop(self) -> OperationResult:
        self.is_running = False
        self.is_paused = False
        self._emit_status("stopped")
        self.logger.info("🛑 Processing will stop after the current item")
        return OperationResult(success=True)

    async def wait_idle(self) -> None:
        """Wait for the run loop to exit."""
        if self._task is not None:
            await self._task

    async def run_until_empty(self, enable_tier2: bool = False) -> OperationResult:
        """Start and wait until the queue drains or the run is stopped."""
        result = await self.start(enable_tier2=enable_tier2)
        if result.success:
            await self.wait_idle()
        return result

    async def _process_loop(self) -> None:
        while self.is_running and not self.is_paused:
            try:
                item = self.queue_store.next_pending()
            except SQLAlchemyError as e:
                self.logger.error(f"❌ Failed to read queue, stopping: {e}")
                self.is_running = False
                self._emit_status("stopped")
                break

            if item is None:
                self.is_running = False
                self._emit_status("completed")
                self.logger.info("🎉 Queue empty, processing complete")
                self.performance_monitor.log_performance_summary()
                break

            await self.process_item(item)
            # Let pause/stop requests land between items
            await asyncio.sleep(0)

    # Pipeline

    async def process_item(self, item: QueueItem) -> bool:
        """Run every stage for one queue item. Returns True when it completed."""
        self.current_media_id = item.media_id
        start_time = time.time()
        work_id = f"{item.id}-{item.media_id}"

        try:
            self.queue_store.mark_processing(item.id)
            self._emit_progress(item.media_id, "processing", 0)

            media = self.library.get_media(item.media_id)
            if media is None:
                raise PipelineError("Media not found")
            media_type = detect_media_type(media.type, media.filename)

            self._emit_progress(item.media_id, "extracting", 10)
            stage_start = time.time()
            frames = await self.sampler.sample(media.path, media_type, media.duration_sec, work_id)
            self.performance_monitor.record_stage("frames", time.time() - stage_start)
            if not frames:
                raise PipelineError("No frames extracted")
            frame_paths = [frame.path for frame in frames]

            self._emit_progress(item.media_id, "tier1", 30)
            stage_start = time.time()
            tier1_result = await self.tier1.process_frames(frame_paths)
            self.performance_monitor.record_stage("tier1", time.time() - stage_start)
            self.queue_store.set_progress(item.id, tier1_done=True)

            tier2_result = await self._run_tier2(item, frame_paths, media_type.value, media.filename,
                                                 [tag.label for tag in tier1_result.tags])

            self._emit_progress(item.media_id, "tier3", 70)
            stage_start = time.time()
            tier3_result = self.resolver.match(
                tier1_result.tags,
                tier2_result.additional_tags if tier2_result else None,
            )
            self.performance_monitor.record_stage("tier3", time.time() - stage_start)

            self._emit_progress(item.media_id, "storing", 90)
            self.queue_store.save_result(item.media_id, tier1_result, tier2_result, tier3_result)

            processing_time = time.time() - start_time
            self.queue_store.mark_completed(item.id, int(processing_time * 1000))
            self.performance_monitor.record_item_processed(processing_time)
            self.metrics.log_item_processed(
                item.media_id,
                len(tier3_result.matched_tags) + len(tier3_result.new_tag_suggestions),
                processing_time,
            )
            self._emit_progress(item.media_id, "completed", 100, processing_time=round(processing_time, 3))
            return True

        except Exception as e:
            error = str(e) or type(e).__name__
            self.logger.error(f"❌ Failed to process {item.media_id}: {error}")
            self.metrics.log_item_failure(item.media_id, error)
            self.performance_monitor.record_item_failed()
            try:
                self.queue_store.mark_failed(item.id, error)
            except SQLAlchemyError as db_error:
                # Row stays "processing" and can be retried by hand
                self.logger.error(f"❌ Could not record failure for {item.media_id}: {db_error}")
            self._emit_progress(item.media_id, "failed", 0, error=error)
            return False

        finally:
            self.sampler.cleanup(work_id)
            self.current_media_id = None

    async def _run_tier2(
        self,
        item: QueueItem,
        frame_paths: List[str],
        media_type: str,
        filename: str,
        tier1_labels: List[str],
    ) -> Optional[Tier2Result]:
        """Remote analysis when enabled. Any failure degrades to no Tier 2 result."""
        if not (self.enable_tier2 and self.vision.is_enabled()):
            self.logger.debug(
                f"Skipping Tier 2 for {item.media_id} (enabled: {self.enable_tier2}, "
                f"configured: {self.vision.is_enabled()})"
            )
            return None

        self._emit_progress(item.media_id, "tier2", 50)
        self.queue_store.set_progress(item.id, tier2_needed=True)
        stage_start = time.time()
        try:
            result = await self.vision.analyze(frame_paths, media_type, filename, tier1_labels)
        except VisionAPIError as e:
            self.performance_monitor.record_tier2_error(e.kind)
            self.metrics.log_tier2_fallback(item.media_id, str(e))
            return None
        except Exception as e:
            self.performance_monitor.record_tier2_error("other")
            self.metrics.log_tier2_fallback(item.media_id, str(e) or type(e).__name__)
            return None
        finally:
            self.performance_monitor.record_stage("tier2", time.time() - stage_start)

        self.queue_store.set_progress(item.id, tier2_done=True)
        return result

    # Events

    def _emit_progress(self, media_id: str, stage: str, percent: int, **extra) -> None:
        self._emit(ProgressEvent(media_id=media_id, stage=stage, percent=percent, extra=extra))

    def _emit_status(self, status: str) -> None:
        self._emit(ProgressEvent(stage=status))

    def _emit(self, event: ProgressEvent) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(event)
        except Exception as e:
            self.logger.warning(f"⚠️  Progress callback failed: {e}")

    def get_metrics(self) -> dict:
        """Get current processing metrics."""
        return {
            "basic_metrics": self.metrics.get_metrics(),
            "performance_metrics": self.performance_monitor.get_metrics_dict(),
        }
