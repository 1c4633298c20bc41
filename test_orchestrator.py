"""
Tests for queue orchestration and run control.
"""

import asyncio
from pathlib import Path

import pytest

from conftest import FakeSampler, FakeTier1, FakeVision
from vault_tagger.local_tagger import Tier1InitializationError
from vault_tagger.models import (
    ContentType,
    MatchType,
    NsfwCategory,
    QueueItemStatus,
    TagScore,
    Tier1Result,
    Tier2Result,
)
from vault_tagger.orchestrator import AnalysisOrchestrator
from vault_tagger.performance_monitor import PerformanceMonitor
from vault_tagger.queue_store import PRIORITY_ALL, PRIORITY_SPECIFIC, PRIORITY_UNTAGGED
from vault_tagger.tag_resolver import TagResolver
from vault_tagger.vision_client import RateLimitedError

TIER1 = Tier1Result(
    nsfw_category=NsfwCategory.PORN,
    nsfw_confidence=0.9,
    tags=[TagScore(label="smile", confidence=0.8), TagScore(label="golden_hour", confidence=0.7)],
    content_type=ContentType.REAL,
)


@pytest.fixture
def make_orchestrator(queue_store, library):
    def _make(tier1=None, vision=None, sampler=None, progress_callback=None):
        monitor = PerformanceMonitor()
        return AnalysisOrchestrator(
            queue_store,
            library,
            sampler or FakeSampler(),
            tier1 or FakeTier1(TIER1),
            vision or FakeVision(enabled=False),
            TagResolver(library, performance_monitor=monitor),
            performance_monitor=monitor,
            progress_callback=progress_callback,
        )
    return _make


def item_for(queue_store, media_id):
    return next(item for item in queue_store.list_items() if item.media_id == media_id)


def test_enqueue_is_idempotent(make_orchestrator, add_media, queue_store):
    add_media("m1")
    orchestrator = make_orchestrator()

    assert orchestrator.queue_specific(["m1", "m1"]) == 1
    assert orchestrator.queue_specific(["m1"]) == 0
    assert orchestrator.get_status().total == 1


def test_queue_selection_and_priorities(make_orchestrator, add_media, library, database, queue_store):
    for media_id in ("m1", "m2", "m3"):
        add_media(media_id)
    tag_id = library.insert_tag("smile")
    with database.session_scope() as session:
        library.link_tags(session, "m2", [tag_id])
    orchestrator = make_orchestrator()

    assert orchestrator.queue_specific(["m3"]) == 1
    assert orchestrator.queue_untagged() == 1
    assert orchestrator.queue_all() == 1
    assert orchestrator.untagged_count() == 2

    priorities = {item.media_id: item.priority for item in queue_store.list_items()}
    assert priorities == {"m3": PRIORITY_SPECIFIC, "m1": PRIORITY_UNTAGGED, "m2": PRIORITY_ALL}


def test_next_pending_order(queue_store):
    queue_store.enqueue(["a"], PRIORITY_UNTAGGED)
    queue_store.enqueue(["b"], PRIORITY_SPECIFIC)
    queue_store.enqueue(["c"], PRIORITY_ALL)
    queue_store.enqueue(["d"], PRIORITY_SPECIFIC)

    order = []
    item = queue_store.next_pending()
    while item is not None:
        order.append(item.media_id)
        queue_store.mark_processing(item.id)
        item = queue_store.next_pending()

    assert order == ["b", "d", "a", "c"]


@pytest.mark.asyncio
async def test_run_processes_whole_queue(make_orchestrator, add_media, library, queue_store):
    add_media("m1")
    add_media("m2")
    smile_id = library.insert_tag("Smile")
    events = []
    sampler = FakeSampler()
    orchestrator = make_orchestrator(sampler=sampler, progress_callback=events.append)
    orchestrator.queue_untagged()

    result = await orchestrator.start()
    await orchestrator.wait_idle()

    assert result.success is True
    status = orchestrator.get_status()
    assert (status.completed, status.pending, status.failed) == (2, 0, 0)
    assert status.is_running is False

    stored = queue_store.get_result("m1")
    assert [(t.id, t.match_type) for t in stored.matched_tags] == [(smile_id, MatchType.EXACT)]
    assert [s.name for s in stored.new_tag_suggestions] == ["golden hour"]
    assert stored.nsfw_category == NsfwCategory.PORN
    assert stored.title is None

    m1_stages = [e.stage for e in events if e.media_id == "m1"]
    assert m1_stages == ["processing", "extracting", "tier1", "tier3", "storing", "completed"]
    run_events = [e.stage for e in events if e.media_id is None]
    assert run_events == ["started", "completed"]

    item = item_for(queue_store, "m1")
    assert item.tier1_done is True
    assert item.tier2_needed is False
    assert sampler.cleaned == sampler.sampled


@pytest.mark.asyncio
async def test_tier2_failure_degrades_to_tier1(make_orchestrator, add_media, queue_store):
    add_media("m1")
    vision = FakeVision(error=RateLimitedError("Rate limited", status_code=429))
    orchestrator = make_orchestrator(vision=vision)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty(enable_tier2=True)

    item = item_for(queue_store, "m1")
    assert item.status == QueueItemStatus.COMPLETED
    assert item.tier2_needed is True
    assert item.tier2_done is False

    stored = queue_store.get_result("m1")
    assert stored.title is None
    assert stored.tier2_tags is None
    assert orchestrator.performance_monitor.metrics.tier2_errors == {"rate_limited": 1}
    assert orchestrator.get_metrics()["basic_metrics"]["tier2_fallbacks"] == 1


@pytest.mark.asyncio
async def test_unexpected_tier2_error_is_contained(make_orchestrator, add_media, queue_store):
    add_media("m1")
    orchestrator = make_orchestrator(vision=FakeVision(error=ValueError("bad frame")))
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty(enable_tier2=True)

    assert item_for(queue_store, "m1").status == QueueItemStatus.COMPLETED
    assert orchestrator.performance_monitor.metrics.tier2_errors == {"other": 1}


@pytest.mark.asyncio
async def test_tier2_result_is_stored(make_orchestrator, add_media, library, queue_store):
    add_media("m1", filename="a3f9c2d1e8b7.jpg")
    library.insert_tag("smile")
    vision = FakeVision(result=Tier2Result(title="Poolside", description="By the pool", additional_tags=["Smile", "pool party"]))
    orchestrator = make_orchestrator(vision=vision)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty(enable_tier2=True)

    frames, media_type, filename, labels = vision.calls[0]
    assert media_type == "image"
    assert filename == "a3f9c2d1e8b7.jpg"
    assert labels == ["smile", "golden_hour"]

    stored = queue_store.get_result("m1")
    assert stored.title == "Poolside"
    assert stored.tier2_tags == ["Smile", "pool party"]
    assert [t.name for t in stored.matched_tags] == ["smile"]
    assert {s.name for s in stored.new_tag_suggestions} == {"golden hour", "pool party"}
    assert item_for(queue_store, "m1").tier2_done is True


@pytest.mark.asyncio
async def test_tier2_skipped_unless_enabled_for_run(make_orchestrator, add_media, queue_store):
    add_media("m1")
    vision = FakeVision()
    orchestrator = make_orchestrator(vision=vision)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty(enable_tier2=False)

    assert vision.calls == []
    assert item_for(queue_store, "m1").tier2_needed is False


@pytest.mark.asyncio
async def test_missing_media_fails_item(make_orchestrator, queue_store):
    tier1 = FakeTier1(TIER1)
    orchestrator = make_orchestrator(tier1=tier1)
    orchestrator.queue_specific(["ghost"])

    await orchestrator.run_until_empty()

    item = item_for(queue_store, "ghost")
    assert item.status == QueueItemStatus.FAILED
    assert item.error == "Media not found"
    assert tier1.calls == []


@pytest.mark.asyncio
async def test_no_frames_fails_item(make_orchestrator, add_media, queue_store):
    add_media("m1")
    sampler = FakeSampler(frames=[])
    orchestrator = make_orchestrator(sampler=sampler)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty()

    item = item_for(queue_store, "m1")
    assert item.status == QueueItemStatus.FAILED
    assert item.error == "No frames extracted"
    assert sampler.cleaned == sampler.sampled
    assert queue_store.get_result("m1") is None


@pytest.mark.asyncio
async def test_failed_items_can_be_retried_and_cleared(make_orchestrator, add_media, queue_store):
    add_media("m1")
    tier1 = FakeTier1(TIER1, error=RuntimeError("model exploded"))
    orchestrator = make_orchestrator(tier1=tier1)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty()
    assert item_for(queue_store, "m1").error == "model exploded"

    assert orchestrator.retry_failed() == 1
    item = item_for(queue_store, "m1")
    assert item.status == QueueItemStatus.PENDING
    assert item.error is None
    assert item.started_at is None

    await orchestrator.run_until_empty()
    assert orchestrator.clear_failed() == 1
    assert orchestrator.get_status().total == 0


@pytest.mark.asyncio
async def test_start_refused_when_tier1_unavailable(make_orchestrator, add_media, queue_store):
    add_media("m1")
    tier1 = FakeTier1(init_error=Tier1InitializationError("Required model files missing: wd-tagger-v3.onnx"))
    orchestrator = make_orchestrator(tier1=tier1)
    orchestrator.queue_specific(["m1"])

    result = await orchestrator.start()

    assert result.success is False
    assert "wd-tagger-v3.onnx" in result.error
    assert orchestrator.is_running is False
    assert item_for(queue_store, "m1").status == QueueItemStatus.PENDING


@pytest.mark.asyncio
async def test_start_while_running_is_refused(make_orchestrator, add_media):
    add_media("m1")
    orchestrator = make_orchestrator()
    orchestrator.queue_specific(["m1"])

    first = await orchestrator.start()
    second = await orchestrator.start()
    await orchestrator.wait_idle()

    assert first.success is True
    assert second.success is False
    assert second.error == "Already running"


@pytest.mark.asyncio
async def test_pause_takes_effect_between_items(make_orchestrator, add_media):
    for media_id in ("m1", "m2", "m3"):
        add_media(media_id)

    def pause_after_first(event):
        if event.media_id and event.stage == "completed" and not orchestrator.is_paused:
            orchestrator.pause()

    orchestrator = make_orchestrator(progress_callback=pause_after_first)
    orchestrator.queue_untagged()

    await orchestrator.start()
    await orchestrator.wait_idle()

    status = orchestrator.get_status()
    assert (status.completed, status.pending) == (1, 2)
    assert status.is_running is True
    assert status.is_paused is True

    orchestrator.progress_callback = None
    assert orchestrator.resume().success is True
    await orchestrator.wait_idle()

    status = orchestrator.get_status()
    assert (status.completed, status.pending) == (3, 0)
    assert status.is_running is False


@pytest.mark.asyncio
async def test_stop_takes_effect_between_items(make_orchestrator, add_media):
    for media_id in ("m1", "m2", "m3"):
        add_media(media_id)

    def stop_after_first(event):
        if event.media_id and event.stage == "completed":
            orchestrator.stop()

    orchestrator = make_orchestrator(progress_callback=stop_after_first)
    orchestrator.queue_untagged()

    await orchestrator.start()
    await orchestrator.wait_idle()

    status = orchestrator.get_status()
    assert (status.completed, status.pending, status.processing) == (1, 2, 0)
    assert status.is_running is False
    assert orchestrator.resume().success is False


@pytest.mark.asyncio
async def test_stale_processing_rows_are_not_picked_up(make_orchestrator, add_media, queue_store):
    add_media("m1")
    add_media("m2")
    orchestrator = make_orchestrator()
    orchestrator.queue_specific(["m1", "m2"])
    queue_store.mark_processing(item_for(queue_store, "m1").id)

    await orchestrator.run_until_empty()

    assert item_for(queue_store, "m1").status == QueueItemStatus.PROCESSING
    assert item_for(queue_store, "m2").status == QueueItemStatus.COMPLETED


@pytest.mark.asyncio
async def test_progress_callback_errors_are_ignored(make_orchestrator, add_media, queue_store):
    add_media("m1")

    def broken_callback(event):
        raise RuntimeError("ui went away")

    orchestrator = make_orchestrator(progress_callback=broken_callback)
    orchestrator.queue_specific(["m1"])

    await orchestrator.run_until_empty()

    assert item_for(queue_store, "m1").status == QueueItemStatus.COMPLETED


def test_pause_requires_running(make_orchestrator):
    orchestrator = make_orchestrator()

    assert orchestrator.pause().success is False
    assert orchestrator.resume().success is False


class GatedTier1(FakeTier1):
    """Holds every Tier 1 call until released and records overlap."""

    def __init__(self, result):
        super().__init__(result)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def process_frames(self, frame_paths):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.entered.set()
        try:
            await self.release.wait()
            return await super().process_frames(frame_paths)
        finally:
            self.in_flight -= 1


class SlowInitTier1(FakeTier1):
    async def initialize(self):
        await asyncio.sleep(0)
        await super().initialize()


@pytest.mark.asyncio
async def test_restart_after_stop_keeps_a_single_worker(make_orchestrator, add_media):
    for media_id in ("m1", "m2", "m3"):
        add_media(media_id)
    tier1 = GatedTier1(TIER1)
    orchestrator = make_orchestrator(tier1=tier1)
    orchestrator.queue_specific(["m1", "m2", "m3"])

    await orchestrator.start()
    await tier1.entered.wait()
    orchestrator.stop()
    restarted = await orchestrator.start()
    tier1.release.set()
    await orchestrator.wait_idle()

    assert restarted.success is True
    assert tier1.max_in_flight == 1
    assert [Path(calls[0]).name for calls in tier1.calls] == ["m1.jpg", "m2.jpg", "m3.jpg"]
    assert orchestrator.get_status().completed == 3


@pytest.mark.asyncio
async def test_concurrent_starts_are_refused_during_initialization(make_orchestrator, add_media):
    add_media("m1")
    orchestrator = make_orchestrator(tier1=SlowInitTier1(TIER1))
    orchestrator.queue_specific(["m1"])

    first, second = await asyncio.gather(orchestrator.start(), orchestrator.start())
    await orchestrator.wait_idle()

    assert first.success is True
    assert second.success is False
    assert second.error == "Already running"
    assert orchestrator.get_status().completed == 1
