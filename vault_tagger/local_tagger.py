"""
Local multi-model inference (Tier 1).
"""

import asyncio
from pathlib import Path
from typing import List, Optional

from .aggregation import AggregationThresholds, aggregate_frames
from .config import Settings
from .frame_sampler import is_usable_frame
from .logging import get_logger
from .model_assets import (
    BODY_MODEL,
    CLIP_TEXT_MODEL,
    CLIP_TOKENIZER,
    CLIP_VISION_MODEL,
    NSFW_MODEL,
    TAGGER_MODEL,
    ModelAssets,
)
from .models import FrameAnalysis, Tier1Result
from .tagging_engine import (
    BodyRegionDetector,
    BooruTagger,
    NsfwClassifier,
    TaggingEngineError,
    ZeroShotClassifier,
    create_scorer,
    load_frame,
)


class Tier1InitializationError(Exception):
    """Local inference could not be brought up; the pipeline must not start."""
    pass


class ScorerSet:
    """The scorers that loaded successfully. Any of them may be None."""

    def __init__(self, nsfw=None, tagger=None, body=None, zero_shot=None):
        self.nsfw = nsfw
        self.tagger = tagger
        self.body = body
        self.zero_shot = zero_shot

    def loaded(self) -> List[str]:
        names = ["nsfw", "tagger", "body", "zero_shot"]
        return [name for name in names if getattr(self, name) is not None]


class LocalInferenceTagger:
    """Runs every available scorer per frame and aggregates across frames."""

    def __init__(
        self,
        assets: ModelAssets,
        settings: Settings,
        scorers: Optional[ScorerSet] = None,
        thresholds: Optional[AggregationThresholds] = None,
    ):
        self.assets = assets
        self.settings = settings
        self.scorers = scorers
        self.thresholds = thresholds or AggregationThresholds()
        self.logger = get_logger("local_tagger")
        self.tier1_available = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load model sessions once. Raises Tier1InitializationError on setup failure."""
        async with self._init_lock:
            if self.tier1_available:
                return

            if self.scorers is None:
                missing = self.assets.missing_required()
                if missing:
                    raise Tier1InitializationError(f"Required model files missing: {', '.join(missing)}")
                self.scorers = await asyncio.to_thread(self._load_scorers)

            loaded = self.scorers.loaded()
            if not loaded:
                raise Tier1InitializationError("No local scorers could be loaded")

            self.tier1_available = True
            self.logger.info(f"✅ Tier 1 ready with scorers: {', '.join(loaded)}")

    def _load_scorers(self) -> ScorerSet:
        threads = {
            "intra_op_threads": self.settings.onnx_intra_op_threads,
            "inter_op_threads": self.settings.onnx_inter_op_threads,
        }
        scorers = ScorerSet()

        required = set(self.assets.required)

        nsfw_path = self.assets.path_for(NSFW_MODEL)
        if nsfw_path:
            scorers.nsfw = self._load_one(NsfwClassifier, NSFW_MODEL in required, nsfw_path, **threads)

        tagger_path = self.assets.path_for(TAGGER_MODEL)
        if tagger_path:
            scorers.tagger = self._load_one(
                BooruTagger, TAGGER_MODEL in required, tagger_path, self.assets.tag_labels(), **threads
            )

        body_path = self.assets.path_for(BODY_MODEL)
        if body_path:
            scorers.body = self._load_one(BodyRegionDetector, BODY_MODEL in required, body_path, **threads)

        clip_paths = [self.assets.path_for(name) for name in (CLIP_VISION_MODEL, CLIP_TEXT_MODEL, CLIP_TOKENIZER)]
        if all(clip_paths):
            scorers.zero_shot = self._load_one(
                ZeroShotClassifier, CLIP_VISION_MODEL in required, *clip_paths, **threads
            )
        else:
            self.logger.info("ℹ️  CLIP assets not present, zero-shot scoring disabled")

        return scorers

    def _load_one(self, factory, required: bool, *args, **kwargs):
        if required:
            try:
                return factory(*args, **kwargs)
            except TaggingEngineError as e:
                raise Tier1InitializationError(str(e))
        return create_scorer(factory, *args, **kwargs)

    def analyze_frame(self, frame_path: str) -> Optional[FrameAnalysis]:
        """Run all scorers on one frame. Returns None if the frame is unusable."""
        path = Path(frame_path)
        if not is_usable_frame(path):
            self.logger.warning(f"⚠️  Skipping missing or empty frame: {frame_path}")
            return None

        try:
            image = load_frame(str(path))
        except TaggingEngineError as e:
            self.logger.warning(f"⚠️  {e}")
            return None

        analysis = FrameAnalysis()
        scorers = self.scorers
        # Scorers are independent; one failing keeps what the others produced
        for field_name, scorer in (
            ("nsfw", scorers.nsfw),
            ("tags", scorers.tagger),
            ("body", scorers.body),
            ("zero_shot", scorers.zero_shot),
        ):
            if scorer is None:
                continue
            try:
                if field_name == "nsfw":
                    setattr(analysis, field_name, scorer.classify(image))
                else:
                    setattr(analysis, field_name, scorer.predict_tags(image))
            except TaggingEngineError as e:
                self.logger.warning(f"⚠️  {field_name} scorer failed on {path.name}: {e}")
        return analysis

    async def process_frames(self, frame_paths: List[str]) -> Tier1Result:
        """Score every frame and aggregate into one item-level result."""
        if not self.tier1_available:
            await self.initialize()

        analyses = []
        for frame_path in frame_paths:
            analysis = await asyncio.to_thread(self.analyze_frame, frame_path)
            if analysis is not None:
                analyses.append(analysis)

        result = aggregate_frames(analyses, frame_count=len(frame_paths), thresholds=self.thresholds)
        self.logger.debug(
            f"Tier 1: {len(analyses)}/{len(frame_paths)} frames scored, "
            f"{result.nsfw_category.value} @ {result.nsfw_confidence:.0%}, "
            f"{result.content_type.value}, {len(result.tags)} tags"
        )
        return result
