"""
Shared fixtures for the Vault Auto-Tagger test suite.
"""

from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest
import pytest_asyncio
from PIL import Image

from vault_tagger.config import Settings
from vault_tagger.database import Database
from vault_tagger.library import LibraryStore
from vault_tagger.local_tagger import ScorerSet
from vault_tagger.models import (
    ExtractedFrame,
    MediaInfo,
    MediaType,
    NsfwCategory,
    NsfwPrediction,
    TagScore,
    Tier1Result,
    Tier2Result,
)
from vault_tagger.queue_store import QueueStore
from vault_tagger.service import AutoTaggerService


def write_jpeg(path: Path, size: int = 128) -> Path:
    """Write a noisy JPEG; noise keeps it well above the 1 KB frame floor."""
    pixels = np.random.default_rng(0).integers(0, 255, (size, size, 3), dtype=np.uint8)
    Image.fromarray(pixels).save(path, format="JPEG", quality=95)
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'vault.db'}",
        frame_temp_dir=str(tmp_path / "frames"),
        model_cache_dir=str(tmp_path / "models"),
        vision_api_key="",
        tier2_enabled=False,
        retry_delay=0.001,
        max_retries=2,
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def library(database):
    return LibraryStore(database)


@pytest.fixture
def queue_store(database):
    return QueueStore(database)


@pytest.fixture
def add_media(library, tmp_path):
    """Register a media row whose file is a real JPEG on disk."""
    def _add(media_id: str, filename: Optional[str] = None, **fields) -> MediaInfo:
        filename = filename or f"{media_id}.jpg"
        path = write_jpeg(tmp_path / filename)
        media = MediaInfo(id=media_id, filename=filename, path=str(path), **fields)
        library.add_media(media)
        return media
    return _add


class FakeSampler:
    """Returns the media file itself as the only frame."""

    def __init__(self, frames: Optional[List[str]] = None):
        self.frames = frames
        self.sampled = []
        self.cleaned = []

    async def sample(self, path, media_type: MediaType, duration, work_id) -> List[ExtractedFrame]:
        self.sampled.append(work_id)
        paths = self.frames if self.frames is not None else [path]
        return [ExtractedFrame(path=p, timestamp=0.0) for p in paths]

    def cleanup(self, work_id):
        self.cleaned.append(work_id)

    def cleanup_all(self):
        pass


class FakeTier1:
    """Stands in for local inference with a canned result."""

    def __init__(self, result: Optional[Tier1Result] = None, error: Optional[Exception] = None,
                 init_error: Optional[Exception] = None):
        self.result = result or Tier1Result()
        self.error = error
        self.init_error = init_error
        self.tier1_available = False
        self.calls = []

    async def initialize(self):
        if self.init_error:
            raise self.init_error
        self.tier1_available = True

    async def process_frames(self, frame_paths):
        self.calls.append(list(frame_paths))
        if self.error:
            raise self.error
        return self.result


class FakeVision:
    """Remote analyzer double: returns a result or raises."""

    def __init__(self, result: Optional[Tier2Result] = None, error: Optional[Exception] = None, enabled: bool = True):
        self.result = result or Tier2Result()
        self.error = error
        self.enabled = enabled
        self.calls = []

    def is_enabled(self):
        return self.enabled

    async def analyze(self, frame_paths, media_type, filename, tier1_labels):
        self.calls.append((list(frame_paths), media_type, filename, list(tier1_labels)))
        if self.error:
            raise self.error
        return self.result

    async def close(self):
        pass


class FakeNsfwScorer:
    def __init__(self, category=NsfwCategory.PORN, confidence=0.9):
        self.prediction = NsfwPrediction(category=category, confidence=confidence)

    def classify(self, image):
        return self.prediction


class FakeTagScorer:
    def __init__(self, tags):
        self.tags = [TagScore(label=label, confidence=conf) for label, conf in tags]

    def predict_tags(self, image):
        return list(self.tags)


@pytest_asyncio.fixture
async def service(settings, tmp_path):
    """An initialized service with fake scorers, one vocabulary tag and two images."""
    service = AutoTaggerService(
        settings,
        scorers=ScorerSet(
            nsfw=FakeNsfwScorer(NsfwCategory.SEXY, 0.8),
            tagger=FakeTagScorer([("smile", 0.8), ("sunset_glow", 0.9)]),
        ),
    )
    service.initialize()
    service.library.insert_tag("smile")
    for media_id in ("m1", "m2"):
        path = write_jpeg(tmp_path / f"{media_id}.jpg")
        service.library.add_media(MediaInfo(id=media_id, filename=path.name, path=str(path)))
    yield service
    await service.close()
