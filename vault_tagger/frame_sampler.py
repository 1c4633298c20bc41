"""
Representative still-frame sampling for media items.

Decoding is delegated to an external ffmpeg process; this module only decides
how many frames to take and where.
"""

import asyncio
import re
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from .logging import get_logger
from .models import ExtractedFrame, MediaType

MIN_FRAME_BYTES = 1024
DEFAULT_DURATION = 60.0
WINDOW_START = 0.05
WINDOW_END = 0.95

# (upper bound in seconds, frame count)
FRAME_COUNT_STEPS = [
    (10, 2),
    (60, 4),
    (300, 6),
    (900, 8),
]
MAX_FRAME_COUNT = 10

VIDEO_EXTENSIONS = {"mp4", "webm", "mov", "avi", "mkv", "m4v", "wmv", "flv"}


class FrameExtractionError(Exception):
    """Raised when the decoder fails to produce a single frame."""
    pass


def frame_count_for_duration(duration: float) -> int:
    """Number of frames to sample for a video of the given length."""
    for upper_bound, count in FRAME_COUNT_STEPS:
        if duration <= upper_bound:
            return count
    return MAX_FRAME_COUNT


def sample_timestamps(duration: Optional[float]) -> List[float]:
    """Evenly spaced timestamps across the middle 90% of the duration."""
    duration = duration or DEFAULT_DURATION
    count = frame_count_for_duration(duration)
    start = duration * WINDOW_START
    usable = duration * (WINDOW_END - WINDOW_START)
    step_divisor = (count - 1) or 1
    return [start + usable * i / step_divisor for i in range(count)]


def detect_media_type(library_type: Optional[str], filename: str) -> MediaType:
    """Classify a library media row as image, gif or video."""
    extension = Path(filename).suffix.lower().lstrip(".")
    if extension == "gif":
        return MediaType.GIF
    if (library_type or "").lower() == "video" or extension in VIDEO_EXTENSIONS:
        return MediaType.VIDEO
    return MediaType.IMAGE


def is_usable_frame(path: Path) -> bool:
    """Frames under 1 KB are treated as corrupt or blank."""
    try:
        return path.is_file() and path.stat().st_size >= MIN_FRAME_BYTES
    except OSError:
        return False


class FrameSampler:
    """Produces representative still frames using an external decoder."""

    def __init__(self, ffmpeg_path: str, temp_dir: Path):
        self.ffmpeg_path = ffmpeg_path
        self.temp_dir = Path(temp_dir)
        self.logger = get_logger("frame_sampler")
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def work_dir_for(self, work_id: str) -> Path:
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", work_id) or "item"
        return self.temp_dir / safe_id

    async def sample(
        self,
        path: str,
        media_type: MediaType,
        duration: Optional[float],
        work_id: str,
    ) -> List[ExtractedFrame]:
        """Extract frames for one media item.

        Images are returned as-is. Frames the decoder fails on, or that come
        out under 1 KB, are dropped, so callers may get fewer frames than
        requested (possibly none).
        """
        if media_type == MediaType.IMAGE:
            return [ExtractedFrame(path=path, timestamp=0.0)]

        output_dir = self.work_dir_for(work_id)
        output_dir.mkdir(parents=True, exist_ok=True)

        if media_type == MediaType.GIF:
            return await self._extract_gif_frames(path, output_dir)
        return await self._extract_video_frames(path, output_dir, duration)

    async def _extract_gif_frames(self, gif_path: str, output_dir: Path) -> List[ExtractedFrame]:
        frames = []
        # First frame, then an early-middle frame
        for index, (frame_number, timestamp) in enumerate([(0, 0.0), (5, 0.5)]):
            frame_path = output_dir / f"frame_{index}.jpg"
            args = [
                "-i", gif_path,
                "-vf", f"select=eq(n\\,{frame_number})",
                "-vframes", "1",
                "-q:v", "2",
                str(frame_path),
            ]
            frame = await self._extract_one(args, frame_path, timestamp)
            if frame:
                frames.append(frame)
        return frames

    async def _extract_video_frames(
        self,
        video_path: str,
        output_dir: Path,
        duration: Optional[float],
    ) -> List[ExtractedFrame]:
        frames = []
        for index, timestamp in enumerate(sample_timestamps(duration)):
            frame_path = output_dir / f"frame_{index}.jpg"
            args = [
                "-ss", f"{timestamp:.2f}",
                "-i", video_path,
                "-vframes", "1",
                "-q:v", "2",
                "-vf", "scale=min(1280\\,iw):-1",
                str(frame_path),
            ]
            frame = await self._extract_one(args, frame_path, timestamp)
            if frame:
                frames.append(frame)
        self.logger.debug(f"Extracted {len(frames)} usable frames from {video_path}")
        return frames

    async def _extract_one(self, args: Sequence[str], frame_path: Path, timestamp: float) -> Optional[ExtractedFrame]:
        try:
            await self._run_decoder(args)
        except FrameExtractionError as e:
            self.logger.warning(f"⚠️  Failed to extract frame at {timestamp:.2f}s: {e}")
            return None

        if not is_usable_frame(frame_path):
            self.logger.warning(f"⚠️  Discarding empty or corrupt frame at {timestamp:.2f}s")
            return None
        return ExtractedFrame(path=str(frame_path), timestamp=timestamp)

    async def _run_decoder(self, args: Sequence[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, "-y", *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FrameExtractionError(f"Could not start decoder: {e}")

        _, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode(errors="replace")[-500:] if stderr else ""
            raise FrameExtractionError(f"Decoder exited with code {process.returncode}: {tail}")

    def cleanup(self, work_id: str) -> None:
        """Remove the frame work directory for one item."""
        shutil.rmtree(self.work_dir_for(work_id), ignore_errors=True)

    def cleanup_all(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
