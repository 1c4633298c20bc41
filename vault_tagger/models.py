"""
Data models for the Vault auto-tagging pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MediaType(str, Enum):
    IMAGE = "image"
    GIF = "gif"
    VIDEO = "video"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NsfwCategory(str, Enum):
    NORMAL = "normal"
    SEXY = "sexy"
    PORN = "porn"
    HENTAI = "hentai"
    DRAWINGS = "drawings"


class ContentType(str, Enum):
    ANIME = "anime"
    REAL = "real"
    UNKNOWN = "unknown"


class MatchType(str, Enum):
    EXACT = "exact"
    SYNONYM = "synonym"
    PARTIAL = "partial"


class TagScore(BaseModel):
    """A label proposed by a scorer together with its confidence."""
    label: str
    confidence: float


class NsfwPrediction(BaseModel):
    """NSFW categorizer verdict for one frame."""
    category: NsfwCategory
    confidence: float


class FrameAnalysis(BaseModel):
    """Outputs of every available scorer for a single frame."""
    nsfw: Optional[NsfwPrediction] = None
    tags: List[TagScore] = []
    body: List[TagScore] = []
    zero_shot: List[TagScore] = []


class ExtractedFrame(BaseModel):
    """A still frame on disk and the media timestamp it was taken from."""
    path: str
    timestamp: float


class Tier1Result(BaseModel):
    """Aggregated local inference result for one media item."""
    nsfw_category: NsfwCategory = NsfwCategory.NORMAL
    nsfw_confidence: float = 0.0
    tags: List[TagScore] = []
    content_type: ContentType = ContentType.UNKNOWN


class VisionAttributes(BaseModel):
    performer_count: Optional[int] = None
    setting: Optional[str] = None
    lighting: Optional[str] = None
    is_pov: Optional[bool] = None
    is_amateur: Optional[bool] = None
    is_professional: Optional[bool] = None


class Tier2Result(BaseModel):
    """Free-text metadata proposed by the remote vision model."""
    title: Optional[str] = None
    description: Optional[str] = None
    additional_tags: List[str] = []
    attributes: VisionAttributes = Field(default_factory=VisionAttributes)


class MatchedTag(BaseModel):
    id: int
    name: str
    confidence: float
    match_type: MatchType


class NewTagSuggestion(BaseModel):
    name: str
    confidence: float
    reason: str


class Tier3Result(BaseModel):
    matched_tags: List[MatchedTag] = []
    new_tag_suggestions: List[NewTagSuggestion] = []


class Tag(BaseModel):
    """Vocabulary tag owned by the library."""
    id: int
    name: str


class MediaInfo(BaseModel):
    """The subset of a library media row the pipeline needs."""
    id: str
    filename: str
    path: str
    type: str = "image"
    duration_sec: Optional[float] = None
    title: Optional[str] = None
    thumb_path: Optional[str] = None


class QueueItem(BaseModel):
    id: int
    media_id: str
    status: QueueItemStatus
    priority: int = 0
    tier1_done: bool = False
    tier2_needed: bool = False
    tier2_done: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AnalysisResult(BaseModel):
    """Persisted outcome of the pipeline for one media item."""
    media_id: str
    nsfw_category: Optional[NsfwCategory] = None
    nsfw_confidence: Optional[float] = None
    tier1_tags: List[TagScore] = []
    title: Optional[str] = None
    description: Optional[str] = None
    tier2_tags: Optional[List[str]] = None
    attributes: Optional[VisionAttributes] = None
    matched_tags: List[MatchedTag] = []
    new_tag_suggestions: List[NewTagSuggestion] = []
    review_status: ReviewStatus = ReviewStatus.PENDING
    approved_tag_ids: Optional[List[int]] = None
    approved_title: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ReviewItem(BaseModel):
    media_id: str
    filename: str
    thumbnail_path: Optional[str] = None
    suggested_title: Optional[str] = None
    description: Optional[str] = None
    matched_tags: List[MatchedTag] = []
    new_tag_suggestions: List[NewTagSuggestion] = []
    nsfw_category: Optional[str] = None
    nsfw_confidence: Optional[float] = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    created_at: Optional[datetime] = None


class ReviewPage(BaseModel):
    items: List[ReviewItem]
    total: int


class ApprovalEdits(BaseModel):
    """User modifications applied while approving a result."""
    selected_tag_ids: Optional[List[int]] = None
    edited_title: Optional[str] = None
    new_tags: Optional[List[str]] = None


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None


class QueueStatus(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    is_running: bool = False
    is_paused: bool = False
    current_media_id: Optional[str] = None


class ProcessingStats(BaseModel):
    total_processed: int = 0
    tier1_only: int = 0
    tier2_used: int = 0
    avg_processing_time: float = 0.0
    tags_matched: int = 0
    new_tags_created: int = 0


class ProgressEvent(BaseModel):
    """Stage progress for the item currently in flight, or a run status change."""
    media_id: Optional[str] = None
    stage: str
    percent: int = 0
    extra: Dict[str, Any] = {}


class HealthStatus(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = "1.0.0"
    tier1_available: bool = False
    tier2_configured: bool = False
    metrics: Dict[str, Any] = {}
