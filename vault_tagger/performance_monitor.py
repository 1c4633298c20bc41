"""
Performance monitoring utilities for the Vault auto-tagging pipeline.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .logging import get_logger

STAGES = ("frames", "tier1", "tier2", "tier3")


@dataclass
class PerformanceMetrics:
    """Performance metrics tracking."""

    # Remote vision calls
    api_calls_total: int = 0
    api_response_times: List[float] = field(default_factory=list)
    tier2_errors: Dict[str, int] = field(default_factory=dict)

    # Vocabulary cache
    cache_hits: int = 0
    cache_misses: int = 0
    tags_created: int = 0

    # Stage timings
    stage_times: Dict[str, float] = field(default_factory=lambda: {stage: 0.0 for stage in STAGES})
    stage_counts: Dict[str, int] = field(default_factory=lambda: {stage: 0 for stage in STAGES})

    # Item processing
    items_processed: int = 0
    items_failed: int = 0
    total_processing_time: float = 0.0
    average_processing_time: Optional[float] = None

    def update_averages(self):
        """Update calculated averages."""
        if self.items_processed > 0:
            self.average_processing_time = self.total_processing_time / self.items_processed

    def get_cache_hit_rate(self) -> float:
        """Calculate cache hit rate as a percentage."""
        total_cache_requests = self.cache_hits + self.cache_misses
        if total_cache_requests == 0:
            return 0.0
        return (self.cache_hits / total_cache_requests) * 100

    def average_stage_times(self) -> Dict[str, float]:
        return {
            stage: round(self.stage_times[stage] / self.stage_counts[stage], 3) if self.stage_counts[stage] else 0.0
            for stage in STAGES
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for logging."""
        self.update_averages()
        return {
            "api_calls_total": self.api_calls_total,
            "tier2_errors": dict(self.tier2_errors),
            "cache_hit_rate_percent": round(self.get_cache_hit_rate(), 2),
            "tags_created": self.tags_created,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "average_processing_time": round(self.average_processing_time or 0, 3),
            "average_stage_times": self.average_stage_times(),
        }


class PerformanceMonitor:
    """Performance monitoring and metrics collection."""

    def __init__(self):
        self.logger = get_logger("performance")
        self.metrics = PerformanceMetrics()
        self.start_time = time.time()

    def record_api_call(self, response_time: float):
        """Record a remote vision call."""
        self.metrics.api_calls_total += 1
        self.metrics.api_response_times.append(response_time)

    def record_tier2_error(self, kind: str):
        """Count a Tier 2 failure by kind (rate_limited, invalid_credentials, api_error, other)."""
        self.metrics.tier2_errors[kind] = self.metrics.tier2_errors.get(kind, 0) + 1

    def record_cache_hit(self):
        self.metrics.cache_hits += 1

    def record_cache_miss(self):
        self.metrics.cache_misses += 1

    def record_tag_created(self):
        self.metrics.tags_created += 1

    def record_stage(self, stage: str, duration: float):
        """Record time spent in one pipeline stage for one item."""
        self.metrics.stage_times[stage] = self.metrics.stage_times.get(stage, 0.0) + duration
        self.metrics.stage_counts[stage] = self.metrics.stage_counts.get(stage, 0) + 1

    def record_item_processed(self, processing_time: float):
        """Record item processing completion."""
        self.metrics.items_processed += 1
        self.metrics.total_processing_time += processing_time

    def record_item_failed(self):
        self.metrics.items_failed += 1

    def get_runtime_seconds(self) -> float:
        """Get total runtime in seconds."""
        return time.time() - self.start_time

    def log_performance_summary(self):
        """Log a summary of performance metrics."""
        runtime = self.get_runtime_seconds()
        metrics_dict = self.metrics.to_dict()

        self.logger.info(
            f"📈 Performance Summary: Runtime {runtime:.1f}s, "
            f"{metrics_dict['items_processed']} processed, {metrics_dict['items_failed']} failed, "
            f"Cache hit rate {metrics_dict['cache_hit_rate_percent']:.1f}%, "
            f"Vision calls {metrics_dict['api_calls_total']}"
        )

        if self.metrics.items_processed > 0:
            stages = ", ".join(f"{stage} {seconds:.2f}s" for stage, seconds in metrics_dict["average_stage_times"].items())
            self.logger.info(
                f"🎯 Average item time {metrics_dict['average_processing_time']:.2f}s ({stages})"
            )

    def get_metrics_dict(self) -> Dict[str, Any]:
        """Get all metrics as a dictionary."""
        runtime = self.get_runtime_seconds()
        metrics_dict = self.metrics.to_dict()
        metrics_dict["runtime_seconds"] = round(runtime, 2)
        return metrics_dict
