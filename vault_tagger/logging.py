"""
Logging configuration for the Vault auto-tagging pipeline.
"""

import logging
from typing import Any, Dict

from rich.logging import RichHandler


def setup_logging(log_level: str = "INFO") -> None:
    """Configure clean, simple logging output."""

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
        handlers=[RichHandler(
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
            show_level=False,
            markup=False
        )],
        force=True  # Override any existing configuration
    )

    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # Silence inference runtime loggers
    logging.getLogger("onnxruntime").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a standard logger instance."""
    return logging.getLogger(f"vault_tagger.{name}")


class MetricsLogger:
    """Logger for tracking per-item pipeline metrics."""

    def __init__(self):
        self.logger = get_logger("metrics")
        self.metrics: Dict[str, Any] = {
            "items_processed": 0,
            "tags_proposed": 0,
            "failures": 0,
            "tier2_fallbacks": 0,
            "processing_time": 0.0,
        }

    def log_item_processed(self, media_id: str, tags_count: int, processing_time: float) -> None:
        """Log a successfully analyzed media item."""
        self.metrics["items_processed"] += 1
        self.metrics["tags_proposed"] += tags_count
        self.metrics["processing_time"] += processing_time

        # Only log individual items at DEBUG level to avoid spam
        self.logger.debug(
            f"Item processed: {media_id} | Tags: {tags_count} | Time: {processing_time:.3f}s | "
            f"Total: {self.metrics['items_processed']} items, {self.metrics['tags_proposed']} tags"
        )

    def log_item_failure(self, media_id: str, error: str) -> None:
        """Log a failed media item."""
        self.metrics["failures"] += 1
        self.logger.warning(f"Item processing failed: {media_id} | Error: {error}")

    def log_tier2_fallback(self, media_id: str, error: str) -> None:
        """Log a Tier 2 failure that degraded the item to Tier-1-only results."""
        self.metrics["tier2_fallbacks"] += 1
        self.logger.warning(f"Tier 2 unavailable for {media_id}, continuing with Tier 1 only | {error}")

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics."""
        return self.metrics.copy()
