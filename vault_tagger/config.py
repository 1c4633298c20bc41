"""
Configuration management for the Vault auto-tagging pipeline.
"""

import json
import tempfile
from pathlib import Path
from typing import Annotated, List, Optional

import pytz
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_REQUIRED_MODELS = [
    "nsfw-classifier.onnx",
    "wd-tagger-v3.onnx",
    "wd-tags.json",
]


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Storage Configuration
    database_url: str = Field(default="sqlite:///vault.db")
    frame_temp_dir: Optional[str] = Field(default=None)
    ffmpeg_path: str = Field(default="ffmpeg")

    # Model Configuration
    model_cache_dir: str = Field(default="./models")
    required_models: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_MODELS))
    onnx_intra_op_threads: int = Field(default=2, gt=0)
    onnx_inter_op_threads: int = Field(default=1, gt=0)

    # Tier 2 (remote vision model) Configuration
    tier2_enabled: bool = Field(default=False)
    vision_api_key: str = Field(default="")
    vision_api_url: str = Field(default="https://api.venice.ai/api/v1")
    vision_model: str = Field(default="qwen3-vl-235b-a22b")
    vision_max_frames: int = Field(default=3, ge=1, le=3)
    vision_max_tokens: int = Field(default=1024, gt=0)
    vision_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    # Performance Configuration
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, gt=0.0)
    request_timeout: float = Field(default=120.0, gt=0.0)
    tag_cache_ttl: int = Field(default=60, gt=0)  # Vocabulary cache TTL in seconds

    # Review Configuration
    review_page_size: int = Field(default=50, gt=0)
    protected_tags: Annotated[List[str], NoDecode] = Field(default_factory=list)

    # Logging Configuration
    log_level: str = Field(default="INFO")

    # Control server
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8000)

    # Scheduling Configuration
    enable_scheduler: bool = Field(default=False)
    cron_schedule: str = Field(default="0 3 * * *")  # Daily at 3 AM
    timezone: str = Field(default="UTC")

    @field_validator("vision_api_url")
    @classmethod
    def validate_vision_url(cls, v):
        """Ensure the vision API URL is properly formatted."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("VISION_API_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {valid_levels}")
        return v.upper()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        """Ensure the timezone is known to pytz."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown TIMEZONE: {v}")
        return v

    @field_validator("required_models", "protected_tags", mode="before")
    @classmethod
    def parse_name_list(cls, v):
        """Parse name lists from JSON array or comma-separated formats."""
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("[") and v.endswith("]"):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    raise ValueError("Invalid JSON list format")
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def tier2_configured(self) -> bool:
        """Tier 2 runs only when explicitly enabled and credentialed."""
        return self.tier2_enabled and bool(self.vision_api_key)

    def get_frame_temp_dir(self) -> Path:
        """Directory under which per-item frame work directories are created."""
        if self.frame_temp_dir:
            return Path(self.frame_temp_dir)
        return Path(tempfile.gettempdir()) / "vault-ai-frames"

    def get_model_dir(self) -> Path:
        return Path(self.model_cache_dir).expanduser()


def load_settings(**overrides) -> Settings:
    """Build a settings object, letting explicit overrides win over the environment."""
    return Settings(**overrides)
