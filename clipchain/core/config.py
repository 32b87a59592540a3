"""
Configuration System
====================

Centralized, validated configuration management with typed dataclasses.
"""

import os
import re
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Union
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


FAILURE_POLICIES = {"abort-on-first-failure", "best-effort"}
TRANSITION_TYPES = {"hard-cut", "dissolve", "fade", "wipe"}


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class VideoConfig:
    """Per-segment generation defaults."""

    segment_duration: int = 8
    resolution: str = "720p"
    aspect_ratio: str = "16:9"
    negative_prompt: str = ""

    VALID_RESOLUTIONS = {"720p", "1080p"}
    VALID_ASPECT_RATIOS = {"16:9", "9:16", "1:1"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.segment_duration <= 20:
            raise ConfigurationError(
                f"Segment duration must be 1-20 seconds, got {self.segment_duration}",
                config_key="video.segment_duration",
            )
        if self.resolution not in self.VALID_RESOLUTIONS:
            raise ConfigurationError(
                f"Invalid resolution: {self.resolution}",
                config_key="video.resolution",
            )
        if self.aspect_ratio not in self.VALID_ASPECT_RATIOS:
            raise ConfigurationError(
                f"Invalid aspect ratio: {self.aspect_ratio}",
                config_key="video.aspect_ratio",
            )


@dataclass
class ServicesConfig:
    """Which remote services and models generate images and videos."""

    image_service: str = "google"
    # None selects the service default model
    image_model: Optional[str] = None
    video_service: str = "google"
    video_model: Optional[str] = None
    request_timeout: int = 120

    # Service-specific settings (api_key, base_url, ...)
    service_settings: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    VALID_SERVICES = {"google", "fal"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        for key in ("image_service", "video_service"):
            value = getattr(self, key)
            if value not in self.VALID_SERVICES:
                raise ConfigurationError(
                    f"Invalid service: {value}",
                    config_key=f"services.{key}",
                )


@dataclass
class PollingConfig:
    """Operation polling budget."""

    interval: float = 10.0
    max_attempts: int = 60
    image_interval: float = 2.0
    image_max_attempts: int = 30
    poll_retries: int = 3
    poll_retry_delay: float = 1.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        for name in ("interval", "image_interval", "poll_retry_delay"):
            if getattr(self, name) < 0:
                raise ConfigurationError(
                    f"{name} must be >= 0, got {getattr(self, name)}",
                    config_key=f"polling.{name}",
                )
        for name in ("max_attempts", "image_max_attempts"):
            if getattr(self, name) < 1:
                raise ConfigurationError(
                    f"{name} must be >= 1, got {getattr(self, name)}",
                    config_key=f"polling.{name}",
                )
        if not 0 <= self.poll_retries <= 10:
            raise ConfigurationError(
                f"poll_retries must be 0-10, got {self.poll_retries}",
                config_key="polling.poll_retries",
            )


@dataclass
class ChainingConfig:
    """Continuity chaining settings."""

    failure_policy: str = "abort-on-first-failure"
    frame_epsilon: float = 0.1
    frame_format: str = "jpg"
    frame_quality: int = 95

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.failure_policy not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"Invalid failure policy: {self.failure_policy}",
                config_key="chaining.failure_policy",
            )
        if not 0 < self.frame_epsilon < 1:
            raise ConfigurationError(
                f"frame_epsilon must be between 0 and 1 second, got {self.frame_epsilon}",
                config_key="chaining.frame_epsilon",
            )
        if self.frame_format not in ("jpg", "png"):
            raise ConfigurationError(
                f"Invalid frame format: {self.frame_format}",
                config_key="chaining.frame_format",
            )


@dataclass
class StitchingConfig:
    """Stitching and encoding tool settings."""

    transition_type: str = "fade"
    transition_duration: float = 0.5
    crf: int = 18
    preset: str = "fast"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    tool_timeout: int = 900

    VALID_PRESETS = {"ultrafast", "superfast", "veryfast", "faster", "fast", "medium", "slow", "slower", "veryslow"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.transition_type not in TRANSITION_TYPES:
            raise ConfigurationError(
                f"Invalid transition type: {self.transition_type}",
                config_key="stitching.transition_type",
            )
        if self.transition_duration < 0:
            raise ConfigurationError(
                f"transition_duration must be >= 0, got {self.transition_duration}",
                config_key="stitching.transition_duration",
            )
        if not 0 <= self.crf <= 51:
            raise ConfigurationError(
                f"crf must be 0-51, got {self.crf}",
                config_key="stitching.crf",
            )
        if self.preset not in self.VALID_PRESETS:
            raise ConfigurationError(
                f"Invalid preset: {self.preset}",
                config_key="stitching.preset",
            )


@dataclass
class EnhancementConfig:
    """Optional post-stitch enhancement pass."""

    enabled: bool = False
    required: bool = False
    target_height: int = 1080


@dataclass
class CostConfig:
    """Price table used for the per-job cost ledger (USD)."""

    image_per_call: float = 0.04
    video_per_second: float = 0.15
    stitch_per_job: float = 0.0
    enhancement_per_minute: float = 0.01
    bill_failed_segments: bool = False


@dataclass
class OutputConfig:
    """Output and storage settings."""

    base_path: str = "./output"
    manifest_name: str = "manifest.json"


@dataclass
class PerformanceConfig:
    """Cross-job concurrency settings."""

    max_concurrent_submissions: int = 3
    min_concurrent_submissions: int = 1
    recovery_successes: int = 5

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.min_concurrent_submissions < 1:
            raise ConfigurationError(
                "min_concurrent_submissions must be >= 1",
                config_key="performance.min_concurrent_submissions",
            )
        if self.max_concurrent_submissions < self.min_concurrent_submissions:
            raise ConfigurationError(
                "max_concurrent_submissions must be >= min_concurrent_submissions",
                config_key="performance.max_concurrent_submissions",
            )


# =============================================================================
# Main Configuration Class
# =============================================================================


SECTIONS = {
    "video": VideoConfig,
    "services": ServicesConfig,
    "polling": PollingConfig,
    "chaining": ChainingConfig,
    "stitching": StitchingConfig,
    "enhancement": EnhancementConfig,
    "costs": CostConfig,
    "output": OutputConfig,
    "performance": PerformanceConfig,
}


@dataclass
class Config:
    """
    Main configuration container with validation and loading.

    Provides a unified interface to all configuration settings with:
    - Type-safe access to configuration values
    - Validation on load
    - Environment variable interpolation
    - Sensible defaults for all values
    """

    video: VideoConfig = field(default_factory=VideoConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    chaining: ChainingConfig = field(default_factory=ChainingConfig)
    stitching: StitchingConfig = field(default_factory=StitchingConfig)
    enhancement: EnhancementConfig = field(default_factory=EnhancementConfig)
    costs: CostConfig = field(default_factory=CostConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from file with environment variable interpolation.

        Args:
            path: Path to a YAML config file, searched before the defaults

        Returns:
            Validated Config instance
        """
        search_paths = [
            Path("./config/defaults.yaml"),
            Path("./defaults.yaml"),
            Path.home() / ".clipchain" / "config.yaml",
        ]

        if path:
            if not Path(path).exists():
                raise ConfigurationError(f"Config file not found: {path}", config_key=str(path))
            search_paths.insert(0, Path(path))

        config_data = {}

        for search_path in search_paths:
            if search_path.exists():
                logger.info(f"Loading config from: {search_path}")
                try:
                    with open(search_path, "r") as f:
                        config_data = yaml.safe_load(f) or {}
                    break
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Invalid YAML in config file: {e}",
                        config_key=str(search_path),
                    )
        else:
            logger.info("No config file found, using defaults")

        config_data = cls._interpolate_env_vars(config_data)

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary with validation."""
        unknown = set(data) - set(SECTIONS)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration sections: {', '.join(sorted(unknown))}",
            )
        try:
            return cls(**{name: section(**(data.get(name) or {})) for name, section in SECTIONS.items()})
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @staticmethod
    def _interpolate_env_vars(data: Any) -> Any:
        """Recursively interpolate ${VAR} patterns with environment variables."""
        if isinstance(data, str):
            # Handle ${VAR} and ${VAR:-default} patterns
            pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

            def replace(match):
                var_name = match.group(1)
                default = match.group(2) or ""
                return os.environ.get(var_name, default)

            return re.sub(pattern, replace, data)
        elif isinstance(data, dict):
            return {k: Config._interpolate_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [Config._interpolate_env_vars(item) for item in data]
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    def get_service_config(self, service: str) -> Dict[str, Any]:
        """Get service-specific configuration."""
        return self.services.service_settings.get(service, {})


# =============================================================================
# Convenience Functions
# =============================================================================


_global_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance (lazily loaded)."""
    global _global_config
    if _global_config is None:
        _global_config = Config.load()
    return _global_config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration to None (forces reload on next access)."""
    global _global_config
    _global_config = None
