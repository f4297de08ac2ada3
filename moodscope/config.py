"""
Configuration management for MoodScope using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")
    scheduler_enabled: bool = Field(default=True, description="Run the calibration scheduler inside the API process")

    # Database
    database_url: str = Field(default="sqlite:///./moodscope.db", description="SQLAlchemy connection URL")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")

    # Mood scoring
    algorithm_version: str = Field(default="multi-factor-1.0", description="Version tag stamped on every MoodScore")
    descriptor_count: int = Field(default=5, description="Number of evidence phrases kept as descriptors")
    low_signal_confidence: float = Field(default=0.05, description="Confidence reported for units without evidence")
    evidence_saturation: int = Field(default=6, description="Evidence phrases needed for full evidence density")
    length_saturation_words: int = Field(default=40, description="Word count needed for full length factor")
    default_confidence_ceiling: float = Field(default=0.95, description="Initial upper bound on reported confidence")

    # Delta detection
    stability_band: float = Field(default=0.5, description="Deltas smaller than this are stable")
    conclusion_position_weight: float = Field(default=1.2, description="Significance multiplier for final-quartile deltas")
    turning_point_threshold: float = Field(default=0.75, description="Significance above which a delta is a turning point")
    significance_scale: float = Field(default=4.0, description="Magnitude that maps to full significance")
    min_pattern_magnitude: float = Field(default=0.5, description="Minimum member magnitude for pattern assembly")
    abrupt_magnitude: float = Field(default=2.0, description="Magnitude at which a delta is abrupt")
    turning_point_merge_seconds: int = Field(default=1800, description="Window folding follow-on candidates into one turning point")

    # Trajectory analysis
    baseline_min_data_points: int = Field(default=5, description="Scores needed to establish a baseline")
    baseline_update_threshold: float = Field(default=0.3, description="Shift in mean score that warrants a baseline update")
    deviation_threshold: float = Field(default=2.0, description="Distance from baseline that counts as a significant deviation")
    plateau_variance_threshold: float = Field(default=0.5, description="Score variance below which a sequence is a plateau")
    transition_magnitude: float = Field(default=2.0, description="Minimum step reported as a transition")
    sudden_velocity: float = Field(default=20.0, description="Points per hour at which a transition is sudden")

    # Validation
    validation_window_size: int = Field(default=50, description="Recent results aggregated per window")
    bias_threshold: float = Field(default=0.5, description="Mean signed error (points) flagging systematic bias")
    bias_consistency: float = Field(default=0.7, description="Share of same-signed errors required for a bias flag")

    # Calibration
    calibration_min_sample_size: int = Field(default=20, description="Complete validations that trigger a cycle")
    calibration_scheduled_min_samples: int = Field(default=5, description="Minimum samples for a scheduled cycle")
    calibration_interval_minutes: int = Field(default=60, description="Scheduled calibration interval")
    auto_reject_threshold: float = Field(default=0.50, description="Agreement below which a cycle needs manual review")
    auto_approve_threshold: float = Field(default=0.75, description="Agreement at or above which no adjustment is made")
    max_weight_step: float = Field(default=0.05, description="Largest per-cycle change to any weight")
    calibration_learning_rate: float = Field(default=0.1, description="Gain applied to per-factor bias contribution")
    calibration_epsilon: float = Field(default=1e-4, description="Back-tested agreement change below which a proposal is a no-op")
    calibration_apply_timeout_seconds: float = Field(default=5.0, description="Application attempts slower than this are rolled back")
    overconfidence_confidence: float = Field(default=0.8, description="Confidence above which a result counts as high-confidence")
    overconfidence_error: float = Field(default=1.5, description="Absolute error (points) treated as large for a high-confidence result")
    overconfidence_rate: float = Field(default=0.3, description="Share of large errors that lowers the confidence ceiling")
    confidence_ceiling_step: float = Field(default=0.05, description="Confidence ceiling reduction per threshold adjustment")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and text renderers exist."""
        if v not in ("json", "text"):
            raise ValueError(f"log_format must be 'json' or 'text', got {v!r}")
        return v

    @field_validator("auto_approve_threshold")
    @classmethod
    def validate_thresholds(cls, v: float, info) -> float:
        """Approval threshold must sit above the review threshold."""
        reject = info.data.get("auto_reject_threshold")
        if reject is not None and v <= reject:
            raise ValueError("auto_approve_threshold must be greater than auto_reject_threshold")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.app_env == "development"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()
