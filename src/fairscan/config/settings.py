from typing import Optional, Dict, Any, Tuple
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from enum import Enum


class Environment(str, Enum):
    """Environment enumeration"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Log level enumeration"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AnonymizationLevel(str, Enum):
    """Anonymization level enumeration"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Settings(BaseSettings):
    """
    Application settings with validation and type checking
    """
    model_config = SettingsConfigDict(
        env_prefix="FAIRSCAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )

    # Server Configuration
    server_host: str = Field(default="0.0.0.0", description="API host")
    server_port: int = Field(default=8000, ge=1, le=65535, description="API port")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_dir: Path = Field(default=Path("logs"), description="Log directory")
    log_to_file: bool = Field(default=False, description="Write rotating log files")
    audit_log_enabled: bool = Field(default=True, description="Enable audit logging")

    # Statistical analysis
    confidence_threshold: float = Field(
        default=0.8, gt=0, lt=1,
        description="Prediction score above which an outcome counts as favorable"
    )
    disparate_impact_threshold: float = Field(
        default=0.8, gt=0, le=1,
        description="Disparate impact ratio below which disparity is flagged"
    )
    adaptive_threshold_range: Tuple[float, float] = Field(
        default=(0.6, 0.9),
        description="Bounds the disparate impact threshold may be adapted within"
    )
    skewness_threshold: float = Field(
        default=0.5, ge=0,
        description="Absolute skewness above which predictions count as skewed"
    )
    underrepresentation_threshold: float = Field(
        default=0.10, gt=0, lt=1,
        description="Minimum share of a group before it is flagged as underrepresented"
    )
    min_batch_size: int = Field(default=1, ge=1, description="Smallest batch analysed statistically")

    # Pattern scanning
    context_window: int = Field(default=50, ge=0, description="Characters of context around a match")
    overlap_distance: int = Field(default=100, ge=1, description="Offset distance for overlapping instances")
    pattern_table_path: Optional[Path] = Field(default=None, description="YAML/JSON pattern table")
    mitigation_table_path: Optional[Path] = Field(default=None, description="YAML/JSON mitigation tables")

    # Model lifecycle
    default_model_id: str = Field(default="bias-detection-v2", description="Model used by the coordinator")
    model_version: str = Field(default="1.0.0", description="Initial semantic version of new models")
    model_registry_url: Optional[str] = Field(
        default=None,
        description="Base URL of the authoritative model source"
    )
    model_fetch_timeout: float = Field(default=5.0, gt=0, description="Remote fetch timeout in seconds")
    performance_history_limit: Optional[int] = Field(
        default=None, ge=1,
        description="Maximum performance snapshots kept per model (unbounded when unset)"
    )
    performance_tracker_size: int = Field(default=1000, ge=1, description="In-memory analysis metrics kept")

    # Privacy
    data_retention_days: int = Field(default=30, ge=1, description="Data retention period in days")
    anonymization_level: AnonymizationLevel = Field(
        default=AnonymizationLevel.HIGH,
        description="Anonymization level applied by the privacy preprocessor"
    )
    consent_status: bool = Field(default=False, description="Initial consent flag")
    identifier_salt: str = Field(default="", description="Salt mixed into identifier hashes")

    @field_validator("pattern_table_path", "mitigation_table_path")
    @classmethod
    def validate_table_paths(cls, v: Optional[Path]) -> Optional[Path]:
        """Validate configured table files exist"""
        if v is not None and not v.exists():
            raise ValueError(f"Table file not found: {v}")
        return v

    @model_validator(mode="after")
    def validate_adaptive_range(self) -> "Settings":
        """Keep the disparate impact threshold inside the adaptive range"""
        low, high = self.adaptive_threshold_range
        if not 0 < low <= high <= 1:
            raise ValueError(f"Invalid adaptive threshold range: {self.adaptive_threshold_range}")
        if not low <= self.disparate_impact_threshold <= high:
            raise ValueError(
                f"disparate_impact_threshold {self.disparate_impact_threshold} "
                f"outside adaptive range {self.adaptive_threshold_range}"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment == Environment.DEVELOPMENT

    def get_privacy_defaults(self) -> Dict[str, Any]:
        """Get the initial privacy settings record"""
        return {
            "dataRetentionDays": self.data_retention_days,
            "anonymizationLevel": self.anonymization_level.value,
            "consentStatus": self.consent_status,
        }

    def get_analysis_thresholds(self) -> Dict[str, float]:
        """Get statistical analysis thresholds"""
        return {
            "confidence_threshold": self.confidence_threshold,
            "disparate_impact_threshold": self.disparate_impact_threshold,
            "skewness_threshold": self.skewness_threshold,
            "underrepresentation_threshold": self.underrepresentation_threshold,
        }


# Singleton instance
settings = Settings()
