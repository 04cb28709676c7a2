"""
Pydantic configuration models for docpipe.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AdmissionConfig(BaseModel):
    """Capacity budget shared by all capacity-consuming calls."""

    token_limit: int = Field(default=400_000, ge=1, description="Capacity units per window")
    window_seconds: float = Field(default=60.0, gt=0, description="Rolling window duration")
    throttle_threshold: float = Field(
        default=0.9, gt=0.0, le=1.0, description="Fraction of the limit where queuing starts"
    )
    recheck_interval_seconds: float = Field(default=0.1, gt=0, description="Minimum waiter recheck delay")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries for rate-limited calls")
    backoff_base_seconds: float = Field(default=1.0, gt=0, description="First retry delay")
    backoff_ceiling_seconds: float = Field(default=128.0, gt=0, description="Maximum single retry delay")


class SchedulerConfig(BaseModel):
    """Batch scheduler settings."""

    batch_size: int = Field(default=3, ge=1, description="Items processed concurrently per cycle")
    stats_interval_seconds: float = Field(default=60.0, gt=0, description="Observability emission period")
    stats_history_size: int = Field(default=100, ge=1, description="Snapshots kept in memory")
    emit_queued_event: bool = Field(default=False, description="Publish a 'queued' event on enqueue")


class PipelineConfig(BaseModel):
    """Stage pipeline settings."""

    readiness_delay_seconds: float = Field(default=0.1, ge=0, description="Pause in the initializing stage")
    render_batch_size: int = Field(default=5, ge=1, description="Pages rendered concurrently")
    render_delay_seconds: float = Field(default=0.1, ge=0, description="Pacing delay between render batches")
    record_indexing_alerts: bool = Field(default=True, description="Add an alert when indexing fails")


class AnalysisClientConfig(BaseModel):
    """HTTP analysis service settings."""

    endpoint: Optional[str] = Field(default=None, description="Analysis service URL")
    api_key: Optional[str] = Field(default=None, description="Bearer token for the analysis service")
    timeout: float = Field(default=120.0, ge=1.0, le=600.0, description="Request timeout in seconds")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("Analysis endpoint must be an http(s) URL")
        return v.rstrip("/")


class LoggingConfig(BaseModel):
    level: str = Field(default="WARNING", description="docpipe log level")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


class DocpipeConfig(BaseModel):
    """Complete docpipe configuration."""

    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    analysis: AnalysisClientConfig = Field(default_factory=AnalysisClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
