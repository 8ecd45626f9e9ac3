"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DatabaseConfig(BaseModel):
    """Domain database (submissions, outputs)."""

    url: str = Field(
        default="sqlite:///./media_pipeline.db", description="SQLAlchemy database URL"
    )
    echo: bool = Field(default=False, description="Log every SQL statement")


class JobPolicyConfig(BaseModel):
    """Retry policy applied to one family of job types."""

    attempts: int = Field(default=3, ge=1, description="Total delivery attempts per job")
    backoff_type: Literal["exponential", "fixed"] = Field(
        default="exponential", description="Delay growth between attempts"
    )
    backoff_delay_ms: int = Field(
        default=2000, ge=0, description="Base delay before the second attempt"
    )


class RetentionConfig(BaseModel):
    """Pruning caps for finished jobs. Failed jobs are kept longer for diagnostics."""

    keep_completed: int = Field(default=100, ge=0, description="Completed jobs kept by count")
    completed_max_age_s: int = Field(
        default=24 * 3600, gt=0, description="Completed jobs older than this are pruned"
    )
    keep_failed: int = Field(default=500, ge=0, description="Failed jobs kept by count")
    failed_max_age_s: int = Field(
        default=7 * 24 * 3600, gt=0, description="Failed jobs older than this are pruned"
    )


class QueueConfig(BaseModel):
    """Job queue settings."""

    db_path: str = Field(default="queue.db", description="SQLite file backing the job queue")
    text_jobs: JobPolicyConfig = Field(
        default_factory=JobPolicyConfig, description="Script, audio, quiz and podcast jobs"
    )
    video_jobs: JobPolicyConfig = Field(
        default_factory=lambda: JobPolicyConfig(backoff_delay_ms=5000),
        description="Video render, post-processing and completion jobs",
    )
    retention: RetentionConfig = Field(default_factory=RetentionConfig)


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    concurrency: int = Field(
        default=2,
        ge=1,
        description="Parallel jobs; capped by the speech provider's concurrent call limit",
    )
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Sleep when queue is empty")
    heartbeat_interval_s: int = Field(default=60, gt=0, description="Running job heartbeat period")
    stale_job_timeout_s: int = Field(
        default=7200, gt=0, description="Running jobs without heartbeat past this are reset"
    )
    prune_interval_s: int = Field(default=600, gt=0, description="Retention pruning period")


class MonitorConfig(BaseModel):
    """Timeout monitor settings."""

    enabled: bool = Field(default=True, description="Run the sweep alongside the worker")
    interval_s: int = Field(default=1800, gt=0, description="Seconds between sweeps")
    threshold_s: int = Field(
        default=1800, gt=0, description="PROCESSING outputs idle longer than this are failed"
    )


class StorageConfig(BaseModel):
    """Durable storage for generated artifacts."""

    root: str = Field(default="storage", description="Local directory holding stored objects")
    public_base_url: str = Field(
        default="http://localhost:8000/media", description="URL prefix under which root is served"
    )

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ProvidersConfig(BaseModel):
    """Credentials and endpoints for external providers."""

    request_timeout_s: float = Field(default=60.0, gt=0.0, description="HTTP timeout per call")
    text_base_url: str = Field(default="https://api.openai.com/v1")
    text_api_key: Optional[str] = Field(default=None)
    text_model: str = Field(default="gpt-4o-mini")
    transcription_model: str = Field(default="whisper-1")
    speech_base_url: str = Field(default="https://api.elevenlabs.io/v1")
    speech_api_key: Optional[str] = Field(default=None)
    speech_model: str = Field(default="eleven_multilingual_v2")
    default_voice_id: str = Field(default="21m00Tcm4TlvDq8ikWAM")
    default_guest_voice_id: str = Field(default="AZnzlk1XvdvUeBnXmlld", description="Second podcast voice")
    render_base_url: str = Field(default="https://api.heygen.com")
    render_api_key: Optional[str] = Field(default=None)
    render_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for render webhook signatures"
    )
    caption_base_url: str = Field(default="https://api.submagic.co/v1")
    caption_api_key: Optional[str] = Field(default=None)
    caption_webhook_url: Optional[str] = Field(
        default=None, description="Public URL of the captions webhook"
    )


class VideoConfig(BaseModel):
    """Video pipeline behaviour."""

    synthesize_audio: bool = Field(
        default=True, description="Render from uploaded speech instead of the raw script"
    )
    captions_enabled: bool = Field(default=True, description="Send renders through captioning")
    generate_questions: bool = Field(default=True, description="Derive in-video questions")
    question_count: int = Field(default=3, ge=0, le=10)
    fallback_duration_s: int = Field(
        default=120, gt=0, description="Duration used when transcription fails"
    )
    width: int = Field(default=720, gt=0)
    height: int = Field(default=1280, gt=0)


class PostProcessingConfig(BaseModel):
    """FFmpeg post-processing limits."""

    global_timeout_s: int = Field(default=1800, gt=0, description="Hard limit per FFmpeg call")
    no_progress_timeout_s: int = Field(default=120, gt=0)
    kill_grace_period_s: int = Field(default=5, gt=0)
    default_music_volume: float = Field(default=0.15, ge=0.0, le=1.0)
    work_dir: Optional[str] = Field(default=None, description="Scratch directory (None = system temp)")


class ApiConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, gt=0, lt=65536)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class PipelineConfig(BaseModel):
    """Root configuration model."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    video: VideoConfig = Field(default_factory=VideoConfig)
    post_processing: PostProcessingConfig = Field(default_factory=PostProcessingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dictionary (e.g., from YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Create new config with CLI argument overrides applied."""
        data = self.model_dump()

        if cli_args.get("db") is not None:
            data["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("database_url") is not None:
            data["database"]["url"] = cli_args["database_url"]
        if cli_args.get("workers") is not None:
            data["worker"]["concurrency"] = cli_args["workers"]
        if cli_args.get("no_monitor"):
            data["monitor"]["enabled"] = False
        if cli_args.get("host") is not None:
            data["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            data["api"]["port"] = cli_args["port"]
        if cli_args.get("log_level") is not None:
            data["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig(**data)
