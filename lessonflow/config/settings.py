from typing import Optional
from urllib.parse import quote_plus

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database configuration"""

    host: str = "localhost"
    port: int = 5432
    username: str = "postgres"
    password: SecretStr = Field(default=SecretStr("postgres"))
    database: str = "lessonflow"
    serverless: bool = Field(
        default=True,
        description="If true, disable connection pooling so serverless DBs can pause.",
    )
    url_override: Optional[str] = Field(
        default=None,
        validation_alias="DB_URL",
        description="Full SQLAlchemy URL; takes precedence over host/port/credentials.",
    )

    @property
    def url(self) -> str:
        """Get database URL"""
        if self.url_override:
            return self.url_override
        username = quote_plus(self.username)
        password = quote_plus(self.password.get_secret_value())
        return (
            "postgresql+asyncpg://"
            f"{username}:{password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        secrets_dir=".secrets",
        case_sensitive=False,
        extra="ignore",
    )


class S3Config(BaseSettings):
    """S3 configuration for the audio backup bucket"""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: str = "us-east-1"
    bucket_name: str = "lessonflow-audio-backup"
    endpoint_url: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="S3_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class TranscribeConfig(BaseSettings):
    """Amazon Transcribe streaming configuration."""

    region: str = "us-east-1"
    sample_rate_hz: int = 16000
    media_encoding: str = "pcm"
    chunk_size_bytes: int = 8192
    stream_realtime: bool = Field(
        default=False,
        description="Pace audio events at real-time speed instead of sending as fast as possible.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TRANSCRIBE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class BedrockConfig(BaseSettings):
    """Amazon Bedrock configuration."""

    region: str = Field(
        default="us-east-1",
        validation_alias="BEDROCK_REGION",
    )
    model_id: str = Field(
        default="anthropic.claude-3-5-sonnet-20240620-v1:0",
        validation_alias="BEDROCK_MODEL_ID",
    )
    max_tokens: int = Field(
        default=4096,
        validation_alias="BEDROCK_MAX_TOKENS",
        ge=1,
        le=8192,
    )
    temperature: float = Field(
        default=0.2,
        validation_alias="BEDROCK_TEMPERATURE",
        ge=0.0,
        le=1.0,
    )
    top_p: float = Field(
        default=0.9,
        validation_alias="BEDROCK_TOP_P",
        ge=0.0,
        le=1.0,
    )
    api_key: SecretStr | None = Field(
        default=None,
        validation_alias="BEDROCK_API_KEY",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        secrets_dir=".secrets",
        case_sensitive=False,
        extra="ignore",
    )


class OpenAIConfig(BaseSettings):
    """OpenAI configuration used by the pronunciation assessor."""

    api_key: SecretStr | None = None
    pronunciation_model: str = "gpt-4o-audio-preview"
    enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="OPENAI_",
        env_file=".env",
        secrets_dir=".secrets",
        case_sensitive=False,
        extra="ignore",
    )


class PipelineConfig(BaseSettings):
    """Retention, retry and scheduling knobs for the post-lesson pipeline."""

    retention_hours: int = Field(default=48, ge=1)
    max_transcription_attempts: int = Field(default=3, ge=1)
    max_analysis_attempts: int = Field(default=3, ge=1)
    auto_complete_batch_size: int = Field(default=100, ge=1)
    sampling_rate: float = Field(default=0.15, gt=0.0, le=1.0)
    mispronunciation_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    prior_analyses_limit: int = Field(default=3, ge=0)

    conversion_timeout_seconds: float = 10.0
    storage_timeout_seconds: float = 30.0
    speech_timeout_seconds: float = 120.0
    analysis_timeout_seconds: float = 180.0
    pronunciation_timeout_seconds: float = 60.0
    # A processing analysis untouched for this long is reclaimable.
    analysis_stale_after_seconds: float = 15 * 60

    scheduler_enabled: bool = True
    audio_sweep_interval_seconds: float = 6 * 60 * 60
    transcription_retry_interval_seconds: float = 60 * 60
    transcription_retry_offset_seconds: float = 15 * 60
    analysis_retry_interval_seconds: float = 60 * 60
    analysis_retry_offset_seconds: float = 30 * 60
    auto_complete_interval_seconds: float = 60

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class Settings(BaseSettings):
    """Application settings"""

    app_name: str = "Lessonflow Backend"
    app_version: str = "1.0.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_file: str = "logs/app.log"
    pipeline_log_file: str = "logs/pipeline.log"

    # Database
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # S3
    s3: S3Config = Field(default_factory=S3Config)

    # Transcribe
    transcribe: TranscribeConfig = Field(default_factory=TranscribeConfig)

    # Bedrock
    bedrock: BedrockConfig = Field(default_factory=BedrockConfig)

    # OpenAI
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)

    # Pipeline
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
