"""embedpipe configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so OPENAI_API_KEY and SQS_QUEUE_URL are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


class ConfigError(ValueError):
    """Raised when a required setting is missing or a value cannot be parsed."""


class GeneralSettings(BaseSettings):
    db_url: str = Field(default="postgresql+asyncpg://localhost/embedpipe")
    db_statement_timeout_ms: int = Field(default=30000, gt=0)
    log_level: str = "INFO"


class OpenAISettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPENAI_")
    api_key: str = ""
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0)


class EmbeddingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")
    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=1536, gt=0)
    max_tokens: int = Field(default=8191, gt=0)
    version: str = "1.0"
    cost_per_million_tokens: float = Field(default=0.02, ge=0)


class AnthropicSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANTHROPIC_")
    api_key: str = ""
    model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = Field(default=250, gt=0)
    timeout_seconds: float = Field(default=20.0, gt=0)


class ContextSettings(BaseSettings):
    """Settings for semantic-neighbor lookup."""

    model_config = SettingsConfigDict(env_prefix="CONTEXT_")
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    time_window_hours: int = Field(default=48, gt=0)
    neighbor_limit: int = Field(default=10, gt=0)
    neighbor_timeout_seconds: float = Field(default=10.0, gt=0)


class ClaimSettings(BaseSettings):
    """Settings for the orchestrator's claim step."""

    model_config = SettingsConfigDict(env_prefix="CLAIM_")
    batch_size: int = Field(default=100, gt=0)
    stale_after_minutes: int = Field(default=10, gt=0)
    max_messages_per_run: int = Field(default=1000, gt=0)
    max_content_chars: int = Field(default=100_000, gt=0)


class QueueSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SQS_")
    queue_url: str = ""
    region: str = "us-east-1"
    wire_batch_size: int = Field(default=10, ge=1, le=10)  # SQS batch API limit
    wait_time_seconds: int = Field(default=20, ge=0, le=20)
    visibility_timeout: int = Field(default=300, gt=0)


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WORKER_")
    max_concurrency: int = Field(default=10, gt=0)
    orchestrate_interval_seconds: int = Field(default=60, gt=0)


# Dotted names accepted by Settings.require()
REQUIRED_FOR_WORKER = ("openai.api_key", "queue.queue_url")
REQUIRED_FOR_ORCHESTRATOR = ("queue.queue_url",)

_ENV_NAMES = {
    "openai.api_key": "OPENAI_API_KEY",
    "queue.queue_url": "SQS_QUEUE_URL",
    "anthropic.api_key": "ANTHROPIC_API_KEY",
}


class Settings(BaseSettings):
    """Top-level settings assembled from subsections."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    anthropic: AnthropicSettings = Field(default_factory=AnthropicSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    claim: ClaimSettings = Field(default_factory=ClaimSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def _dimensions_match_schema(self) -> "Settings":
        from embedpipe.storage.models import EMBEDDING_DIMENSIONS

        if self.embedding.dimensions != EMBEDDING_DIMENSIONS:
            raise ValueError(
                f"embedding.dimensions is {self.embedding.dimensions} but the message_embeddings "
                f"column holds vector({EMBEDDING_DIMENSIONS})"
            )
        return self

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from TOML config file, falling back to env and defaults."""
        if config_path is None:
            config_path = Path.home() / ".config/embedpipe/config.toml"

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                openai=OpenAISettings(**data.get("openai", {})),
                embedding=EmbeddingSettings(**data.get("embedding", {})),
                anthropic=AnthropicSettings(**data.get("anthropic", {})),
                context=ContextSettings(**data.get("context", {})),
                claim=ClaimSettings(**data.get("claim", {})),
                queue=QueueSettings(**data.get("queue", {})),
                worker=WorkerSettings(**data.get("worker", {})),
            )

        return cls()

    def require(self, *names: str) -> None:
        """Fail fast if any of the dotted setting names is empty.

        All missing names are reported in a single ConfigError.
        """
        missing = []
        for name in names:
            section, _, field = name.partition(".")
            value = getattr(getattr(self, section), field)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(f"{name} ({_ENV_NAMES.get(name, name.upper())})")
        if missing:
            raise ConfigError("Missing required setting(s): " + ", ".join(missing))


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{exc.title}.{loc}: {err.get('msg')} (got {err.get('input')!r})")
    return "Invalid configuration: " + "; ".join(parts)


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings, converting pydantic validation failures into ConfigError."""
    try:
        return Settings.load(config_path)
    except ValidationError as e:
        raise ConfigError(_describe_validation_error(e)) from e
