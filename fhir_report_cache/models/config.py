"""Configuration models for the FHIR report cache."""

from pydantic import BaseModel, Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class FhirConfig(BaseModel):
    """Connection settings for the FHIR server holding the source records."""

    base_url: HttpUrl = Field(default=..., description="FHIR base URL, e.g. http://localhost:8080/fhir")
    username: str = Field(default="", description="Basic auth username")
    password: str = Field(default="", description="Basic auth password")
    page_size: int = Field(default=200, ge=1, le=1000, description="Entries requested per page")
    timeout_seconds: float = Field(default=60.0, gt=0, description="HTTP timeout per request")


class ElasticsearchConfig(BaseModel):
    """Connection and tuning settings for the Elasticsearch cluster."""

    base_url: HttpUrl = Field(default=..., description="Elasticsearch base URL")
    username: str = Field(default="", description="Basic auth username")
    password: str = Field(default="", description="Basic auth password")
    timeout_seconds: float = Field(default=120.0, gt=0, description="HTTP timeout per request")
    max_compilation_rate: str | None = Field(
        default=None, description="Value for script.max_compilations_rate, e.g. 10000/1m"
    )
    max_scroll_context: int | None = Field(
        default=None, ge=1, description="Value for search.max_open_scroll_context"
    )


class SyncConfig(BaseModel):
    """Settings that control which relationships are cached and from when."""

    relationship_ids: list[str] = Field(
        default_factory=list,
        description="Only cache these relationship ids (all relationships when empty)",
    )
    since: str | None = Field(
        default=None, description="Override the stored watermark, e.g. 2024-01-01T00:00:00"
    )
    reset: bool = Field(default=False, description="Force a full resync from the epoch")
    hooks_module: str | None = Field(
        default=None, description="Dotted module path exposing a HOOKS mapping"
    )
    repair_batch_size: int = Field(
        default=100, ge=1, le=1000, description="Ids re-fetched per request during repair"
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Loaded from YAML by ConfigLoader; every field can also be supplied through
    environment variables with the FHIR_CACHE_ prefix, e.g.
    FHIR_CACHE_FHIR__BASE_URL.
    """

    model_config = SettingsConfigDict(
        env_prefix="FHIR_CACHE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    fhir: FhirConfig
    elasticsearch: ElasticsearchConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
