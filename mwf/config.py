"""Settings via pydantic-settings with MWF_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MWF_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("mwf", validation_alias="DB_USER")
    db_password: str = Field("mwf_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("mwf", validation_alias="DB_NAME")
    # Full URL wins over the parts above (tests use sqlite+aiosqlite)
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Completion service (Anthropic Messages API)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    model: str = "claude-sonnet-4-5-20250514"
    analysis_max_tokens: int = 2048
    offer_max_tokens: int = 512
    summary_max_tokens: int = 512
    # Cold starts regularly exceed 10s; 20s keeps worst case bounded
    completion_timeout: float = 20.0
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 60.0

    # Reconciler
    max_analysis_cycles: int = 3
    read_retry_attempts: int = 3
    read_retry_base_delay: float = 0.1
    trigger_retry_attempts: int = 2
    trigger_retry_delay: float = 1.0
    recover_stalled_on_start: bool = True

    # Event bus
    event_bus_enabled: bool = True
    event_queue_size: int = 1000
    persist_events: bool = True

    @model_validator(mode="after")
    def _validate_timeouts(self) -> "Settings":
        if self.completion_timeout <= 0:
            raise ValueError("completion_timeout must be > 0")
        if self.read_retry_attempts < 1:
            raise ValueError("read_retry_attempts must be >= 1")
        if self.max_analysis_cycles < 1:
            raise ValueError("max_analysis_cycles must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
