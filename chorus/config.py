"""Settings via pydantic-settings with CHORUS_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHORUS_", env_file=".env")

    # DB connection, read from the unprefixed DB_* env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("chorus", validation_alias="DB_USER")
    db_password: str = Field("chorus_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("chorus", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; overrides the DB_* fields (sqlite for local dev/tests)
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Event pipeline
    event_queue_interval_ms: int = 50
    event_max_attempts: int = 3
    event_retry_base_delay_ms: int = 1000
    event_seq_cache_size: int = 10000  # sessions whose seq counter stays in memory
    agent_timeout_seconds: float = 30.0

    # Outbox / effect delivery
    effect_poll_interval_ms: int = 500
    effect_batch_size: int = 100
    effect_max_attempts: int = 5
    effect_stale_after_seconds: int = 120
    delivery_chunk_size: int = 32  # characters per token frame

    # Timers
    timer_poll_interval_ms: int = 250
    timer_batch_size: int = 50

    # Autonomy policy (operator-set, no runtime mutation)
    autonomy_enabled: bool = False
    autonomy_max_consecutive: int = 3
    autonomy_cooldown_ms: int = 15000

    # Agent collaborator
    agent_url: str = ""
    agent_api_key: str = ""
    agent_timeout_connect: int = 10  # seconds
    agent_timeout_read: int = 120  # seconds

    # Connections
    connection_warn_limit: int = 5

    @model_validator(mode="after")
    def _validate_policy(self) -> "Settings":
        if self.autonomy_max_consecutive <= 0:
            raise ValueError("autonomy_max_consecutive must be > 0")
        if self.autonomy_cooldown_ms <= 0:
            raise ValueError("autonomy_cooldown_ms must be > 0")
        if self.event_max_attempts < 1:
            raise ValueError("event_max_attempts must be >= 1")
        if self.event_seq_cache_size < 1:
            raise ValueError("event_seq_cache_size must be >= 1")
        if self.delivery_chunk_size < 1:
            raise ValueError("delivery_chunk_size must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
