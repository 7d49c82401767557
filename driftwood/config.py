"""Settings via pydantic-settings with DRIFTWOOD_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DRIFTWOOD_", env_file=".env", extra="ignore")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("driftwood", validation_alias="DB_USER")
    db_password: str = Field("driftwood_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("driftwood", validation_alias="DB_NAME")

    # Full SQLAlchemy URL; overrides the DB_* fields when set
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    max_conversations: int = 100
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    max_steps: int = 30  # Max model/tool round-trips per incoming turn
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Message in a bottle
    bottle_capacity: int = 100
    bottle_store_name: str = "all-messages"

    # Scheduling
    schedule_enabled: bool = True
    schedule_check_interval: int = 5  # seconds

    # Weather tools
    geocoding_base_url: str = "https://geocoding-api.open-meteo.com"
    weather_base_url: str = "https://api.open-meteo.com"
    weather_timeout: int = 15  # seconds

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.bottle_capacity < 1:
            raise ValueError("bottle_capacity must be >= 1")
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.schedule_check_interval < 1:
            raise ValueError("schedule_check_interval must be >= 1 second")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
