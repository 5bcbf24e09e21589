"""Orchestrator configuration."""

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackready.exceptions import ConfigurationError

OUTPUT_FORMATS = {"auto", "interactive", "json"}
LOG_FORMATS = {"text", "json"}


class Settings(BaseSettings):
    """Settings loaded from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Timing (seconds)
    health_check_timeout: float = 120.0  # global deadline for the whole run
    health_check_interval: float = 2.0  # pause between probes of one service
    probe_timeout: float = 5.0  # per-attempt ceiling
    grace_period: float = 10.0  # early failures are not final inside this window
    service_timeout: float = 60.0  # per-service deadline once checking

    # Selection
    profile: str = "full"
    services_file: str | None = None

    # Policy
    fail_fast: bool = False
    check_ports: bool | None = None  # None: only when services are started

    # Output
    output_format: str = "auto"
    log_level: str = "warning"
    log_format: str = "text"

    # Stack addresses (match docker-compose.yml)
    frontend_port: int = 3000
    backend_port: int = 3001
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "zero_to_running_dev"
    database_user: str = "postgres"
    database_password: str = ""
    database_required_tables: str = ""  # comma separated, checked in the public schema
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""

    # Container runtime
    compose_file: str = "docker-compose.yml"

    @model_validator(mode="after")
    def _validate(self) -> "Settings":
        for name in (
            "health_check_timeout",
            "health_check_interval",
            "probe_timeout",
            "service_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be greater than 0")
        if self.grace_period < 0:
            raise ValueError("GRACE_PERIOD must not be negative")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"OUTPUT_FORMAT must be one of {sorted(OUTPUT_FORMATS)}, got '{self.output_format}'"
            )
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {sorted(LOG_FORMATS)}, got '{self.log_format}'")
        return self

    @property
    def database_dsn(self) -> str:
        auth = self.database_user
        if self.database_password:
            auth = f"{auth}:{self.database_password}"
        return f"postgresql://{auth}@{self.database_host}:{self.database_port}/{self.database_name}"

    @property
    def required_tables(self) -> tuple[str, ...]:
        return tuple(t.strip() for t in self.database_required_tables.split(",") if t.strip())

    @property
    def redis_url(self) -> str:
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/0"


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {messages}") from e
