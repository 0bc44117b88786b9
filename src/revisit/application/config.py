from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from revisit.domain.constants import (
    DEBOUNCE_SECONDS,
    DEFAULT_SESSION_SIZE,
    REQUEST_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
)

PACKAGED_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

CONFIG_FILES = [
    Path.home() / ".config/revisit/config.toml",
    Path.home() / ".revisit.toml",
]


class AppConfig(BaseSettings):
    """
    Configuration model for revisit.
    Supports loading from:
    1. Environment variables (REVISIT_*)
    2. Config file (~/.config/revisit/config.toml or ~/.revisit.toml)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(
        env_prefix="REVISIT_",
        toml_file=CONFIG_FILES,
        extra="ignore",
    )

    # Remote store
    backend: Literal["memory", "http"] = "memory"
    store_url: str = "http://127.0.0.1:8080"
    api_token: str | None = None
    user_id: str | None = None

    # Paths
    data_dir: Path = PACKAGED_DATA_DIR
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".config/revisit/state")

    # Sessions
    session_size: int = Field(default=DEFAULT_SESSION_SIZE, ge=1, le=500)
    requeue_again: bool = True

    # Sync
    debounce_seconds: float = Field(default=DEBOUNCE_SECONDS, ge=0)
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)
    retry_max_attempts: int = Field(default=RETRY_MAX_ATTEMPTS, ge=1, le=20)
    retry_base_delay: float = Field(default=RETRY_BASE_DELAY, ge=0)
    retry_max_delay: float = Field(default=RETRY_MAX_DELAY, ge=0)
    strict_invariants: bool = False

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # First existing file wins
        toml_file = next((f for f in CONFIG_FILES if f.exists()), None)

        # CLI overrides beat env, env beats the config file
        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (
            init_settings,
            env_settings,
        )

    @field_validator("data_dir", "state_dir", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("user_id", "api_token", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> str | None:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return str(v).strip()

    @field_validator("store_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. ~/.config/revisit/config.toml (if exists)
    3. Environment variables (REVISIT_*)
    4. cli_overrides (passed from Typer)
    """
    # Typer passes None for options that were not given
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    config = AppConfig(**overrides)

    if config.retry_max_delay < config.retry_base_delay:
        config.retry_max_delay = config.retry_base_delay

    return config
