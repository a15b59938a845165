"""Runtime settings for the resilient UI services.

One sub-model per service. Values come from, lowest first: field
defaults, ``resilient-ui.yaml`` (or an explicit path), ``.env``,
``RESILIENT_UI_*`` environment variables (``__`` separates nested
fields) and keyword overrides.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class TransportSettings(BaseModel):
    """Outbound network configuration."""

    endpoint: str = "http://localhost:8080/ajax"
    probe_url: str | None = Field(
        default=None,
        description="Lightweight connectivity probe URL (defaults to endpoint).",
    )
    token: str = Field(default="", description="Initial authorization token.")
    timeout: float = Field(default=30.0, gt=0.0, description="Seconds.")


class RequestSettings(BaseModel):
    """Request coordinator retry/backoff configuration."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, gt=0.0)
    max_delay_seconds: float = Field(default=30.0, gt=0.0)
    jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    tick_interval_seconds: float = Field(default=1.0, gt=0.0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RequestSettings:
        if self.max_delay_seconds < self.base_delay_seconds:
            msg = "max_delay_seconds must be >= base_delay_seconds"
            raise ValueError(msg)
        return self


class StateSettings(BaseModel):
    """State store persistence and synchronization configuration."""

    storage_key: str = "ui_state"
    session_key: str = "session_state"
    channel_name: str = "ui-state"
    storage_directory: Path = Path("./data/state")
    max_state_bytes: int = Field(default=1024 * 1024, gt=0)
    supported_schema_version: int = Field(default=1, ge=1)
    conflict_strategy: Literal["timestamp", "merge", "manual"] = "timestamp"
    sync_enabled: bool = True
    persist_attempts: int = Field(default=3, ge=1, le=10)
    persist_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    validation_interval_seconds: float = Field(default=300.0, gt=0.0)
    retained_form_entries: int = Field(default=10, ge=0)
    retained_history_entries: int = Field(default=5, ge=0)


class EventBusSettings(BaseModel):
    """Delegated event dispatch configuration."""

    debounce_seconds: float = Field(default=0.3, gt=0.0)
    throttle_seconds: float = Field(default=0.1, gt=0.0)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0.0)
    handler_max_age_seconds: float = Field(default=1800.0, gt=0.0)
    max_handlers: int = Field(default=1000, ge=1)
    slow_dispatch_seconds: float = Field(default=0.016, gt=0.0)


class ReportingSettings(BaseModel):
    """Batched error reporting configuration."""

    enabled: bool = True
    max_queue_size: int = Field(default=100, ge=1, le=10_000)
    batch_size: int = Field(default=10, ge=1, le=1000)
    interval_seconds: float = Field(default=30.0, gt=0.0)


class StrategyPolicySettings(BaseModel):
    """Per-strategy recovery attempt budget."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    delay_seconds: float = Field(default=1.0, ge=0.0)


def _default_strategy_policies() -> dict[str, StrategyPolicySettings]:
    return {
        "network_recovery": StrategyPolicySettings(max_attempts=3, delay_seconds=2.0),
        "security_recovery": StrategyPolicySettings(max_attempts=2, delay_seconds=1.0),
        "state_recovery": StrategyPolicySettings(max_attempts=1, delay_seconds=0.0),
        "component_recovery": StrategyPolicySettings(
            max_attempts=3, delay_seconds=1.5
        ),
        "critical_recovery": StrategyPolicySettings(max_attempts=1, delay_seconds=0.0),
    }


class RecoverySettings(BaseModel):
    """Recovery strategies, auto-recovery and degradation ceiling."""

    auto_recovery: bool = True
    max_degradation_level: int = Field(default=3, ge=1, le=3)
    health_check_interval_seconds: float = Field(default=5.0, gt=0.0)
    strategy_policies: dict[str, StrategyPolicySettings] = Field(
        default_factory=_default_strategy_policies
    )


class LoggingSettings(BaseModel):
    """structlog level, renderer and optional log file."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level runtime settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``resilient-ui.yaml`` or ``config_path``)
        3. Environment variables (prefixed ``RESILIENT_UI_``)
        4. Programmatic overrides passed to ``Settings.load``
    """

    model_config = SettingsConfigDict(
        env_prefix="RESILIENT_UI_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="resilient-ui.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    transport: TransportSettings = Field(default_factory=TransportSettings)
    requests: RequestSettings = Field(default_factory=RequestSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    events: EventBusSettings = Field(default_factory=EventBusSettings)
    reporting: ReportingSettings = Field(default_factory=ReportingSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Sources in priority order: init, env, .env, then YAML.

        Secret files are not consulted.
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "resilient-ui.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Resolve settings, reading YAML from ``config_path`` when given.

        Keyword ``overrides`` beat every other source.

        Raises:
            ValidationError: If a resolved value is invalid.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Render each validation failure as ``location: message (got value)``."""
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
