"""Unit tests for resilient_ui.config - Settings loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from resilient_ui.config import (
    EventBusSettings,
    LoggingSettings,
    RecoverySettings,
    ReportingSettings,
    RequestSettings,
    Settings,
    StateSettings,
    TransportSettings,
    format_validation_error,
)

# ---- Sub-model defaults ------------------------------------------------------


class TestRequestSettings:
    """Retry and backoff bounds."""

    def test_default_values(self) -> None:
        s = RequestSettings()
        assert s.max_attempts == 3
        assert s.base_delay_seconds == 1.0
        assert s.max_delay_seconds == 30.0
        assert s.jitter_ratio == 0.1
        assert s.timeout_seconds == 30.0

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RequestSettings(max_attempts=0)

    def test_max_delay_below_base_rejected(self) -> None:
        with pytest.raises(ValidationError, match="max_delay_seconds"):
            RequestSettings(base_delay_seconds=5.0, max_delay_seconds=1.0)

    def test_jitter_above_one_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RequestSettings(jitter_ratio=1.5)


class TestStateSettings:
    """Persistence defaults."""

    def test_default_values(self) -> None:
        s = StateSettings()
        assert s.storage_key == "ui_state"
        assert s.session_key == "session_state"
        assert s.channel_name == "ui-state"
        assert s.max_state_bytes == 1024 * 1024
        assert s.conflict_strategy == "timestamp"
        assert s.sync_enabled

    def test_unknown_conflict_strategy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StateSettings(conflict_strategy="newest")  # type: ignore[arg-type]

    def test_storage_directory_coerced_to_path(self) -> None:
        s = StateSettings(storage_directory="/tmp/ui")  # type: ignore[arg-type]
        assert s.storage_directory == Path("/tmp/ui")


class TestOtherSubModels:
    """Event bus, reporting, recovery and logging defaults."""

    def test_event_bus_defaults(self) -> None:
        s = EventBusSettings()
        assert s.debounce_seconds == 0.3
        assert s.throttle_seconds == 0.1
        assert s.cleanup_interval_seconds == 300.0

    def test_reporting_defaults(self) -> None:
        s = ReportingSettings()
        assert s.max_queue_size == 100
        assert s.batch_size == 10
        assert s.interval_seconds == 30.0

    def test_recovery_policies(self) -> None:
        policies = RecoverySettings().strategy_policies
        assert policies["network_recovery"].max_attempts == 3
        assert policies["network_recovery"].delay_seconds == 2.0
        assert policies["security_recovery"].max_attempts == 2
        assert policies["state_recovery"].max_attempts == 1
        assert policies["component_recovery"].delay_seconds == 1.5
        assert policies["critical_recovery"].max_attempts == 1

    def test_degradation_level_bounds(self) -> None:
        with pytest.raises(ValidationError):
            RecoverySettings(max_degradation_level=4)

    def test_invalid_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingSettings(level="VERBOSE")  # type: ignore[arg-type]

    def test_transport_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            TransportSettings(timeout=0)


# ---- Top-level Settings ------------------------------------------------------


class TestSettings:
    """Settings composition and overrides."""

    def test_default_construction(self) -> None:
        s = Settings()
        assert isinstance(s.transport, TransportSettings)
        assert isinstance(s.requests, RequestSettings)
        assert isinstance(s.state, StateSettings)
        assert isinstance(s.events, EventBusSettings)
        assert isinstance(s.reporting, ReportingSettings)
        assert isinstance(s.recovery, RecoverySettings)
        assert isinstance(s.logging, LoggingSettings)

    def test_nested_env_var_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESILIENT_UI_REQUESTS__MAX_ATTEMPTS", "5")
        s = Settings()
        assert s.requests.max_attempts == 5

    def test_init_override(self) -> None:
        s = Settings(transport=TransportSettings(endpoint="https://app.test/ajax"))
        assert s.transport.endpoint == "https://app.test/ajax"

    def test_load_with_overrides(self) -> None:
        s = Settings.load(reporting=ReportingSettings(batch_size=3))
        assert s.reporting.batch_size == 3

    def test_extra_fields_ignored(self) -> None:
        s = Settings(unknown_field="should_be_ignored")  # type: ignore[call-arg]
        assert isinstance(s.state, StateSettings)


# ---- YAML and dotenv ---------------------------------------------------------


class TestLayerResolution:
    """defaults < YAML < .env < env vars < init overrides."""

    def test_load_from_custom_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "custom.yaml"
        yaml_file.write_text(
            "state:\n  conflict_strategy: merge\nreporting:\n  batch_size: 4\n"
        )
        s = Settings.load(config_path=yaml_file)
        assert s.state.conflict_strategy == "merge"
        assert s.reporting.batch_size == 4
        assert s.reporting.max_queue_size == 100

    def test_missing_yaml_uses_defaults(self, tmp_path: Path) -> None:
        s = Settings.load(config_path=tmp_path / "nonexistent.yaml")
        assert s.requests.max_attempts == 3

    def test_dotenv_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("requests:\n  max_attempts: 4\n")
        (tmp_path / ".env").write_text("RESILIENT_UI_REQUESTS__MAX_ATTEMPTS=6\n")
        monkeypatch.chdir(tmp_path)
        s = Settings.load(config_path=yaml_file)
        assert s.requests.max_attempts == 6

    def test_env_var_overrides_dotenv(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("RESILIENT_UI_REQUESTS__MAX_ATTEMPTS=6\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("RESILIENT_UI_REQUESTS__MAX_ATTEMPTS", "7")
        assert Settings().requests.max_attempts == 7

    def test_init_overrides_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESILIENT_UI_REQUESTS__MAX_ATTEMPTS", "7")
        s = Settings(requests=RequestSettings(max_attempts=2))
        assert s.requests.max_attempts == 2

    def test_default_yaml_file_in_working_directory(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        yaml_file = tmp_path / "resilient-ui.yaml"
        yaml_file.write_text("events:\n  debounce_seconds: 0.5\n")
        monkeypatch.chdir(tmp_path)
        assert Settings().events.debounce_seconds == 0.5


# ---- Error formatting --------------------------------------------------------


class TestFormatValidationError:
    """User-facing rendering of validation failures."""

    def test_lists_each_error_with_location(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            Settings(requests={"max_attempts": 0, "jitter_ratio": 2})

        message = format_validation_error(exc_info.value)

        assert message.startswith("Configuration error:\n")
        assert "requests -> max_attempts" in message
        assert "requests -> jitter_ratio" in message
        assert "(got 0)" in message
