"""Models used by recovery orchestration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from resilient_ui.config import StrategyPolicySettings


class StrategyPolicy(BaseModel):
    """Attempt budget and pacing for one recovery strategy."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    delay_seconds: float = Field(default=1.0, ge=0.0)

    @classmethod
    def from_settings(cls, settings: StrategyPolicySettings) -> StrategyPolicy:
        return cls(
            max_attempts=settings.max_attempts, delay_seconds=settings.delay_seconds
        )

    def delay_for(self, attempt: int) -> float:
        """Wait before ``attempt`` (1-based); retries wait twice the base."""
        return self.delay_seconds if attempt <= 1 else self.delay_seconds * 2


class RecoveryAttempt(BaseModel):
    """Recovery progress for one error identifier."""

    error_id: str
    strategy: str
    attempts: int = Field(default=0, ge=0)
    last_message: str = ""


class RecoveryMetrics(BaseModel):
    """Session-level recovery telemetry."""

    errors_reported: int = Field(default=0, ge=0)
    recoveries_attempted: int = Field(default=0, ge=0)
    recovered: int = Field(default=0, ge=0)
    recovery_exhausted: int = Field(default=0, ge=0)
    coalesced: int = Field(default=0, ge=0)
    strategy_exceptions: int = Field(default=0, ge=0)
    emergencies: int = Field(default=0, ge=0)
