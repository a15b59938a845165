"""Recovery orchestration exports."""

from resilient_ui.recovery.degradation import DegradationController
from resilient_ui.recovery.models import (
    RecoveryAttempt,
    RecoveryMetrics,
    StrategyPolicy,
)
from resilient_ui.recovery.orchestrator import (
    EnvironmentProbe,
    RecoveryOrchestrator,
    StaticEnvironment,
)

__all__ = [
    "DegradationController",
    "EnvironmentProbe",
    "RecoveryAttempt",
    "RecoveryMetrics",
    "RecoveryOrchestrator",
    "StaticEnvironment",
    "StrategyPolicy",
]
