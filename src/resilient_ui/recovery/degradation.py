"""Graceful degradation: a one-way ladder from normal to emergency mode.

Level 0 is normal operation and the configured maximum is emergency. The
level only ever rises during a session; reaching the maximum forces
emergency mode, which keeps only essential event handlers active and
shows a blocking reload notice.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from resilient_ui.config import RecoverySettings
from resilient_ui.events.models import (
    DegradationLevelChanged,
    EmergencyModeEnabled,
    EventKind,
)
from resilient_ui.notices import NoticeAction, NoticeKind
from resilient_ui.scheduler import AsyncioScheduler, PeriodicTask

if TYPE_CHECKING:
    from resilient_ui.components import ComponentName, ComponentRegistry
    from resilient_ui.events.bus import EventBus
    from resilient_ui.notices import NoticeBoard
    from resilient_ui.scheduler import Scheduler

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def _log_reload_request() -> None:
    logger.warning("reload_requested")


class DegradationController:
    """Tracks the degradation level and engages fallback modes."""

    def __init__(
        self,
        bus: EventBus,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        settings: RecoverySettings | None = None,
        scheduler: Scheduler | None = None,
        reload: Callable[[], Any] | None = None,
    ) -> None:
        self._bus = bus
        self._notices = notices
        self._registry = registry
        self._settings = settings or RecoverySettings()
        self._scheduler = scheduler or AsyncioScheduler()
        self._reload = reload or _log_reload_request
        self._level = 0
        self._enabled = False
        self._emergency = False
        self._failed: set[str] = set()
        self._health = PeriodicTask(
            self._scheduler,
            self._settings.health_check_interval_seconds,
            self.check_health,
            name="component_health_check",
        )

    @property
    def level(self) -> int:
        return self._level

    @property
    def max_level(self) -> int:
        return self._settings.max_degradation_level

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def emergency(self) -> bool:
        return self._emergency

    @property
    def failed_components(self) -> frozenset[str]:
        return frozenset(self._failed)

    def set_reload_handler(self, reload: Callable[[], Any]) -> None:
        self._reload = reload

    def enable(self, reason: str = "") -> None:
        """Enter degraded mode and start periodic component health checks."""
        if self._enabled:
            return
        self._enabled = True
        if self._level < 1:
            self.raise_level(reason or "degraded_mode_enabled")
        self._health.start()
        self._notices.show(
            "Limited functionality",
            "Some features are temporarily unavailable.",
            kind=NoticeKind.WARNING,
        )
        logger.warning("degraded_mode_enabled", level=self._level, reason=reason)

    def raise_level(self, reason: str = "") -> int:
        """Increase the level by one, up to the maximum.

        Reaching the maximum engages emergency mode.
        """
        if self._level < self.max_level:
            self._level += 1
            logger.warning("degradation_level_raised", level=self._level, reason=reason)
            self._bus.emit(
                EventKind.DEGRADATION_LEVEL_CHANGED,
                DegradationLevelChanged(level=self._level, reason=reason),
            )
        if self._level >= self.max_level:
            self.enable_emergency_mode(reason)
        return self._level

    def handle_component_failure(
        self, name: ComponentName | str, message: str = ""
    ) -> None:
        """Record a failed component, raise the level and tell the user."""
        component = str(name)
        if component in self._failed:
            return
        self._failed.add(component)
        logger.error("component_failure_recorded", component=component, error=message)
        self.raise_level(f"component_failed:{component}")
        if not self._emergency:
            self._notices.show(
                "Component unavailable",
                f"The {component} component failed and runs in fallback mode.",
                kind=NoticeKind.WARNING,
            )

    def check_health(self) -> list[str]:
        """Flag registered components that are no longer initialized."""
        newly_failed = [
            name.value
            for name in self._registry.uninitialized()
            if name.value not in self._failed
        ]
        for component in newly_failed:
            self.handle_component_failure(component, "Component not initialized")
        return newly_failed

    def enable_emergency_mode(self, reason: str = "") -> None:
        """Disable non-essential interactivity and block with a reload notice."""
        if self._emergency:
            return
        self._emergency = True
        if self._level < self.max_level:
            self._level = self.max_level
            self._bus.emit(
                EventKind.DEGRADATION_LEVEL_CHANGED,
                DegradationLevelChanged(level=self._level, reason=reason),
            )
        self._bus.restrict_to_essential()
        self._notices.show(
            "Critical error",
            "The interface hit a critical error. Reload to continue.",
            kind=NoticeKind.CRITICAL,
            blocking=True,
            actions=[NoticeAction(label="Reload", callback=self._request_reload)],
        )
        logger.error("emergency_mode_enabled", reason=reason, level=self._level)
        self._bus.emit(EventKind.EMERGENCY_MODE, EmergencyModeEnabled(reason=reason))

    def destroy(self) -> None:
        self._health.stop()

    def _request_reload(self) -> Any:
        return self._reload()
