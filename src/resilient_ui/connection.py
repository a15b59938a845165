"""Connection quality tracking with a sliding window of request outcomes.

Every coordinated request records its outcome and latency here. The
snapshot is attached to every reported error.
"""

from __future__ import annotations

import time
from collections import deque
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from resilient_ui.scheduler import Scheduler

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60.0
_DEFAULT_DEGRADED_THRESHOLD = 0.10  # 10% errors
_DEFAULT_POOR_THRESHOLD = 0.30  # 30% errors
_DEFAULT_SLOW_LATENCY = 2.0  # seconds


class ConnectionQuality(StrEnum):
    GOOD = "good"
    DEGRADED = "degraded"
    POOR = "poor"
    OFFLINE = "offline"


class ConnectionSnapshot(BaseModel):
    """Point-in-time view of connection health."""

    online: bool
    quality: ConnectionQuality
    error_rate: float = Field(ge=0.0, le=1.0)
    mean_latency_ms: float = Field(ge=0.0)
    samples: int = Field(ge=0)


class _Outcome:
    """Record of a single request outcome."""

    __slots__ = ("latency", "success", "timestamp")

    def __init__(self, timestamp: float, success: bool, latency: float) -> None:
        self.timestamp = timestamp
        self.success = success
        self.latency = latency


class ConnectionMonitor:
    """Sliding-window error rate and latency tracker.

    Attributes:
        window_seconds: Size of the sliding window in seconds.
        degraded_threshold: Error rate above which quality is ``degraded``.
        poor_threshold: Error rate above which quality is ``poor``.
        slow_latency: Mean latency (seconds) above which quality is
            at best ``degraded``.
    """

    def __init__(
        self,
        scheduler: Scheduler | None = None,
        window_seconds: float = _DEFAULT_WINDOW_SECONDS,
        degraded_threshold: float = _DEFAULT_DEGRADED_THRESHOLD,
        poor_threshold: float = _DEFAULT_POOR_THRESHOLD,
        slow_latency: float = _DEFAULT_SLOW_LATENCY,
    ) -> None:
        self._scheduler = scheduler
        self.window_seconds = window_seconds
        self.degraded_threshold = degraded_threshold
        self.poor_threshold = poor_threshold
        self.slow_latency = slow_latency
        self._outcomes: deque[_Outcome] = deque()
        self._online = True

    def _now(self) -> float:
        if self._scheduler is not None:
            return self._scheduler.monotonic()
        return time.monotonic()

    def _prune_window(self) -> None:
        cutoff = self._now() - self.window_seconds
        while self._outcomes and self._outcomes[0].timestamp < cutoff:
            self._outcomes.popleft()

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("connectivity_changed", online=online)
        self._online = online

    def record_outcome(self, success: bool, latency: float = 0.0) -> None:
        """Record the outcome of one request attempt.

        Args:
            success: True if the attempt succeeded.
            latency: Seconds the attempt took.
        """
        self._outcomes.append(
            _Outcome(timestamp=self._now(), success=success, latency=max(latency, 0.0))
        )
        self._prune_window()

    def error_rate(self) -> float:
        """Fraction of failed outcomes in the window (0.0 when empty)."""
        self._prune_window()
        if not self._outcomes:
            return 0.0
        errors = sum(1 for o in self._outcomes if not o.success)
        return errors / len(self._outcomes)

    def mean_latency(self) -> float:
        self._prune_window()
        if not self._outcomes:
            return 0.0
        return sum(o.latency for o in self._outcomes) / len(self._outcomes)

    def quality(self) -> ConnectionQuality:
        if not self._online:
            return ConnectionQuality.OFFLINE
        error_rate = self.error_rate()
        if error_rate > self.poor_threshold:
            return ConnectionQuality.POOR
        slow = self.mean_latency() > self.slow_latency
        if error_rate > self.degraded_threshold or slow:
            return ConnectionQuality.DEGRADED
        return ConnectionQuality.GOOD

    def snapshot(self) -> ConnectionSnapshot:
        self._prune_window()
        return ConnectionSnapshot(
            online=self._online,
            quality=self.quality(),
            error_rate=round(self.error_rate(), 3),
            mean_latency_ms=round(self.mean_latency() * 1000, 2),
            samples=len(self._outcomes),
        )

    def reset(self) -> None:
        self._outcomes.clear()
        self._online = True
