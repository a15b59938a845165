"""Batched delivery of classified errors to the reporting endpoint.

Errors wait in a capped FIFO queue; when it is full the oldest entry is
evicted. Every flush sends at most one batch. A failed batch goes back to
the front of the queue, trimmed so the cap still holds.
"""

from __future__ import annotations

from collections import Counter, deque
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from resilient_ui.config import ReportingSettings
from resilient_ui.exceptions import TransportError
from resilient_ui.reporting.models import ErrorEvent, ErrorReportBatch
from resilient_ui.scheduler import AsyncioScheduler, PeriodicTask

if TYPE_CHECKING:
    from resilient_ui.scheduler import Scheduler
    from resilient_ui.transport import RequestConfig, Transport

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class ReporterStatistics(BaseModel):
    enabled: bool
    queue_size: int = Field(ge=0)
    max_queue_size: int
    by_category: dict[str, int] = Field(default_factory=dict)
    reported: int = Field(default=0, ge=0)
    sent: int = Field(default=0, ge=0)
    dropped: int = Field(default=0, ge=0)
    failed_batches: int = Field(default=0, ge=0)


class ErrorReporter:
    """Queues ``ErrorEvent`` records and ships them in batches."""

    def __init__(
        self,
        transport: Transport,
        config: RequestConfig,
        settings: ReportingSettings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._settings = settings or ReportingSettings()
        self._scheduler = scheduler or AsyncioScheduler()
        self._queue: deque[ErrorEvent] = deque(maxlen=self._settings.max_queue_size)
        self._categories: Counter[str] = Counter()
        self._reported = 0
        self._sent = 0
        self._dropped = 0
        self._failed_batches = 0
        self.enabled = self._settings.enabled
        self._flusher = PeriodicTask(
            self._scheduler,
            self._settings.interval_seconds,
            self.flush,
            name="error_report_flush",
        )
        self.initialized = False

    async def init(self) -> None:
        if self.enabled:
            self._flusher.start()
        self.initialized = True

    def destroy(self) -> None:
        self._flusher.stop()
        self.initialized = False

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def pending(self) -> list[ErrorEvent]:
        return list(self._queue)

    def enqueue(self, event: ErrorEvent) -> None:
        """Append an error; the oldest entry is evicted when full."""
        self._reported += 1
        self._categories[event.classification.category.value] += 1
        if not self.enabled:
            return
        if len(self._queue) == self._queue.maxlen:
            self._dropped += 1
            logger.debug("error_queue_evicted", evicted=self._queue[0].id)
        self._queue.append(event)

    async def flush(self) -> int:
        """Send one batch of queued errors.

        Returns:
            Number of errors delivered; 0 when nothing was sent.
        """
        if not self.enabled or not self._queue:
            return 0
        size = min(self._settings.batch_size, len(self._queue))
        batch = [self._queue.popleft() for _ in range(size)]
        payload = ErrorReportBatch(
            errors=batch,
            timestamp=int(self._scheduler.wall_time() * 1000),
            session_id=self._config.session_id,
            auth_token=self._config.token,
        )
        try:
            await self._transport.report_errors(payload)
        except TransportError as exc:
            self._failed_batches += 1
            self._requeue(batch)
            logger.warning(
                "error_report_failed",
                batch_size=size,
                queue_size=len(self._queue),
                error=str(exc),
            )
            return 0
        self._sent += size
        logger.info("error_report_sent", batch_size=size, remaining=len(self._queue))
        return size

    async def flush_all(self) -> int:
        """Send batches until the queue is empty or a batch fails."""
        total = 0
        while self._queue:
            sent = await self.flush()
            if not sent:
                break
            total += sent
        return total

    def statistics(self) -> ReporterStatistics:
        return ReporterStatistics(
            enabled=self.enabled,
            queue_size=len(self._queue),
            max_queue_size=self._settings.max_queue_size,
            by_category=dict(self._categories),
            reported=self._reported,
            sent=self._sent,
            dropped=self._dropped,
            failed_batches=self._failed_batches,
        )

    def clear(self) -> None:
        self._queue.clear()

    def _requeue(self, batch: list[ErrorEvent]) -> None:
        # Unsent items go back in front; newer arrivals win when over the cap.
        combined = [*batch, *self._queue]
        capacity = self._queue.maxlen or len(combined)
        overflow = max(len(combined) - capacity, 0)
        self._dropped += overflow
        self._queue = deque(combined[overflow:], maxlen=capacity)
