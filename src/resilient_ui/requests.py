"""Request coordination: bounded retry with exponential backoff and jitter.

Operations are attempted immediately on submission. Retryable failures
park the operation as a ``RetryTicket`` in a fire-time ordered queue that
is drained once per tick, and drained completely when connectivity is
restored or the page unloads.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import random
from collections.abc import Awaitable, Callable, Generator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from resilient_ui.config import RequestSettings
from resilient_ui.connection import ConnectionMonitor
from resilient_ui.events.models import (
    ConnectivityChanged,
    ConnectivityRestored,
    EventKind,
    RequestCancelled,
    RequestErrorInfo,
    RequestFailed,
    RequestRetrying,
    RequestSucceeded,
)
from resilient_ui.exceptions import (
    ConnectionFailure,
    HTTPStatusFailure,
    OperationTimeout,
    RequestError,
    RequestRejected,
    TransportError,
)
from resilient_ui.scheduler import AsyncioScheduler, PeriodicTask
from resilient_ui.transport import OutboundRequest

if TYPE_CHECKING:
    from resilient_ui.events.bus import EventBus
    from resilient_ui.scheduler import Scheduler
    from resilient_ui.transport import RequestConfig, Transport

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

AuthRefresher = Callable[[], Awaitable[bool]]


def compute_backoff(
    attempt: int,
    base: float,
    cap: float,
    jitter_ratio: float = 0.1,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff delay with proportional jitter.

    Args:
        attempt: Number of attempts made so far (>= 1).
        base: Delay after the first attempt, in seconds.
        cap: Upper bound of the exponential part, in seconds.
        jitter_ratio: Maximum jitter as a fraction of the delay.
        rng: Random source; defaults to the ``random`` module.

    Returns:
        ``min(base * 2**(attempt - 1), cap)`` plus up to ``jitter_ratio`` of it.

    Raises:
        ValueError: If ``attempt`` is less than 1.
    """
    if attempt < 1:
        msg = f"attempt must be >= 1, got {attempt}"
        raise ValueError(msg)
    delay = min(base * 2 ** (attempt - 1), cap)
    source = rng if rng is not None else random
    return delay + source.random() * jitter_ratio * delay


def is_retryable(exc: TransportError) -> bool:
    """Whether a failed attempt should be retried.

    Client errors (4xx) and ``success: false`` envelopes are terminal;
    timeouts, transport failures, status 0 and 5xx are transient.
    """
    if isinstance(exc, RequestRejected):
        return False
    if 400 <= exc.status < 500:
        return False
    if isinstance(exc, (OperationTimeout, ConnectionFailure)):
        return True
    return exc.status == 0 or exc.status >= 500


@dataclass
class RequestOptions:
    """Per-call overrides and callbacks.

    Attributes:
        max_attempts: Attempt budget (defaults to the configured value).
        timeout: Per-attempt timeout in seconds.
        on_success: Called with the response data on success.
        on_failure: Called with the ``RequestError`` on final failure.
        on_retry: Called with ``(attempts, delay)`` when a retry is queued.
    """

    max_attempts: int | None = None
    timeout: float | None = None
    on_success: Callable[[Any], Any] | None = None
    on_failure: Callable[[RequestError], Any] | None = None
    on_retry: Callable[[int, float], Any] | None = None


@dataclass(eq=False)
class Operation:
    id: str
    kind: str
    payload: dict[str, Any]
    max_attempts: int
    timeout: float
    created_at: float
    options: RequestOptions
    future: asyncio.Future[Any]
    attempts: int = 0
    auth_refreshed: bool = False
    cancelled: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)


@dataclass(order=True)
class RetryTicket:
    fire_at: float
    seq: int
    operation: Operation = field(compare=False)


class PendingOperation:
    """Handle returned by ``submit``: carries the id now, the outcome later."""

    def __init__(self, operation: Operation) -> None:
        self._operation = operation

    @property
    def id(self) -> str:
        return self._operation.id

    @property
    def kind(self) -> str:
        return self._operation.kind

    @property
    def attempts(self) -> int:
        return self._operation.attempts

    def done(self) -> bool:
        return self._operation.future.done()

    def __await__(self) -> Generator[Any, None, Any]:
        return self._operation.future.__await__()


class RequestStatistics(BaseModel):
    active: int = Field(ge=0)
    queued: int = Field(ge=0)
    succeeded: int = Field(ge=0)
    failed: int = Field(ge=0)
    retries: int = Field(ge=0)
    cancelled: int = Field(ge=0)
    online: bool


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class RequestCoordinator:
    """Executes outbound operations with bounded, backed-off retries."""

    def __init__(
        self,
        transport: Transport,
        bus: EventBus,
        config: RequestConfig,
        settings: RequestSettings | None = None,
        scheduler: Scheduler | None = None,
        monitor: ConnectionMonitor | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._bus = bus
        self._config = config
        self._settings = settings or RequestSettings()
        self._scheduler = scheduler or AsyncioScheduler()
        self.monitor = monitor or ConnectionMonitor(self._scheduler)
        self._rng = rng
        self._auth_refresher: AuthRefresher | None = None
        self._refresh_in_flight: asyncio.Future[bool] | None = None
        self._ids = itertools.count(1)
        self._seq = itertools.count()
        self._operations: dict[str, Operation] = {}
        self._queue: list[RetryTicket] = []
        self._counters = {"succeeded": 0, "failed": 0, "retries": 0, "cancelled": 0}
        self._ticker = PeriodicTask(
            self._scheduler,
            self._settings.tick_interval_seconds,
            self.process_due,
            name="retry_queue_tick",
        )
        self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        self._ticker.start()
        self.initialized = True
        logger.info("request_coordinator_initialized")

    def destroy(self) -> None:
        self._ticker.stop()
        self.initialized = False

    def set_auth_refresher(self, refresher: AuthRefresher | None) -> None:
        """Install the hook called once per operation on a 401/403."""
        self._auth_refresher = refresher

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        kind: str,
        payload: Mapping[str, Any] | None = None,
        options: RequestOptions | None = None,
    ) -> PendingOperation:
        """Create an operation and attempt it immediately.

        Must be called with a running event loop.

        Args:
            kind: Action identifier sent to the server.
            payload: Key/value map merged into the request body.
            options: Per-call overrides and callbacks.

        Returns:
            A ``PendingOperation`` that resolves to the response data or
            raises ``RequestError``.

        Raises:
            ValueError: On an empty kind, a non-mapping payload,
                ``max_attempts`` < 1 or a non-positive timeout.
        """
        options = options or RequestOptions()
        if not isinstance(kind, str) or not kind:
            msg = "kind must be a non-empty string"
            raise ValueError(msg)
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            msg = f"payload must be a mapping, got {type(payload).__name__}"
            raise ValueError(msg)
        max_attempts = (
            options.max_attempts
            if options.max_attempts is not None
            else self._settings.max_attempts
        )
        if max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {max_attempts}"
            raise ValueError(msg)
        timeout = (
            options.timeout
            if options.timeout is not None
            else self._settings.timeout_seconds
        )
        if timeout <= 0:
            msg = f"timeout must be positive, got {timeout}"
            raise ValueError(msg)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        future.add_done_callback(_consume_exception)
        operation = Operation(
            id=f"req_{int(self._scheduler.wall_time() * 1000)}_{next(self._ids)}",
            kind=kind,
            payload=dict(payload),
            max_attempts=max_attempts,
            timeout=timeout,
            created_at=self._scheduler.monotonic(),
            options=options,
            future=future,
        )
        self._operations[operation.id] = operation
        logger.debug("request_submitted", operation_id=operation.id, kind=kind)
        self._launch(operation)
        return PendingOperation(operation)

    def cancel(self, operation_id: str) -> bool:
        """Stop tracking an operation without invoking its callbacks.

        An in-flight network call is not aborted; its result is ignored.
        """
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return False
        operation.cancelled = True
        self._queue = [t for t in self._queue if t.operation is not operation]
        heapq.heapify(self._queue)
        operation.future.cancel()
        self._counters["cancelled"] += 1
        self._bus.emit(
            EventKind.REQUEST_CANCELLED,
            RequestCancelled(operation_id=operation.id, kind=operation.kind),
        )
        logger.info("request_cancelled", operation_id=operation_id)
        return True

    def clear_queue(self) -> int:
        """Cancel every operation waiting for a retry."""
        ids = [ticket.operation.id for ticket in self._queue]
        return sum(1 for operation_id in ids if self.cancel(operation_id))

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    def process_due(self) -> int:
        """Promote tickets whose fire-time has elapsed (one tick)."""
        return self._promote(everything=False)

    def flush(self) -> int:
        """Promote every queued ticket regardless of fire-time."""
        promoted = self._promote(everything=True)
        if promoted:
            logger.info("retry_queue_flushed", promoted=promoted)
        return promoted

    def set_online(self, online: bool) -> None:
        """Record a connectivity transition; going online drains the queue."""
        was_online = self.monitor.online
        self.monitor.set_online(online)
        if online == was_online:
            return
        kind = EventKind.NETWORK_ONLINE if online else EventKind.NETWORK_OFFLINE
        self._bus.emit(kind, ConnectivityChanged(online=online))
        if online:
            self.flush()

    def connectivity_restored(self, source: str = "probe") -> int:
        self.monitor.set_online(True)
        self._bus.emit(EventKind.NETWORK_RESTORED, ConnectivityRestored(source=source))
        return self.flush()

    def statistics(self) -> RequestStatistics:
        queued = len(self._queue)
        return RequestStatistics(
            active=max(len(self._operations) - queued, 0),
            queued=queued,
            online=self.monitor.online,
            **self._counters,
        )

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _launch(self, operation: Operation) -> None:
        operation.task = asyncio.get_running_loop().create_task(
            self._attempt(operation)
        )

    def _promote(self, *, everything: bool) -> int:
        now = self._scheduler.monotonic()
        promoted = 0
        while self._queue and (everything or self._queue[0].fire_at <= now):
            ticket = heapq.heappop(self._queue)
            operation = ticket.operation
            if operation.cancelled or operation.future.done():
                continue
            self._launch(operation)
            promoted += 1
        return promoted

    async def _attempt(self, operation: Operation) -> None:
        if operation.cancelled or operation.future.done():
            return
        operation.attempts += 1
        request = OutboundRequest(
            kind=operation.kind,
            payload=operation.payload,
            token=self._config.token,
        )
        started = self._scheduler.monotonic()
        try:
            envelope = await self._race(
                self._transport.send(request, operation.timeout), operation.timeout
            )
        except TransportError as exc:
            self.monitor.record_outcome(False, self._scheduler.monotonic() - started)
            await self._handle_failure(operation, exc)
            return
        except Exception as exc:
            logger.warning(
                "transport_raised_unexpected",
                operation_id=operation.id,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            self.monitor.record_outcome(False, self._scheduler.monotonic() - started)
            await self._handle_failure(operation, ConnectionFailure(str(exc)))
            return

        self.monitor.record_outcome(True, self._scheduler.monotonic() - started)
        if operation.cancelled:
            return
        self._resolve(operation, envelope.data)

    async def _race(self, send: Awaitable[Any], timeout: float) -> Any:
        task = asyncio.ensure_future(send)
        expired: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _expire() -> None:
            if not expired.done():
                expired.set_result(None)

        handle = self._scheduler.call_later(timeout, _expire)
        try:
            done, _ = await asyncio.wait(
                {task, expired}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            handle.cancel()
            if not expired.done():
                expired.cancel()

        if task in done:
            return task.result()
        task.cancel()
        task.add_done_callback(_consume_exception)
        msg = f"Request timed out after {timeout:g}s"
        raise OperationTimeout(msg)

    async def _handle_failure(self, operation: Operation, exc: TransportError) -> None:
        if operation.cancelled:
            return
        logger.warning(
            "request_attempt_failed",
            operation_id=operation.id,
            kind=operation.kind,
            attempt=operation.attempts,
            max_attempts=operation.max_attempts,
            status=exc.status,
            error=exc.message,
        )

        if (
            isinstance(exc, HTTPStatusFailure)
            and exc.is_authorization_error
            and not operation.auth_refreshed
            and self._auth_refresher is not None
        ):
            operation.auth_refreshed = True
            if await self._refresh_authorization() and not operation.cancelled:
                logger.info(
                    "request_retry_after_token_refresh", operation_id=operation.id
                )
                await self._attempt(operation)
                return

        retryable = is_retryable(exc)
        if retryable and operation.attempts < operation.max_attempts:
            self._schedule_retry(operation)
            return
        self._reject(operation, exc, retryable)

    async def _refresh_authorization(self) -> bool:
        """Run the refresher, sharing one call between concurrent 401s."""
        if self._refresh_in_flight is not None:
            return await asyncio.shield(self._refresh_in_flight)
        if self._auth_refresher is None:
            return False
        loop = asyncio.get_running_loop()
        self._refresh_in_flight = loop.create_future()
        try:
            refreshed = bool(await self._auth_refresher())
        except Exception as exc:
            logger.error("token_refresh_hook_failed", error=str(exc))
            refreshed = False
        finally:
            pending, self._refresh_in_flight = self._refresh_in_flight, None
        pending.set_result(refreshed)
        return refreshed

    def _schedule_retry(self, operation: Operation) -> None:
        delay = compute_backoff(
            operation.attempts,
            self._settings.base_delay_seconds,
            self._settings.max_delay_seconds,
            self._settings.jitter_ratio,
            self._rng,
        )
        fire_at = self._scheduler.monotonic() + delay
        heapq.heappush(self._queue, RetryTicket(fire_at, next(self._seq), operation))
        self._counters["retries"] += 1
        logger.info(
            "request_retry_scheduled",
            operation_id=operation.id,
            attempt=operation.attempts,
            delay=round(delay, 3),
        )
        self._bus.emit(
            EventKind.REQUEST_RETRYING,
            RequestRetrying(
                operation_id=operation.id,
                kind=operation.kind,
                attempt=operation.attempts,
                delay=delay,
                fire_at=fire_at,
            ),
        )
        self._callback(operation, operation.options.on_retry, operation.attempts, delay)

    def _resolve(self, operation: Operation, data: Any) -> None:
        self._operations.pop(operation.id, None)
        self._counters["succeeded"] += 1
        duration = self._scheduler.monotonic() - operation.created_at
        operation.future.set_result(data)
        logger.info(
            "request_succeeded",
            operation_id=operation.id,
            kind=operation.kind,
            attempts=operation.attempts,
        )
        self._bus.emit(
            EventKind.REQUEST_SUCCEEDED,
            RequestSucceeded(
                operation_id=operation.id,
                kind=operation.kind,
                attempts=operation.attempts,
                duration=duration,
            ),
        )
        self._callback(operation, operation.options.on_success, data)

    def _reject(
        self, operation: Operation, exc: TransportError, retryable: bool
    ) -> None:
        self._operations.pop(operation.id, None)
        self._counters["failed"] += 1
        error = RequestError(
            exc.message,
            status=exc.status,
            error_type=exc.error_type,
            payload=exc.payload,
            attempts=operation.attempts,
            operation_id=operation.id,
            kind=operation.kind,
            retryable=retryable,
        )
        operation.future.set_exception(error)
        logger.error(
            "request_failed",
            operation_id=operation.id,
            kind=operation.kind,
            attempts=operation.attempts,
            status=exc.status,
            error_type=exc.error_type,
        )
        self._bus.emit(
            EventKind.REQUEST_FAILED,
            RequestFailed(
                operation_id=operation.id,
                kind=operation.kind,
                attempts=operation.attempts,
                payload=operation.payload,
                error=RequestErrorInfo(
                    status=exc.status,
                    message=exc.message,
                    error_type=exc.error_type,
                    retryable=retryable,
                    payload=exc.payload,
                ),
            ),
        )
        self._callback(operation, operation.options.on_failure, error)

    @staticmethod
    def _callback(
        operation: Operation, callback: Callable[..., Any] | None, *args: Any
    ) -> None:
        if callback is None or operation.cancelled:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.error(
                "request_callback_failed",
                operation_id=operation.id,
                error=str(exc),
            )
