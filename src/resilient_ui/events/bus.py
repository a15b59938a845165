"""Event bus: typed application signals plus delegated element events.

Two channels share one object:

* ``subscribe``/``emit`` carry typed ``EventKind`` payloads between services.
* ``on``/``off`` bind interaction handlers to elements of the document tree,
  either directly or by selector through one root listener per event type,
  with optional debounce/throttle windows and periodic reclamation.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import statistics
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from resilient_ui.config import EventBusSettings
from resilient_ui.events.dom import Document, DomEvent, Element, parse_selector
from resilient_ui.events.models import EVENT_PAYLOADS, EventKind, HandlerError
from resilient_ui.scheduler import AsyncioScheduler, PeriodicTask

if TYPE_CHECKING:
    from pydantic import BaseModel

    from resilient_ui.scheduler import Scheduler, TimerHandle

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Subscriber = Callable[[Any], Any]
HandlerCallback = Callable[["EventSnapshot"], Any]

_TIMING_SAMPLES = 1000


@dataclass(frozen=True, slots=True)
class EventSnapshot:
    """Copy of the fields a handler needs, safe to read after dispatch ends."""

    type: str
    target: Element | None
    current_target: Element | None
    data: dict[str, Any]
    timestamp: float


@dataclass(eq=False)
class _Handler:
    id: str
    event_type: str
    callback: HandlerCallback
    registered_at: float
    selector: str | None = None
    element: Element | None = None
    listener: Callable[[DomEvent], None] | None = None
    debounce: float | None = None
    throttle: float | None = None
    once: bool = False
    essential: bool = False
    timer: TimerHandle | None = None
    throttled: bool = False


def _window(value: float | bool | None, default: float) -> float | None:
    if value is None or value is False:
        return None
    if value is True:
        return default
    if value <= 0:
        msg = f"Window must be positive, got {value!r}"
        raise ValueError(msg)
    return float(value)


def _log_subscriber_failure(
    kind: EventKind, subscription_id: str, exc: BaseException
) -> None:
    logger.error(
        "subscriber_failed",
        kind=kind.value,
        subscription=subscription_id,
        error=str(exc),
    )


class EventBus:
    """Publish/subscribe hub and delegated dispatcher for one document."""

    def __init__(
        self,
        document: Document | None = None,
        scheduler: Scheduler | None = None,
        settings: EventBusSettings | None = None,
    ) -> None:
        self.document = document if document is not None else Document()
        self._scheduler = scheduler or AsyncioScheduler()
        self._settings = settings or EventBusSettings()
        self._ids = itertools.count(1)
        self._subscribers: dict[EventKind, dict[str, Subscriber]] = {}
        self._handlers: dict[str, _Handler] = {}
        self._delegated: dict[str, dict[str, _Handler]] = {}
        self._root_listeners: dict[str, Callable[[DomEvent], None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._timings: deque[float] = deque(maxlen=_TIMING_SAMPLES)
        self._counters = {
            "bound": 0,
            "triggered": 0,
            "cleaned": 0,
            "handler_errors": 0,
            "slow_dispatches": 0,
        }
        self._essential_only = False
        self._cleanup = PeriodicTask(
            self._scheduler,
            self._settings.cleanup_interval_seconds,
            self.reclaim,
            name="event_bus_reclaim",
        )
        self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        self._cleanup.start()
        self.initialized = True
        logger.info("event_bus_initialized")

    def destroy(self) -> None:
        self._cleanup.stop()
        for handler in list(self._handlers.values()):
            self._remove(handler)
        self.initialized = False
        logger.info("event_bus_destroyed")

    # ------------------------------------------------------------------
    # Typed signals
    # ------------------------------------------------------------------

    def subscribe(self, kind: EventKind, callback: Subscriber) -> str:
        """Register ``callback`` for ``kind``; returns a subscription id."""
        if not callable(callback):
            msg = "callback must be callable"
            raise TypeError(msg)
        subscription_id = f"sub-{next(self._ids)}"
        self._subscribers.setdefault(EventKind(kind), {})[subscription_id] = callback
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        for subscribers in self._subscribers.values():
            if subscribers.pop(subscription_id, None) is not None:
                return True
        return False

    def emit(self, kind: EventKind, payload: BaseModel) -> int:
        """Deliver ``payload`` to every subscriber of ``kind``.

        Subscribers run in registration order. A raising subscriber is
        logged and skipped; coroutine results are scheduled as tasks.

        Args:
            kind: The signal being published.
            payload: Instance of the payload model registered for ``kind``.

        Returns:
            Number of subscribers that accepted the payload.

        Raises:
            TypeError: If ``payload`` is not the model registered for ``kind``.
        """
        kind = EventKind(kind)
        expected = EVENT_PAYLOADS[kind]
        if type(payload) is not expected:
            msg = (
                f"{kind.value} expects {expected.__name__}, "
                f"got {type(payload).__name__}"
            )
            raise TypeError(msg)

        delivered = 0
        for subscription_id, callback in list(self._subscribers.get(kind, {}).items()):
            try:
                result = callback(payload)
            except Exception as exc:
                _log_subscriber_failure(kind, subscription_id, exc)
                continue
            delivered += 1
            if asyncio.iscoroutine(result):
                self._spawn(
                    result,
                    lambda exc, sid=subscription_id: _log_subscriber_failure(
                        kind, sid, exc
                    ),
                )
        return delivered

    # ------------------------------------------------------------------
    # Element handlers
    # ------------------------------------------------------------------

    def on(
        self,
        target: str | Element,
        event_type: str,
        callback: HandlerCallback,
        *,
        debounce: float | bool | None = None,
        throttle: float | bool | None = None,
        once: bool = False,
        essential: bool = False,
    ) -> str:
        """Bind ``callback`` to ``event_type`` on a selector or an element.

        Args:
            target: CSS-like selector (delegated through the document root)
                or an ``Element`` (direct listener).
            event_type: Native event type, e.g. ``"click"``.
            callback: Receives an ``EventSnapshot``; may be a coroutine function.
            debounce: Window in seconds, or ``True`` for the default window.
            throttle: Window in seconds, or ``True`` for the default window.
            once: Remove the handler after its first matching event.
            essential: Keep the handler active in emergency mode.

        Returns:
            A ``handler-`` prefixed id usable with ``off``.

        Raises:
            ValueError: On an empty event type, unsupported selector, a
                non-positive window, or both debounce and throttle.
            TypeError: If ``target`` or ``callback`` has the wrong type.
        """
        if not event_type:
            msg = "event_type must be a non-empty string"
            raise ValueError(msg)
        if not callable(callback):
            msg = "callback must be callable"
            raise TypeError(msg)
        debounce_window = _window(debounce, self._settings.debounce_seconds)
        throttle_window = _window(throttle, self._settings.throttle_seconds)
        if debounce_window is not None and throttle_window is not None:
            msg = "debounce and throttle are mutually exclusive"
            raise ValueError(msg)

        handler = _Handler(
            id=f"handler-{next(self._ids)}",
            event_type=event_type,
            callback=callback,
            registered_at=self._scheduler.monotonic(),
            debounce=debounce_window,
            throttle=throttle_window,
            once=once,
            essential=essential,
        )

        if isinstance(target, Element):
            handler.element = target
            handler.listener = lambda event: self._dispatch_direct(handler, event)
            target.add_event_listener(event_type, handler.listener)
        elif isinstance(target, str):
            parse_selector(target)
            handler.selector = target
            self._delegated.setdefault(event_type, {})[handler.id] = handler
            self._attach_root_listener(event_type)
        else:
            msg = f"target must be a selector or Element, got {type(target).__name__}"
            raise TypeError(msg)

        self._handlers[handler.id] = handler
        self._counters["bound"] += 1
        if len(self._handlers) > self._settings.max_handlers:
            logger.warning(
                "handler_limit_exceeded",
                handlers=len(self._handlers),
                limit=self._settings.max_handlers,
            )
        logger.debug(
            "handler_bound",
            handler_id=handler.id,
            event_type=event_type,
            selector=handler.selector,
        )
        return handler.id

    def off(self, target: str | Element, event_type: str | None = None) -> int:
        """Remove handlers by id, by selector or by element.

        Args:
            target: A handler id, a selector used with ``on``, or an element.
            event_type: Restrict selector/element removal to one event type.

        Returns:
            Number of handlers removed.
        """
        if isinstance(target, str) and target in self._handlers:
            self._remove(self._handlers[target])
            return 1

        if isinstance(target, Element):
            found = [h for h in self._handlers.values() if h.element is target]
        else:
            found = [h for h in self._handlers.values() if h.selector == target]
        if event_type is not None:
            found = [h for h in found if h.event_type == event_type]
        for handler in found:
            self._remove(handler)
        return len(found)

    def reclaim(self) -> int:
        """Drop handlers older than the max age or bound to detached elements.

        Returns:
            Number of handlers removed.
        """
        now = self._scheduler.monotonic()
        max_age = self._settings.handler_max_age_seconds
        stale = [
            handler
            for handler in self._handlers.values()
            if now - handler.registered_at > max_age
            or (
                handler.element is not None
                and not self.document.contains(handler.element)
            )
        ]
        for handler in stale:
            self._remove(handler)
        if stale:
            logger.info(
                "handlers_reclaimed",
                removed=len(stale),
                remaining=len(self._handlers),
            )
        return len(stale)

    def restrict_to_essential(self) -> None:
        """Suspend every handler not registered with ``essential=True``."""
        if self._essential_only:
            return
        self._essential_only = True
        suspended = sum(1 for h in self._handlers.values() if not h.essential)
        logger.warning("non_essential_handlers_suspended", suspended=suspended)

    @property
    def essential_only(self) -> bool:
        return self._essential_only

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            **self._counters,
            "active_handlers": len(self._handlers),
            "delegated_types": sorted(self._delegated),
            "subscribers": sum(len(s) for s in self._subscribers.values()),
            "essential_only": self._essential_only,
        }

    def performance_report(self) -> dict[str, Any]:
        samples = [duration * 1000 for duration in self._timings]
        return {
            "samples": len(samples),
            "average_ms": statistics.fmean(samples) if samples else 0.0,
            "max_ms": max(samples, default=0.0),
            "slow_dispatches": self._counters["slow_dispatches"],
            "stats": self.stats(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _attach_root_listener(self, event_type: str) -> None:
        if event_type in self._root_listeners:
            return
        listener = self._dispatch_delegated
        self._root_listeners[event_type] = listener
        self.document.add_event_listener(event_type, listener)

    def _detach_root_listener(self, event_type: str) -> None:
        listener = self._root_listeners.pop(event_type, None)
        if listener is not None:
            self.document.remove_event_listener(event_type, listener)

    def _dispatch_delegated(self, event: DomEvent) -> None:
        started = time.perf_counter()
        for handler in list(self._delegated.get(event.type, {}).values()):
            if handler.id not in self._handlers or not self._is_active(handler):
                continue
            node = event.target
            while node is not None and node is not self.document:
                if node.matches(handler.selector or ""):
                    self._invoke(handler, event, node)
                    break
                node = node.parent
        self._record_timing(event.type, time.perf_counter() - started)

    def _dispatch_direct(self, handler: _Handler, event: DomEvent) -> None:
        started = time.perf_counter()
        if handler.id in self._handlers and self._is_active(handler):
            self._invoke(handler, event, handler.element)
        self._record_timing(event.type, time.perf_counter() - started)

    def _is_active(self, handler: _Handler) -> bool:
        return handler.essential or not self._essential_only

    def _invoke(
        self, handler: _Handler, event: DomEvent, current: Element | None
    ) -> None:
        snapshot = EventSnapshot(
            type=event.type,
            target=event.target,
            current_target=current,
            data=copy.deepcopy(event.data),
            timestamp=self._scheduler.wall_time(),
        )
        if handler.once:
            self._remove(handler)

        if handler.debounce is not None:
            if handler.timer is not None:
                handler.timer.cancel()
            handler.timer = self._scheduler.call_later(
                handler.debounce, lambda: self._fire_debounced(handler, snapshot)
            )
        elif handler.throttle is not None:
            if handler.throttled:
                return
            handler.throttled = True
            handler.timer = self._scheduler.call_later(
                handler.throttle, lambda: self._release_throttle(handler)
            )
            self._run(handler, snapshot)
        else:
            self._run(handler, snapshot)

    def _fire_debounced(self, handler: _Handler, snapshot: EventSnapshot) -> None:
        handler.timer = None
        self._run(handler, snapshot)

    @staticmethod
    def _release_throttle(handler: _Handler) -> None:
        handler.timer = None
        handler.throttled = False

    def _run(self, handler: _Handler, snapshot: EventSnapshot) -> None:
        self._counters["triggered"] += 1
        try:
            result = handler.callback(snapshot)
        except Exception as exc:
            self._handler_failed(handler, exc)
            return
        if asyncio.iscoroutine(result):
            self._spawn(result, lambda exc: self._handler_failed(handler, exc))

    def _handler_failed(self, handler: _Handler, exc: BaseException) -> None:
        self._counters["handler_errors"] += 1
        logger.error(
            "handler_failed",
            handler_id=handler.id,
            event_type=handler.event_type,
            error=str(exc),
        )
        self.emit(
            EventKind.HANDLER_ERROR,
            HandlerError(
                handler_id=handler.id,
                event_type=handler.event_type,
                message=str(exc),
            ),
        )

    def _spawn(
        self, coro: Any, on_error: Callable[[BaseException], None]
    ) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                on_error(finished.exception())

        task.add_done_callback(_done)

    def _remove(self, handler: _Handler) -> bool:
        if self._handlers.pop(handler.id, None) is None:
            return False
        if handler.timer is not None:
            handler.timer.cancel()
            handler.timer = None
        if handler.selector is not None:
            bucket = self._delegated.get(handler.event_type, {})
            bucket.pop(handler.id, None)
            if not bucket:
                self._delegated.pop(handler.event_type, None)
                self._detach_root_listener(handler.event_type)
        elif handler.element is not None and handler.listener is not None:
            handler.element.remove_event_listener(handler.event_type, handler.listener)
        self._counters["cleaned"] += 1
        return True

    def _record_timing(self, event_type: str, duration: float) -> None:
        self._timings.append(duration)
        if duration > self._settings.slow_dispatch_seconds:
            self._counters["slow_dispatches"] += 1
            logger.warning(
                "slow_event_dispatch",
                event_type=event_type,
                duration_ms=round(duration * 1000, 2),
            )
