"""Error intake, classification and bounded recovery.

``report_error`` enriches a raw failure with an environment snapshot,
classifies it, queues it for reporting and, when it is recoverable,
starts the recovery strategy named by its classification. Each strategy
runs with its own attempt budget and delay. A second error joins a run
already in progress for the same target: network, security and state
runs are shared per strategy, component runs per component. Recovery
needs a running event loop and is skipped when there is none. Exhausted
recoveries raise the degradation level, and critical errors go straight
to emergency mode.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from resilient_ui.components import ComponentName
from resilient_ui.config import RecoverySettings
from resilient_ui.events.models import (
    ComponentInitFailed,
    ComponentRecovered,
    ConnectivityRestored,
    ErrorRecovered,
    ErrorRecoveryFailed,
    ErrorReported,
    EventKind,
    RequestFailed,
    TokenRefreshed,
)
from resilient_ui.exceptions import ComponentError, TransportError
from resilient_ui.notices import NoticeAction, NoticeKind
from resilient_ui.recovery.models import (
    RecoveryAttempt,
    RecoveryMetrics,
    StrategyPolicy,
)
from resilient_ui.reporting.classifier import ErrorClassifier
from resilient_ui.reporting.models import (
    ErrorContext,
    ErrorEvent,
    ErrorInfo,
    RecoveryResult,
    RecoveryStrategy,
    generate_error_id,
)
from resilient_ui.scheduler import AsyncioScheduler

if TYPE_CHECKING:
    from resilient_ui.components import ComponentRegistry
    from resilient_ui.connection import ConnectionMonitor
    from resilient_ui.events.bus import EventBus
    from resilient_ui.notices import NoticeBoard
    from resilient_ui.recovery.degradation import DegradationController
    from resilient_ui.reporting.reporter import ErrorReporter
    from resilient_ui.requests import RequestCoordinator
    from resilient_ui.scheduler import Scheduler
    from resilient_ui.state.store import StateStore
    from resilient_ui.transport import RequestConfig, Transport

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

StrategyFn = Callable[[ErrorEvent], Awaitable[RecoveryResult]]
RunKey = tuple[RecoveryStrategy, str | None]


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class EnvironmentProbe(Protocol):
    """Host-supplied facts attached to every error report."""

    def origin(self) -> str | None: ...

    def viewport(self) -> dict[str, int] | None: ...

    def memory(self) -> dict[str, int] | None: ...


@dataclass
class StaticEnvironment:
    """``EnvironmentProbe`` returning fixed values."""

    origin_url: str | None = None
    viewport_size: dict[str, int] | None = None
    memory_usage: dict[str, int] | None = None

    def origin(self) -> str | None:
        return self.origin_url

    def viewport(self) -> dict[str, int] | None:
        return self.viewport_size

    def memory(self) -> dict[str, int] | None:
        return self.memory_usage


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RecoveryOrchestrator:
    """Turns reported failures into bounded, coalesced recovery runs."""

    def __init__(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        *,
        classifier: ErrorClassifier | None = None,
        transport: Transport | None = None,
        config: RequestConfig | None = None,
        coordinator: RequestCoordinator | None = None,
        store: StateStore | None = None,
        monitor: ConnectionMonitor | None = None,
        environment: EnvironmentProbe | None = None,
        settings: RecoverySettings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._bus = bus
        self._reporter = reporter
        self._degradation = degradation
        self._notices = notices
        self._registry = registry
        self._classifier = classifier or ErrorClassifier()
        self._transport = transport
        self._config = config
        self._coordinator = coordinator
        self._store = store
        self._monitor = monitor
        self._environment = environment or StaticEnvironment()
        self._settings = settings or RecoverySettings()
        self._scheduler = scheduler or AsyncioScheduler()
        self._policies = {
            name: StrategyPolicy.from_settings(policy)
            for name, policy in self._settings.strategy_policies.items()
        }
        self._strategies: dict[RecoveryStrategy, StrategyFn] = {
            RecoveryStrategy.NETWORK: self._recover_network,
            RecoveryStrategy.SECURITY: self._recover_security,
            RecoveryStrategy.STATE: self._recover_state,
            RecoveryStrategy.COMPONENT: self._recover_component,
            RecoveryStrategy.CRITICAL: self._recover_critical,
        }
        self._attempts: dict[str, RecoveryAttempt] = {}
        self._running: dict[RunKey, asyncio.Task[RecoveryResult]] = {}
        self._subscriptions: list[str] = []
        self.metrics = RecoveryMetrics()
        self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        if not self._subscriptions:
            self._subscriptions = [
                self._bus.subscribe(EventKind.REQUEST_FAILED, self._on_request_failed),
                self._bus.subscribe(
                    EventKind.COMPONENT_INIT_FAILED, self._on_component_init_failed
                ),
            ]
        self.initialized = True

    def destroy(self) -> None:
        for subscription in self._subscriptions:
            self._bus.unsubscribe(subscription)
        self._subscriptions = []
        for task in self._running.values():
            task.cancel()
        self._running.clear()
        self.initialized = False

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def report_error(
        self,
        error: ErrorInfo | BaseException,
        context: Mapping[str, Any] | None = None,
        *,
        recover: bool = True,
    ) -> ErrorEvent:
        """Enrich, classify, queue and (when recoverable) recover a failure.

        Never raises for the failure itself; recovery runs in the
        background.

        Args:
            error: The failure, as an ``ErrorInfo`` or a raised exception.
            context: Extra key/values attached to the report.
            recover: Whether to dispatch a recovery strategy.

        Returns:
            The normalized ``ErrorEvent``.
        """
        info = (
            ErrorInfo.from_exception(error)
            if isinstance(error, BaseException)
            else error
        )
        now = self._scheduler.wall_time()
        event = ErrorEvent(
            id=generate_error_id(now),
            type=info.type,
            message=info.message,
            stack=info.stack,
            component=info.component,
            timestamp=int(now * 1000),
            context=self._build_context(now, context),
            classification=self._classifier.classify(info.message, info.stack),
        )
        self.metrics.errors_reported += 1
        logger.warning(
            "error_reported",
            error_id=event.id,
            category=event.classification.category.value,
            severity=event.classification.severity.value,
            message=event.message,
        )
        self._reporter.enqueue(event)
        self._bus.emit(EventKind.ERROR_REPORTED, ErrorReported(error=event))

        if event.classification.strategy is RecoveryStrategy.CRITICAL:
            self.metrics.emergencies += 1
            self._degradation.enable_emergency_mode(event.message)
        elif (
            recover
            and event.classification.recoverable
            and self._settings.auto_recovery
        ):
            self._dispatch(event)
        return event

    # ------------------------------------------------------------------
    # Recovery control
    # ------------------------------------------------------------------

    def recovering(self, strategy: RecoveryStrategy) -> bool:
        return any(key[0] is strategy for key in self._running)

    def attempts_for(self, error_id: str) -> int:
        record = self._attempts.get(error_id)
        return record.attempts if record else 0

    async def wait_idle(self) -> None:
        """Wait until no recovery run is in progress."""
        while self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def refresh_authorization(self) -> bool:
        """Authorization hook for the request coordinator.

        Returns:
            True when a fresh token was installed.
        """
        try:
            await self._swap_token()
        except (TransportError, RuntimeError) as exc:
            logger.warning("authorization_refresh_failed", error=str(exc))
            return False
        return True

    def statistics(self) -> dict[str, Any]:
        return {
            **self.metrics.model_dump(),
            "active_recoveries": sorted(
                strategy.value if target is None else f"{strategy.value}:{target}"
                for strategy, target in self._running
            ),
            "tracked_errors": len(self._attempts),
            "degradation_level": self._degradation.level,
            "emergency": self._degradation.emergency,
        }

    def _dispatch(self, event: ErrorEvent) -> asyncio.Task[RecoveryResult] | None:
        key = self._run_key(event)
        strategy, target = key
        running = self._running.get(key)
        if running is not None:
            self.metrics.coalesced += 1
            logger.info(
                "recovery_coalesced",
                error_id=event.id,
                strategy=strategy.value,
                target=target,
            )
            return running
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "recovery_skipped_no_loop", error_id=event.id, strategy=strategy.value
            )
            return None
        task = loop.create_task(self._recover(event))
        self._running[key] = task

        def _done(finished: asyncio.Task[RecoveryResult]) -> None:
            if self._running.get(key) is finished:
                del self._running[key]
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "recovery_task_failed",
                    strategy=strategy.value,
                    error=str(finished.exception()),
                )

        task.add_done_callback(_done)
        return task

    def _run_key(self, event: ErrorEvent) -> RunKey:
        strategy = event.classification.strategy
        if strategy is RecoveryStrategy.COMPONENT:
            name = self._component_of(event)
            return strategy, name.value if name is not None else None
        return strategy, None

    async def _recover(self, event: ErrorEvent) -> RecoveryResult:
        strategy = event.classification.strategy
        policy = self._policies.get(strategy.value, StrategyPolicy())
        record = self._attempts.setdefault(
            event.id, RecoveryAttempt(error_id=event.id, strategy=strategy.value)
        )
        result = RecoveryResult(success=False, message="Recovery not attempted")

        while record.attempts < policy.max_attempts:
            delay = policy.delay_for(record.attempts + 1)
            if delay > 0:
                await self._scheduler.sleep(delay)
            record.attempts += 1
            self.metrics.recoveries_attempted += 1
            logger.info(
                "recovery_attempt",
                error_id=event.id,
                strategy=strategy.value,
                attempt=record.attempts,
                max_attempts=policy.max_attempts,
            )
            try:
                result = await self._strategies[strategy](event)
            except Exception as exc:
                self.metrics.strategy_exceptions += 1
                logger.error(
                    "recovery_strategy_raised",
                    error_id=event.id,
                    strategy=strategy.value,
                    error=str(exc),
                )
                result = RecoveryResult(success=False, message=str(exc))
            record.last_message = result.message

            if result.success:
                del self._attempts[event.id]
                self.metrics.recovered += 1
                logger.info(
                    "recovery_succeeded",
                    error_id=event.id,
                    strategy=strategy.value,
                    attempts=record.attempts,
                )
                self._bus.emit(
                    EventKind.ERROR_RECOVERED,
                    ErrorRecovered(
                        error_id=event.id,
                        strategy=strategy.value,
                        message=result.message,
                    ),
                )
                return result

        self._attempts.pop(event.id, None)
        self.metrics.recovery_exhausted += 1
        logger.warning(
            "recovery_exhausted",
            error_id=event.id,
            strategy=strategy.value,
            attempts=record.attempts,
            message=result.message,
        )
        self._bus.emit(
            EventKind.ERROR_RECOVERY_FAILED,
            ErrorRecoveryFailed(
                error_id=event.id,
                strategy=strategy.value,
                attempts=record.attempts,
                message=result.message,
            ),
        )
        self._escalate(event, result)
        return result

    def _escalate(self, event: ErrorEvent, result: RecoveryResult) -> None:
        strategy = event.classification.strategy
        if strategy is RecoveryStrategy.COMPONENT:
            name = self._component_of(event)
            if name is not None:
                self._degradation.handle_component_failure(name, result.message)
            else:
                self._degradation.raise_level(f"recovery_failed:{strategy.value}")
            self._degradation.enable(f"recovery_failed:{strategy.value}")
            return

        self._degradation.raise_level(f"recovery_failed:{strategy.value}")
        if strategy is RecoveryStrategy.SECURITY:
            self._notices.show(
                "Session expired",
                "Your session could not be renewed. Save your work and reload.",
                kind=NoticeKind.ERROR,
            )
        elif strategy is RecoveryStrategy.STATE:
            self._notices.show(
                "Settings could not be restored",
                "Saved interface state was damaged and could not be recovered.",
                kind=NoticeKind.ERROR,
            )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _recover_network(self, event: ErrorEvent) -> RecoveryResult:
        if self._transport is None:
            return RecoveryResult(success=False, message="No transport to probe")
        if not await self._transport.probe():
            return RecoveryResult(success=False, message="Network test failed")
        self._bus.emit(
            EventKind.NETWORK_RESTORED, ConnectivityRestored(source="recovery")
        )
        return RecoveryResult(success=True, message="Network connectivity restored")

    async def _recover_security(self, event: ErrorEvent) -> RecoveryResult:
        await self._swap_token()
        return RecoveryResult(success=True, message="Security tokens refreshed")

    async def _recover_state(self, event: ErrorEvent) -> RecoveryResult:
        if self._store is None:
            return RecoveryResult(success=False, message="No state store attached")
        await self._store.recover_with_fallback(event.message)
        return RecoveryResult(success=True, message="State restored from defaults")

    async def _recover_component(self, event: ErrorEvent) -> RecoveryResult:
        name = self._component_of(event)
        if name is None or name not in self._registry:
            self._degradation.enable(f"unidentified_component:{event.id}")
            return RecoveryResult(success=True, message="Graceful degradation enabled")
        try:
            await self._registry.init_component(name)
        except ComponentError as exc:
            return RecoveryResult(success=False, message=str(exc))
        self._bus.emit(
            EventKind.COMPONENT_RECOVERED, ComponentRecovered(component=name.value)
        )
        return RecoveryResult(success=True, message=f"Component {name} recovered")

    async def _recover_critical(self, event: ErrorEvent) -> RecoveryResult:
        self._degradation.enable_emergency_mode(event.message)
        return RecoveryResult(success=True, message="Critical recovery initiated")

    async def _swap_token(self) -> None:
        if self._transport is None or self._config is None:
            msg = "Token refresh needs a transport and a request config"
            raise RuntimeError(msg)
        self._config.token = await self._transport.refresh_token()
        logger.info("authorization_token_refreshed")
        self._bus.emit(EventKind.TOKEN_REFRESHED, TokenRefreshed())

    # ------------------------------------------------------------------
    # Bus subscribers
    # ------------------------------------------------------------------

    def _on_request_failed(self, payload: RequestFailed) -> None:
        error = payload.error
        authorization = error.status in (401, 403)
        if error.retryable:
            message = f"Network request {payload.kind} failed: {error.message}"
        elif authorization:
            message = f"Request {payload.kind} unauthorized: {error.message}"
        else:
            message = f"Request {payload.kind} rejected: {error.message}"

        self.report_error(
            ErrorInfo(type="request_error", message=message),
            {
                "operation_id": payload.operation_id,
                "status": error.status,
                "attempts": payload.attempts,
            },
            recover=error.retryable or authorization,
        )
        if error.retryable and self._coordinator is not None:
            self._offer_retry(self._coordinator, payload)

    def _on_component_init_failed(self, payload: ComponentInitFailed) -> None:
        self.report_error(
            ErrorInfo(
                type="component_error",
                message=(
                    f"Component {payload.component} initialization failed: "
                    f"{payload.message}"
                ),
                component=payload.component,
            )
        )

    def _offer_retry(
        self, coordinator: RequestCoordinator, payload: RequestFailed
    ) -> None:
        def _retry() -> str:
            return coordinator.submit(payload.kind, payload.payload).id

        self._notices.show(
            "Request failed",
            f"The {payload.kind} request could not be completed.",
            kind=NoticeKind.WARNING,
            actions=[NoticeAction(label="Retry", callback=_retry)],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _component_of(self, event: ErrorEvent) -> ComponentName | None:
        return ComponentName.parse(
            self._classifier.extract_component_name(event.message, event.component)
        )

    def _build_context(
        self, now: float, extra: Mapping[str, Any] | None
    ) -> ErrorContext:
        failed = self._degradation.failed_components
        components = {
            name: {"initialized": initialized, "failed": name in failed}
            for name, initialized in self._registry.status().items()
        }
        connection = (
            self._monitor.snapshot().model_dump(mode="json")
            if self._monitor is not None
            else None
        )
        return ErrorContext(
            timestamp=int(now * 1000),
            origin=self._environment.origin(),
            viewport=self._environment.viewport(),
            memory=self._environment.memory(),
            connection=connection,
            components=components,
            extra=dict(extra or {}),
        )
