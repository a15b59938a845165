"""Explicit construction and wiring of every runtime service.

One ``Runtime`` corresponds to one execution context (a page). Several
runtimes may share a durable storage area and a channel hub to model
tabs of the same origin.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from resilient_ui.components import ComponentName, ComponentRegistry
from resilient_ui.config import Settings
from resilient_ui.connection import ConnectionMonitor
from resilient_ui.events.bus import EventBus
from resilient_ui.events.models import ComponentInitFailed, EventKind
from resilient_ui.exceptions import ComponentError
from resilient_ui.logging import component_context, generate_session_id
from resilient_ui.notices import NoticeBoard
from resilient_ui.recovery.degradation import DegradationController
from resilient_ui.recovery.orchestrator import RecoveryOrchestrator
from resilient_ui.reporting.classifier import ErrorClassifier
from resilient_ui.reporting.reporter import ErrorReporter
from resilient_ui.requests import RequestCoordinator
from resilient_ui.scheduler import AsyncioScheduler
from resilient_ui.state.storage import JsonFileStorage, MemoryStorage
from resilient_ui.state.store import StateStore
from resilient_ui.transport import HttpxTransport, RequestConfig

if TYPE_CHECKING:
    from resilient_ui.events.dom import Document
    from resilient_ui.events.models import ConnectivityRestored
    from resilient_ui.recovery.orchestrator import EnvironmentProbe
    from resilient_ui.reporting.models import ErrorEvent, ErrorInfo
    from resilient_ui.scheduler import Scheduler
    from resilient_ui.state.channel import ChannelHub
    from resilient_ui.state.storage import StorageBackend
    from resilient_ui.transport import Transport

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Initialization order; later components depend on earlier ones.
STARTUP_ORDER: tuple[ComponentName, ...] = (
    ComponentName.EVENTS,
    ComponentName.STATE,
    ComponentName.REQUESTS,
    ComponentName.REPORTING,
)


@dataclass
class Runtime:
    """The wired service graph of one execution context."""

    settings: Settings
    session_id: str
    scheduler: Scheduler
    bus: EventBus
    config: RequestConfig
    transport: Transport
    monitor: ConnectionMonitor
    coordinator: RequestCoordinator
    store: StateStore
    reporter: ErrorReporter
    notices: NoticeBoard
    registry: ComponentRegistry
    degradation: DegradationController
    orchestrator: RecoveryOrchestrator
    started: bool = False
    _subscriptions: list[str] = field(default_factory=list, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        transport: Transport | None = None,
        durable: StorageBackend | None = None,
        session: StorageBackend | None = None,
        channel_hub: ChannelHub | None = None,
        scheduler: Scheduler | None = None,
        environment: EnvironmentProbe | None = None,
        document: Document | None = None,
        session_id: str | None = None,
    ) -> Runtime:
        """Construct every service and wire their collaborations.

        Args:
            settings: Resolved settings; defaults are used when omitted.
            transport: Network primitives; an ``HttpxTransport`` by default.
            durable: Durable state storage; JSON files under
                ``settings.state.storage_directory`` by default.
            session: Session-scoped state storage; in-memory by default.
            channel_hub: Broadcast hub shared with sibling contexts.
            scheduler: Timer source; the running asyncio loop by default.
            environment: Host facts attached to error reports.
            document: Element tree for delegated event dispatch.
            session_id: Identifier sent with error reports.

        Returns:
            An unstarted ``Runtime``.
        """
        settings = settings or Settings()
        scheduler = scheduler or AsyncioScheduler()
        session_id = session_id or generate_session_id()
        classifier = ErrorClassifier()

        config = RequestConfig.from_settings(settings.transport, session_id)
        transport = transport or HttpxTransport(config)
        bus = EventBus(document, scheduler, settings.events)
        monitor = ConnectionMonitor(scheduler)
        coordinator = RequestCoordinator(
            transport, bus, config, settings.requests, scheduler, monitor
        )
        store = StateStore(
            bus,
            durable
            if durable is not None
            else JsonFileStorage(settings.state.storage_directory),
            session if session is not None else MemoryStorage(),
            settings=settings.state,
            scheduler=scheduler,
            channel_hub=channel_hub,
            classifier=classifier,
        )
        reporter = ErrorReporter(transport, config, settings.reporting, scheduler)
        notices = NoticeBoard(bus)

        registry = ComponentRegistry()
        registry.register(ComponentName.EVENTS, bus)
        registry.register(ComponentName.STATE, store)
        registry.register(ComponentName.REQUESTS, coordinator)
        registry.register(ComponentName.REPORTING, reporter)

        degradation = DegradationController(
            bus, notices, registry, settings.recovery, scheduler
        )
        orchestrator = RecoveryOrchestrator(
            bus,
            reporter,
            degradation,
            notices,
            registry,
            classifier=classifier,
            transport=transport,
            config=config,
            coordinator=coordinator,
            store=store,
            monitor=monitor,
            environment=environment,
            settings=settings.recovery,
            scheduler=scheduler,
        )
        coordinator.set_auth_refresher(orchestrator.refresh_authorization)

        runtime = cls(
            settings=settings,
            session_id=session_id,
            scheduler=scheduler,
            bus=bus,
            config=config,
            transport=transport,
            monitor=monitor,
            coordinator=coordinator,
            store=store,
            reporter=reporter,
            notices=notices,
            registry=registry,
            degradation=degradation,
            orchestrator=orchestrator,
        )
        runtime._subscriptions.append(
            bus.subscribe(EventKind.NETWORK_RESTORED, runtime._on_network_restored)
        )
        return runtime

    # ------------------------------------------------------------------
    # Page lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> list[ComponentName]:
        """Initialize components in dependency order.

        Failures are announced as ``component.init_failed`` events for the
        orchestrator to recover; they are not raised.

        Returns:
            Names of the components whose initialization failed.
        """
        await self.orchestrator.init()
        failed: list[ComponentName] = []
        for name in STARTUP_ORDER:
            if name not in self.registry:
                continue
            try:
                with component_context(name.value):
                    await self.registry.init_component(name)
            except ComponentError as exc:
                failed.append(name)
                self.bus.emit(
                    EventKind.COMPONENT_INIT_FAILED,
                    ComponentInitFailed(component=name.value, message=str(exc)),
                )
        self.started = True
        logger.info(
            "runtime_started",
            session_id=self.session_id,
            failed=[name.value for name in failed],
        )
        return failed

    def page_hide(self) -> int:
        """Reclaim stale event handlers."""
        return self.bus.reclaim()

    async def page_unload(self) -> None:
        """Flush pending work and tear every service down."""
        self.coordinator.flush()
        await self.reporter.flush_all()
        self.orchestrator.destroy()
        self.degradation.destroy()
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        self.registry.destroy_all()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()
        self.started = False
        logger.info("runtime_unloaded", session_id=self.session_id)

    def set_online(self, online: bool) -> None:
        self.coordinator.set_online(online)

    def report_error(
        self, error: ErrorInfo | BaseException, **context: Any
    ) -> ErrorEvent:
        return self.orchestrator.report_error(error, context or None)

    def _on_network_restored(self, payload: ConnectivityRestored) -> None:
        self.coordinator.set_online(True)
        drained = self.coordinator.flush()
        logger.debug("retry_queue_drained", source=payload.source, drained=drained)
