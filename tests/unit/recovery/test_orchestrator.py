"""Unit tests for recovery orchestration."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

import pytest

from resilient_ui.components import ComponentName, ComponentRegistry
from resilient_ui.config import RecoverySettings, RequestSettings
from resilient_ui.connection import ConnectionMonitor
from resilient_ui.events.models import (
    ComponentInitFailed,
    EventKind,
    RequestErrorInfo,
    RequestFailed,
)
from resilient_ui.exceptions import ConnectionFailure
from resilient_ui.notices import NoticeBoard
from resilient_ui.recovery.degradation import DegradationController
from resilient_ui.recovery.orchestrator import RecoveryOrchestrator, StaticEnvironment
from resilient_ui.reporting.models import ErrorCategory, ErrorInfo, RecoveryStrategy
from resilient_ui.reporting.reporter import ErrorReporter
from resilient_ui.requests import RequestCoordinator
from resilient_ui.state.store import StateStore

if TYPE_CHECKING:
    from conftest import EventRecorder, ScriptedTransport

    from resilient_ui.config import ReportingSettings
    from resilient_ui.events.bus import EventBus
    from resilient_ui.scheduler import ManualScheduler
    from resilient_ui.state.storage import MemoryStorage
    from resilient_ui.transport import RequestConfig


class _Widget:
    def __init__(self, fail_init: bool = False) -> None:
        self.initialized = False
        self.fail_init = fail_init
        self.init_calls = 0

    async def init(self) -> None:
        self.init_calls += 1
        if self.fail_init:
            raise RuntimeError("template missing")
        self.initialized = True

    def destroy(self) -> None:
        self.initialized = False


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def notices(bus: EventBus) -> NoticeBoard:
    return NoticeBoard(bus)


@pytest.fixture()
def registry() -> ComponentRegistry:
    return ComponentRegistry()


@pytest.fixture()
def degradation(
    bus: EventBus,
    notices: NoticeBoard,
    registry: ComponentRegistry,
    scheduler: ManualScheduler,
) -> DegradationController:
    return DegradationController(bus, notices, registry, scheduler=scheduler)


@pytest.fixture()
def reporter(
    transport: ScriptedTransport,
    request_config: RequestConfig,
    reporting_settings: ReportingSettings,
    scheduler: ManualScheduler,
) -> ErrorReporter:
    return ErrorReporter(
        transport, request_config, settings=reporting_settings, scheduler=scheduler
    )


@pytest.fixture()
def monitor(scheduler: ManualScheduler) -> ConnectionMonitor:
    return ConnectionMonitor(scheduler)


@pytest.fixture()
def orchestrator(
    bus: EventBus,
    reporter: ErrorReporter,
    degradation: DegradationController,
    notices: NoticeBoard,
    registry: ComponentRegistry,
    transport: ScriptedTransport,
    request_config: RequestConfig,
    monitor: ConnectionMonitor,
    scheduler: ManualScheduler,
) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(
        bus,
        reporter,
        degradation,
        notices,
        registry,
        transport=transport,
        config=request_config,
        monitor=monitor,
        environment=StaticEnvironment(
            origin_url="https://app.test/settings",
            viewport_size={"width": 1280, "height": 720},
        ),
        scheduler=scheduler,
    )


def _titles(notices: NoticeBoard) -> list[str]:
    return [n.title for n in notices.active]


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class TestReportError:
    """Enrichment, classification and queueing."""

    @pytest.mark.asyncio
    async def test_event_carries_environment_snapshot(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        reporter: ErrorReporter,
        events: EventRecorder,
    ) -> None:
        tabs = _Widget()
        tabs.initialized = True
        registry.register(ComponentName.TABS, tabs)

        event = orchestrator.report_error(
            ErrorInfo(message="Failed to fetch"), {"operation": "save"}, recover=False
        )

        assert event.id.startswith("err_1700000000000_")
        assert event.timestamp == 1_700_000_000_000
        assert event.context.origin == "https://app.test/settings"
        assert event.context.viewport == {"width": 1280, "height": 720}
        assert event.context.components == {
            "tabs": {"initialized": True, "failed": False}
        }
        assert event.context.connection is not None
        assert event.context.connection["online"] is True
        assert event.context.extra == {"operation": "save"}
        assert event.classification.category is ErrorCategory.NETWORK
        assert reporter.pending() == [event]
        assert events.of(EventKind.ERROR_REPORTED)[0].error == event
        assert not orchestrator.recovering(RecoveryStrategy.NETWORK)

    @pytest.mark.asyncio
    async def test_accepts_exceptions(self, orchestrator: RecoveryOrchestrator) -> None:
        event = orchestrator.report_error(ValueError("x is undefined"), recover=False)

        assert event.message == "x is undefined"
        assert event.classification.category is ErrorCategory.COMPONENT

    @pytest.mark.asyncio
    async def test_auto_recovery_can_be_disabled(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
    ) -> None:
        orchestrator = RecoveryOrchestrator(
            bus,
            reporter,
            degradation,
            notices,
            registry,
            settings=RecoverySettings(auto_recovery=False),
            scheduler=scheduler,
        )
        orchestrator.report_error(ErrorInfo(message="Request timeout"))

        assert not orchestrator.recovering(RecoveryStrategy.NETWORK)
        assert orchestrator.metrics.errors_reported == 1

    def test_recovery_skipped_without_running_loop(
        self, orchestrator: RecoveryOrchestrator, reporter: ErrorReporter
    ) -> None:
        event = orchestrator.report_error(ErrorInfo(message="Request timeout"))

        assert reporter.pending() == [event]
        assert not orchestrator.recovering(RecoveryStrategy.NETWORK)
        assert orchestrator.statistics()["active_recoveries"] == []

    @pytest.mark.asyncio
    async def test_critical_goes_straight_to_emergency(
        self,
        orchestrator: RecoveryOrchestrator,
        degradation: DegradationController,
    ) -> None:
        orchestrator.report_error(ErrorInfo(message="Out of memory"))

        assert degradation.emergency
        assert degradation.level == degradation.max_level
        assert orchestrator.metrics.emergencies == 1
        assert orchestrator.statistics()["active_recoveries"] == []


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestNetworkRecovery:
    """Probe-based connectivity recovery."""

    @pytest.mark.asyncio
    async def test_probe_success_restores_network(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        event = orchestrator.report_error(ErrorInfo(message="Failed to fetch"))
        assert orchestrator.recovering(RecoveryStrategy.NETWORK)

        await scheduler.advance(1.9)
        assert transport.probes == 0
        await scheduler.advance(0.1)

        assert transport.probes == 1
        assert events.of(EventKind.NETWORK_RESTORED)[0].source == "recovery"
        recovered = events.of(EventKind.ERROR_RECOVERED)
        assert [(r.error_id, r.strategy) for r in recovered] == [
            (event.id, "network_recovery")
        ]
        assert orchestrator.metrics.recovered == 1
        assert orchestrator.attempts_for(event.id) == 0
        assert not orchestrator.recovering(RecoveryStrategy.NETWORK)

    @pytest.mark.asyncio
    async def test_exhaustion_raises_degradation(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        degradation: DegradationController,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        transport.probe_result = False
        event = orchestrator.report_error(ErrorInfo(message="Connection refused"))

        await scheduler.advance(2)
        await scheduler.advance(4)
        assert orchestrator.attempts_for(event.id) == 2
        await scheduler.advance(4)

        assert transport.probes == 3
        failed = events.of(EventKind.ERROR_RECOVERY_FAILED)
        assert [(f.error_id, f.attempts, f.message) for f in failed] == [
            (event.id, 3, "Network test failed")
        ]
        assert degradation.level == 1
        assert orchestrator.metrics.recovery_exhausted == 1
        assert orchestrator.statistics()["tracked_errors"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_errors_share_one_run(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        orchestrator.report_error(ErrorInfo(message="Request timeout"))
        orchestrator.report_error(ErrorInfo(message="Failed to fetch"))

        await scheduler.advance(2)

        assert transport.probes == 1
        assert orchestrator.metrics.coalesced == 1
        assert len(events.of(EventKind.ERROR_RECOVERED)) == 1

    @pytest.mark.asyncio
    async def test_missing_transport_fails(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        orchestrator = RecoveryOrchestrator(
            bus, reporter, degradation, notices, registry, scheduler=scheduler
        )
        orchestrator.report_error(ErrorInfo(message="Network unreachable"))

        for delay in (2, 4, 4):
            await scheduler.advance(delay)

        failed = events.of(EventKind.ERROR_RECOVERY_FAILED)
        assert failed[0].message == "No transport to probe"


class TestSecurityRecovery:
    """Token refresh."""

    @pytest.mark.asyncio
    async def test_refreshes_token(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        request_config: RequestConfig,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        transport.tokens = ["renewed-token"]
        orchestrator.report_error(ErrorInfo(message="Invalid nonce"))

        await scheduler.advance(1)

        assert request_config.token == "renewed-token"
        assert len(events.of(EventKind.TOKEN_REFRESHED)) == 1
        assert events.of(EventKind.ERROR_RECOVERED)[0].strategy == "security_recovery"

    @pytest.mark.asyncio
    async def test_exhaustion_shows_session_notice(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        notices: NoticeBoard,
        degradation: DegradationController,
        scheduler: ManualScheduler,
    ) -> None:
        transport.tokens = [ConnectionFailure("down"), ConnectionFailure("down")]
        orchestrator.report_error(ErrorInfo(message="403 Forbidden"))

        await scheduler.advance(1)
        await scheduler.advance(2)

        assert transport.refreshes == 2
        assert orchestrator.metrics.strategy_exceptions == 2
        assert _titles(notices) == ["Session expired"]
        assert degradation.level == 1

    @pytest.mark.asyncio
    async def test_refresh_authorization_hook(
        self,
        orchestrator: RecoveryOrchestrator,
        transport: ScriptedTransport,
        request_config: RequestConfig,
    ) -> None:
        transport.tokens = ["hook-token", ConnectionFailure("down")]

        assert await orchestrator.refresh_authorization()
        assert request_config.token == "hook-token"
        assert not await orchestrator.refresh_authorization()
        assert request_config.token == "hook-token"

    @pytest.mark.asyncio
    async def test_refresh_without_transport(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
    ) -> None:
        orchestrator = RecoveryOrchestrator(
            bus, reporter, degradation, notices, registry, scheduler=scheduler
        )
        assert not await orchestrator.refresh_authorization()


class TestStateRecovery:
    """Fallback to the default document."""

    @pytest.mark.asyncio
    async def test_store_falls_back(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        durable: MemoryStorage,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        store = StateStore(bus, durable, scheduler=scheduler)
        await store.init()
        orchestrator = RecoveryOrchestrator(
            bus,
            reporter,
            degradation,
            notices,
            registry,
            store=store,
            scheduler=scheduler,
        )

        orchestrator.report_error(ErrorInfo(message="State document corrupt"))
        await orchestrator.wait_idle()

        restored = events.of(EventKind.STATE_RECOVERED)
        assert len(restored) == 1
        assert restored[0].fallback_used
        assert any("_backup_" in key for key in durable.keys())
        assert events.of(EventKind.ERROR_RECOVERED)[0].strategy == "state_recovery"
        store.destroy()

    @pytest.mark.asyncio
    async def test_without_store_reports_failure(
        self,
        orchestrator: RecoveryOrchestrator,
        notices: NoticeBoard,
        events: EventRecorder,
    ) -> None:
        orchestrator.report_error(ErrorInfo(message="Unsupported state version 7"))
        await orchestrator.wait_idle()

        assert events.of(EventKind.ERROR_RECOVERY_FAILED)[0].attempts == 1
        assert _titles(notices) == ["Settings could not be restored"]


class TestComponentRecovery:
    """Re-initialization of named components."""

    @pytest.mark.asyncio
    async def test_reinitializes_component(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        menu = _Widget()
        registry.register(ComponentName.MENU, menu)

        orchestrator.report_error(ErrorInfo(message="render glitch", component="menu"))
        await scheduler.advance(1.5)

        assert menu.initialized
        assert [e.component for e in events.of(EventKind.COMPONENT_RECOVERED)] == [
            "menu"
        ]

    @pytest.mark.asyncio
    async def test_concurrent_components_recover_independently(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        tabs, menu = _Widget(), _Widget()
        registry.register(ComponentName.TABS, tabs)
        registry.register(ComponentName.MENU, menu)

        for name in ("tabs", "menu"):
            orchestrator.report_error(
                ErrorInfo(message="Component initialization failed", component=name)
            )

        assert orchestrator.statistics()["active_recoveries"] == [
            "component_recovery:menu",
            "component_recovery:tabs",
        ]
        await scheduler.advance(30)
        await orchestrator.wait_idle()

        assert (tabs.init_calls, menu.init_calls) == (1, 1)
        assert orchestrator.metrics.coalesced == 0
        recovered = [e.component for e in events.of(EventKind.COMPONENT_RECOVERED)]
        assert sorted(recovered) == ["menu", "tabs"]

    @pytest.mark.asyncio
    async def test_same_component_joins_running_recovery(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        scheduler: ManualScheduler,
    ) -> None:
        menu = _Widget()
        registry.register(ComponentName.MENU, menu)

        orchestrator.report_error(ErrorInfo(message="render glitch", component="menu"))
        orchestrator.report_error(ErrorInfo(message="render glitch", component="menu"))
        await scheduler.advance(1.5)

        assert menu.init_calls == 1
        assert orchestrator.metrics.coalesced == 1

    @pytest.mark.asyncio
    async def test_exhaustion_marks_component_failed(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        degradation: DegradationController,
        notices: NoticeBoard,
        scheduler: ManualScheduler,
    ) -> None:
        menu = _Widget(fail_init=True)
        registry.register(ComponentName.MENU, menu)

        orchestrator.report_error(ErrorInfo(message="render glitch", component="menu"))
        for delay in (1.5, 3, 3):
            await scheduler.advance(delay)

        assert menu.init_calls == 3
        assert degradation.failed_components == frozenset({"menu"})
        assert degradation.enabled
        assert degradation.level == 1
        assert _titles(notices) == ["Component unavailable", "Limited functionality"]

    @pytest.mark.asyncio
    async def test_unidentified_component_degrades(
        self,
        orchestrator: RecoveryOrchestrator,
        degradation: DegradationController,
        scheduler: ManualScheduler,
        events: EventRecorder,
    ) -> None:
        orchestrator.report_error(ErrorInfo(message="x is undefined"))
        await scheduler.advance(1.5)

        assert degradation.enabled
        recovered = events.of(EventKind.ERROR_RECOVERED)
        assert recovered[0].message == "Graceful degradation enabled"

    @pytest.mark.asyncio
    async def test_component_init_failed_event(
        self,
        orchestrator: RecoveryOrchestrator,
        registry: ComponentRegistry,
        bus: EventBus,
        scheduler: ManualScheduler,
    ) -> None:
        tabs = _Widget()
        registry.register(ComponentName.TABS, tabs)
        await orchestrator.init()

        bus.emit(
            EventKind.COMPONENT_INIT_FAILED,
            ComponentInitFailed(component="tabs", message="markup missing"),
        )
        await scheduler.advance(1.5)

        assert tabs.initialized
        orchestrator.destroy()


# ---------------------------------------------------------------------------
# Request failures
# ---------------------------------------------------------------------------


def _failed(status: int, message: str, retryable: bool) -> RequestFailed:
    return RequestFailed(
        operation_id="req_1",
        kind="save_settings",
        attempts=3,
        payload={"theme": "dark"},
        error=RequestErrorInfo(
            status=status, message=message, error_type="error", retryable=retryable
        ),
    )


class TestRequestFailures:
    """Terminal request failures published by the coordinator."""

    @pytest.fixture()
    def coordinator(
        self,
        transport: ScriptedTransport,
        bus: EventBus,
        request_config: RequestConfig,
        scheduler: ManualScheduler,
    ) -> RequestCoordinator:
        return RequestCoordinator(
            transport,
            bus,
            request_config,
            RequestSettings(),
            scheduler,
            rng=random.Random(3),
        )

    @pytest.mark.asyncio
    async def test_retryable_failure_offers_retry(
        self,
        bus: EventBus,
        reporter: ErrorReporter,
        degradation: DegradationController,
        notices: NoticeBoard,
        registry: ComponentRegistry,
        transport: ScriptedTransport,
        coordinator: RequestCoordinator,
        scheduler: ManualScheduler,
    ) -> None:
        orchestrator = RecoveryOrchestrator(
            bus,
            reporter,
            degradation,
            notices,
            registry,
            transport=transport,
            coordinator=coordinator,
            scheduler=scheduler,
        )
        await orchestrator.init()

        bus.emit(EventKind.REQUEST_FAILED, _failed(0, "Connection refused", True))

        reported = reporter.pending()[0]
        assert reported.message == (
            "Network request save_settings failed: Connection refused"
        )
        assert reported.context.extra == {
            "operation_id": "req_1",
            "status": 0,
            "attempts": 3,
        }
        assert orchestrator.recovering(RecoveryStrategy.NETWORK)
        notice = notices.active[0]
        assert notice.title == "Request failed"

        operation_id = await notices.invoke(notice.id, "Retry")
        await scheduler.advance(0)

        assert operation_id.startswith("req_")
        assert transport.sent[-1].kind == "save_settings"
        assert transport.sent[-1].payload == {"theme": "dark"}
        orchestrator.destroy()

    @pytest.mark.asyncio
    async def test_client_error_is_reported_not_recovered(
        self,
        orchestrator: RecoveryOrchestrator,
        bus: EventBus,
        reporter: ErrorReporter,
        notices: NoticeBoard,
    ) -> None:
        await orchestrator.init()

        bus.emit(EventKind.REQUEST_FAILED, _failed(422, "Invalid color", False))

        assert reporter.pending()[0].message == (
            "Request save_settings rejected: Invalid color"
        )
        assert orchestrator.statistics()["active_recoveries"] == []
        assert notices.active == []

    @pytest.mark.asyncio
    async def test_authorization_failure_refreshes_token(
        self,
        orchestrator: RecoveryOrchestrator,
        bus: EventBus,
        transport: ScriptedTransport,
        request_config: RequestConfig,
        scheduler: ManualScheduler,
    ) -> None:
        await orchestrator.init()
        transport.tokens = ["after-401"]

        bus.emit(EventKind.REQUEST_FAILED, _failed(401, "HTTP 401", False))
        assert orchestrator.recovering(RecoveryStrategy.SECURITY)
        await scheduler.advance(1)

        assert request_config.token == "after-401"

    @pytest.mark.asyncio
    async def test_destroy_unsubscribes_and_cancels(
        self,
        orchestrator: RecoveryOrchestrator,
        bus: EventBus,
        reporter: ErrorReporter,
    ) -> None:
        await orchestrator.init()
        orchestrator.report_error(ErrorInfo(message="Request timeout"))

        orchestrator.destroy()
        bus.emit(EventKind.REQUEST_FAILED, _failed(0, "timeout", True))

        assert reporter.queue_size == 1
        assert orchestrator.statistics()["active_recoveries"] == []
        assert not orchestrator.initialized
