"""Shared pytest fixtures for the resilient-ui test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from resilient_ui.config import (
    RecoverySettings,
    ReportingSettings,
    Settings,
    StateSettings,
)
from resilient_ui.events.bus import EventBus
from resilient_ui.events.models import EventKind
from resilient_ui.exceptions import ConnectionFailure
from resilient_ui.reporting.models import ErrorReportBatch
from resilient_ui.scheduler import ManualScheduler
from resilient_ui.state.storage import MemoryStorage
from resilient_ui.transport import OutboundRequest, RequestConfig, ResponseEnvelope

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Transport double that replays a script of outcomes.

    Each ``send`` pops the next entry of ``responses``: an exception is
    raised, ``HANG`` never completes, anything else is returned as the
    envelope's ``data``. An empty script answers ``{"ok": True}``.
    """

    HANG = object()

    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.sent: list[OutboundRequest] = []
        self.probe_result = True
        self.probes = 0
        self.tokens: list[Any] = ["fresh-token"]
        self.refreshes = 0
        self.batches: list[ErrorReportBatch] = []
        self.report_failures = 0

    async def send(self, request: OutboundRequest, timeout: float) -> ResponseEnvelope:
        self.sent.append(request)
        outcome = self.responses.pop(0) if self.responses else {"ok": True}
        if outcome is self.HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return ResponseEnvelope(success=True, data=outcome)

    async def probe(self) -> bool:
        self.probes += 1
        return self.probe_result

    async def refresh_token(self) -> str:
        self.refreshes += 1
        outcome = self.tokens.pop(0) if self.tokens else "fresh-token"
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def report_errors(self, batch: ErrorReportBatch) -> ResponseEnvelope:
        if self.report_failures:
            self.report_failures -= 1
            raise ConnectionFailure("reporting endpoint unreachable")
        self.batches.append(batch)
        return ResponseEnvelope(success=True, data={"received": len(batch.errors)})


class EventRecorder:
    """Records every typed signal published on a bus."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[EventKind, Any]] = []
        for kind in EventKind:
            bus.subscribe(kind, self._recorder(kind))

    def _recorder(self, kind: EventKind) -> Callable[[Any], None]:
        def _record(payload: Any) -> None:
            self.events.append((kind, payload))

        return _record

    def of(self, kind: EventKind) -> list[Any]:
        return [payload for k, payload in self.events if k is kind]

    def kinds(self) -> list[EventKind]:
        return [k for k, _ in self.events]


# ---------------------------------------------------------------------------
# Clock and bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def scheduler() -> ManualScheduler:
    """Deterministic clock; time only moves on ``await scheduler.advance(s)``."""
    return ManualScheduler()


@pytest.fixture()
def bus(scheduler: ManualScheduler) -> EventBus:
    return EventBus(scheduler=scheduler)


@pytest.fixture()
def events(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


@pytest.fixture()
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture()
def request_config() -> RequestConfig:
    return RequestConfig(
        endpoint="http://ui.test/ajax",
        token="initial-token",
        session_id="sess_test",
        timeout=10.0,
    )


# ---------------------------------------------------------------------------
# Storage and settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def durable() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def session_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def state_settings() -> StateSettings:
    return StateSettings(persist_retry_delay_seconds=0.5)


@pytest.fixture()
def reporting_settings() -> ReportingSettings:
    return ReportingSettings(max_queue_size=5, batch_size=2, interval_seconds=30.0)


@pytest.fixture()
def recovery_settings() -> RecoverySettings:
    return RecoverySettings()


@pytest.fixture()
def settings(tmp_path: Any) -> Settings:
    """Default settings with state files kept under ``tmp_path``."""
    return Settings(
        transport={"endpoint": "http://ui.test/ajax", "token": "initial-token"},
        state={"storage_directory": str(tmp_path / "state")},
    )
