"""Unit tests for resilient_ui.exceptions - centralized exception hierarchy."""

from __future__ import annotations

import pytest

from resilient_ui.exceptions import (
    ComponentError,
    ConnectionFailure,
    HTTPStatusFailure,
    OperationTimeout,
    RequestError,
    RequestRejected,
    ResilientUIError,
    StateCorruptionError,
    StateError,
    StorageError,
    TransportError,
)


class TestResilientUIError:
    """Base exception class tests."""

    def test_inherits_from_exception(self) -> None:
        assert issubclass(ResilientUIError, Exception)

    def test_catches_all_subclasses(self) -> None:
        subclasses = [
            TransportError,
            ConnectionFailure,
            OperationTimeout,
            HTTPStatusFailure,
            RequestRejected,
            RequestError,
            StateError,
            StateCorruptionError,
            StorageError,
            ComponentError,
        ]
        for cls in subclasses:
            try:
                raise cls("sub error")
            except ResilientUIError:
                pass

    def test_state_family(self) -> None:
        assert issubclass(StateCorruptionError, StateError)
        assert issubclass(StorageError, StateError)
        assert not issubclass(ComponentError, StateError)


class TestTransportError:
    """Transport failures carry status and payload."""

    def test_defaults(self) -> None:
        exc = ConnectionFailure("refused")
        assert exc.message == "refused"
        assert exc.status == 0
        assert exc.payload is None
        assert str(exc) == "refused"

    @pytest.mark.parametrize(
        ("cls", "error_type"),
        [
            (TransportError, "error"),
            (ConnectionFailure, "error"),
            (OperationTimeout, "timeout"),
            (HTTPStatusFailure, "http"),
            (RequestRejected, "rejected"),
        ],
    )
    def test_error_type(self, cls: type[TransportError], error_type: str) -> None:
        assert cls("x").error_type == error_type

    def test_rejected_keeps_payload(self) -> None:
        exc = RequestRejected("invalid", status=200, payload={"field": "theme"})
        assert exc.status == 200
        assert exc.payload == {"field": "theme"}


class TestHTTPStatusFailure:
    """Status classification helpers."""

    def test_not_found_is_client_error(self) -> None:
        exc = HTTPStatusFailure("missing", status=404)
        assert exc.is_client_error
        assert not exc.is_server_error
        assert not exc.is_authorization_error

    @pytest.mark.parametrize("status", [401, 403])
    def test_authorization_statuses(self, status: int) -> None:
        exc = HTTPStatusFailure("denied", status=status)
        assert exc.is_client_error
        assert exc.is_authorization_error

    def test_service_unavailable_is_server_error(self) -> None:
        exc = HTTPStatusFailure("unavailable", status=503)
        assert exc.is_server_error
        assert not exc.is_client_error


class TestRequestError:
    """Normalized operation rejection."""

    def test_defaults(self) -> None:
        exc = RequestError("failed")
        assert exc.status == 0
        assert exc.error_type == "error"
        assert exc.attempts == 0
        assert not exc.retryable

    def test_attributes(self) -> None:
        exc = RequestError(
            "Request timed out",
            status=0,
            error_type="timeout",
            attempts=3,
            operation_id="op_1",
            kind="save_settings",
            retryable=True,
        )
        assert str(exc) == "Request timed out"
        assert exc.error_type == "timeout"
        assert exc.attempts == 3
        assert exc.operation_id == "op_1"
        assert exc.kind == "save_settings"
        assert exc.retryable
