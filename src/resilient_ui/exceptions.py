"""Centralized exception hierarchy for the resilient-ui package.

All domain-specific exceptions inherit from ``ResilientUIError`` so
callers can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations

from typing import Any


class ResilientUIError(Exception):
    """Base exception for all resilient-ui errors."""


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class TransportError(ResilientUIError):
    """Raised by a transport when a network operation fails.

    Attributes:
        status: HTTP status code, ``0`` for transport-level failures.
        payload: Structured error payload parsed from the response, if any.
    """

    error_type = "error"

    def __init__(
        self,
        message: str,
        status: int = 0,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload


class ConnectionFailure(TransportError):
    """The request never reached the server (DNS, refused, reset)."""


class OperationTimeout(TransportError):
    """The request did not complete before its timeout elapsed."""

    error_type = "timeout"


class HTTPStatusFailure(TransportError):
    """The server answered with an HTTP error status."""

    error_type = "http"

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    @property
    def is_authorization_error(self) -> bool:
        return self.status in (401, 403)


class RequestRejected(TransportError):
    """The server answered with a ``success: false`` envelope."""

    error_type = "rejected"


# ---------------------------------------------------------------------------
# Request outcome errors
# ---------------------------------------------------------------------------


class RequestError(ResilientUIError):
    """Normalized rejection of a coordinated operation.

    Attributes:
        status: HTTP status (``0`` when the server was never reached).
        message: Human-readable failure message.
        error_type: One of ``timeout``, ``error``, ``http``, ``rejected``.
        payload: Structured error payload from the server, if present.
        attempts: Number of attempts made before giving up.
        operation_id: Identifier of the failed operation.
        kind: Action identifier of the failed operation.
        retryable: Whether the final failure was transient.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        error_type: str = "error",
        payload: dict[str, Any] | None = None,
        attempts: int = 0,
        operation_id: str = "",
        kind: str = "",
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_type = error_type
        self.payload = payload
        self.attempts = attempts
        self.operation_id = operation_id
        self.kind = kind
        self.retryable = retryable


# ---------------------------------------------------------------------------
# State errors
# ---------------------------------------------------------------------------


class StateError(ResilientUIError):
    """Base exception for state store operations."""


class StateCorruptionError(StateError):
    """Raised when a persisted state document fails integrity checks."""


class StorageError(StateError):
    """Raised when a storage backend cannot read or write a record."""


# ---------------------------------------------------------------------------
# Component errors
# ---------------------------------------------------------------------------


class ComponentError(ResilientUIError):
    """Raised when a registered component fails to initialize."""
