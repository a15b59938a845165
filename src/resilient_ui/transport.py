"""Outbound network primitives used by the request coordinator.

``HttpxTransport`` posts every operation as JSON to a single endpoint and
expects a ``{success, data | error}`` envelope back. Failures surface as
``TransportError`` subclasses so the coordinator can decide whether to
retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from resilient_ui.exceptions import (
    ConnectionFailure,
    HTTPStatusFailure,
    OperationTimeout,
    RequestRejected,
)

if TYPE_CHECKING:
    from resilient_ui.config import TransportSettings
    from resilient_ui.reporting.models import ErrorReportBatch

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_PROBE_TIMEOUT = 5.0


class OutboundRequest(BaseModel):
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    token: str = ""


class ResponseEnvelope(BaseModel):
    """Server reply; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    data: Any = None
    error: Any = None


class RequestConfig(BaseModel):
    """Shared, mutable request configuration.

    A token refresh swaps ``token`` in place; every attempt reads the
    current value.
    """

    model_config = ConfigDict(validate_assignment=True)

    endpoint: str
    probe_url: str | None = None
    token: str = ""
    session_id: str = ""
    timeout: float = Field(default=30.0, gt=0.0)

    @classmethod
    def from_settings(
        cls, settings: TransportSettings, session_id: str = ""
    ) -> RequestConfig:
        return cls(
            endpoint=settings.endpoint,
            probe_url=settings.probe_url,
            token=settings.token,
            session_id=session_id,
            timeout=settings.timeout,
        )


class Transport(Protocol):
    """Raw network primitives consumed by the runtime."""

    async def send(
        self, request: OutboundRequest, timeout: float
    ) -> ResponseEnvelope: ...

    async def probe(self) -> bool: ...

    async def refresh_token(self) -> str: ...

    async def report_errors(self, batch: ErrorReportBatch) -> ResponseEnvelope: ...


def _error_payload(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error", body)
    if isinstance(error, dict):
        return error
    return {"message": str(error)}


class HttpxTransport:
    """``Transport`` implementation on top of ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: RequestConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    async def send(self, request: OutboundRequest, timeout: float) -> ResponseEnvelope:
        """POST ``{action, token, **payload}`` and parse the envelope.

        Raises:
            OperationTimeout: The request did not finish within ``timeout``.
            ConnectionFailure: The server could not be reached.
            HTTPStatusFailure: The server answered with status >= 400.
            RequestRejected: The envelope was malformed or ``success`` false.
        """
        body = {"action": request.kind, "token": request.token, **request.payload}
        try:
            response = await self._client.post(
                self._config.endpoint, json=body, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            raise OperationTimeout("Request timed out") from exc
        except httpx.TransportError as exc:
            raise ConnectionFailure(str(exc) or "Network error") from exc

        if response.status_code >= 400:
            raise HTTPStatusFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
                payload=_error_payload(response),
            )

        try:
            envelope = ResponseEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RequestRejected(
                "Malformed response envelope", status=response.status_code
            ) from exc

        if not envelope.success:
            error = envelope.error
            payload = error if isinstance(error, dict) else {"message": str(error)}
            raise RequestRejected(
                str(payload.get("message") or "Request rejected by server"),
                status=response.status_code,
                payload=payload,
            )
        return envelope

    async def probe(self) -> bool:
        """Issue a HEAD request against the probe URL.

        Returns:
            True when the server answered with a non-5xx status.
        """
        url = self._config.probe_url or self._config.endpoint
        try:
            response = await self._client.head(
                url, timeout=min(_PROBE_TIMEOUT, self._config.timeout)
            )
        except httpx.HTTPError as exc:
            logger.debug("probe_failed", url=url, error=str(exc))
            return False
        return response.status_code < 500

    async def refresh_token(self) -> str:
        envelope = await self.send(
            OutboundRequest(kind="refresh_token", token=self._config.token),
            timeout=self._config.timeout,
        )
        data = envelope.data if isinstance(envelope.data, dict) else {}
        token = data.get("token")
        if not isinstance(token, str) or not token:
            msg = "Token refresh response carried no token"
            raise RequestRejected(msg, status=200)
        return token

    async def report_errors(self, batch: ErrorReportBatch) -> ResponseEnvelope:
        return await self.send(
            OutboundRequest(
                kind="report_client_errors",
                payload=batch.model_dump(mode="json", by_alias=True),
                token=self._config.token,
            ),
            timeout=self._config.timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
