"""Same-origin broadcast channels between execution contexts.

``ChannelHub`` plays the role of the origin: every endpoint opened with
the same name receives the messages posted by the others, never its own.
Messages are JSON round-tripped and delivered on a later loop iteration.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MessageListener = Callable[[Any], None]


class BroadcastChannel:
    """One endpoint of a named channel."""

    def __init__(self, hub: ChannelHub, name: str) -> None:
        self._hub = hub
        self.name = name
        self._listeners: list[MessageListener] = []
        self.closed = False

    def post(self, message: Any) -> None:
        """Send ``message`` to every other open endpoint of this channel.

        Raises:
            RuntimeError: If the endpoint is closed.
            TypeError: If the message is not JSON-serializable.
        """
        if self.closed:
            msg = f"Channel {self.name!r} is closed"
            raise RuntimeError(msg)
        encoded = json.dumps(message)
        self._hub._broadcast(self, encoded)

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._listeners.clear()
            self._hub._detach(self)

    def _receive(self, encoded: str) -> None:
        if self.closed:
            return
        message = json.loads(encoded)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                logger.error(
                    "channel_listener_failed", channel=self.name, error=str(exc)
                )


class ChannelHub:
    """Registry of open endpoints, grouped by channel name."""

    def __init__(self) -> None:
        self._endpoints: dict[str, list[BroadcastChannel]] = {}

    def open(self, name: str) -> BroadcastChannel:
        endpoint = BroadcastChannel(self, name)
        self._endpoints.setdefault(name, []).append(endpoint)
        return endpoint

    def endpoint_count(self, name: str) -> int:
        return len(self._endpoints.get(name, []))

    def _detach(self, endpoint: BroadcastChannel) -> None:
        endpoints = self._endpoints.get(endpoint.name, [])
        if endpoint in endpoints:
            endpoints.remove(endpoint)

    def _broadcast(self, sender: BroadcastChannel, encoded: str) -> None:
        loop = asyncio.get_running_loop()
        for endpoint in list(self._endpoints.get(sender.name, [])):
            if endpoint is not sender:
                loop.call_soon(endpoint._receive, encoded)
