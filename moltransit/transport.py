"""The transport interface and the JSON payload serializer."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

TransportHandler = Callable[[Any], None]
ValidateMsgFunc = Callable[[Any], bool]


class TransportError(Exception):
    """Raised when a transport cannot do what was asked of it."""


class NotConnectedError(TransportError):
    """Raised when a transport is used while it has no connection."""


class JsonSerializer:
    """Turns payloads into compact JSON bytes and back."""

    def payload_to_bytes(self, payload: Any) -> bytes:
        try:
            return json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"cannot serialize payload: {exc}") from exc

    def bytes_to_payload(self, data: bytes) -> Any:
        try:
            return json.loads(data)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"cannot deserialize payload: {exc}") from exc


class Transport(ABC):
    """A message transport: connects, subscribes to topics and publishes."""

    prefix: str = ""
    node_id: str = ""
    serializer: Optional[JsonSerializer] = None

    @abstractmethod
    def connect(self) -> None:
        """Open the connection; raise TransportError on failure."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection; raise TransportError on failure."""

    @abstractmethod
    def subscribe(self, command: str, node_id: str, handler: TransportHandler) -> None:
        """Call ``handler`` for every message on the topic of command and node."""

    @abstractmethod
    def publish(self, command: str, node_id: str, message: Any) -> None:
        """Send ``message`` to the topic of command and node."""

    def topic_name(self, command: str, node_id: str) -> str:
        """Return ``prefix.command`` or ``prefix.command.node_id``."""
        parts = [self.prefix, command]
        if node_id:
            parts.append(node_id)
        return ".".join(parts)