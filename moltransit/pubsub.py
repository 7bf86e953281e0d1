"""Transit over a transport: requests, responses, events and node discovery.

The broker handed to :class:`PubSub` is duck typed. It provides:

* ``config``: settings read with defaults (``transporter``, ``namespace``,
  ``log_level``, ``request_timeout`` and ``neighbours_check_timeout`` in
  seconds, ``wait_for_neighbours_interval``, ``dont_wait_for_neighbours``,
  ``transporter_factory``);
* ``local_node``: has ``id``, ``export_as_map()`` and ``increase_sequence()``;
* ``bus``: has ``on(name, fn)``, ``once(name, fn)`` and ``emit(name, *values)``;
* ``instance_id``: a string;
* ``action_delegate(values)``: runs a remote request and returns its result
  (or a future of it), raising on failure;
* ``handle_remote_event(values)``: delivers a remote event.

Contexts passed to :meth:`PubSub.emit` and :meth:`PubSub.request` have ``id``,
``target_node_id``, ``payload`` and ``as_map()``.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from .memory import MemoryTransporter, SharedMemory
from .transport import JsonSerializer, NotConnectedError, Transport, TransportError
from .util import random_string
from .version import protocol_version


class DataType(IntEnum):
    """Kind of data carried by a packet."""

    UNDEFINED = 0
    NULL = 1
    JSON = 2
    BUFFER = 3


class RequestError(Exception):
    """A remote request failed, timed out or was cancelled."""


class UnsupportedTransporterError(TransportError):
    """The configured transporter is not available."""


def resolve_namespace(namespace: str) -> str:
    """Return the topic prefix for a namespace."""
    return f"MOL-{namespace}" if namespace else "MOL"


def parse_params_type(value: Any) -> str:
    """Return the params type of a request, ``"1"`` (null) when missing."""
    if value is None:
        return str(int(DataType.NULL))
    return str(value)


def _setting(config: Any, name: str, default: Any) -> Any:
    if config is None:
        return default
    return getattr(config, name, default)


def _format_duration(seconds: Optional[float]) -> str:
    return f"{float(seconds or 0):g}s"


def config_to_map(config: Any) -> dict[str, str]:
    """Summarise a broker configuration for INFO packets."""
    return {
        "logLevel": _setting(config, "log_level", "") or "",
        "transporter": _setting(config, "transporter", "") or "",
        "namespace": _setting(config, "namespace", "") or "",
        "requestTimeout": _format_duration(_setting(config, "request_timeout", None)),
    }


def _round_half_away(value: float) -> float:
    if value >= 0:
        return float(math.floor(value + 0.5))
    return -float(math.floor(-value + 0.5))


def _is_nats(name: str) -> bool:
    return "nats://" in name


def _is_kafka(name: str) -> bool:
    return "kafka://" in name


@dataclass
class _PendingRequest:
    context_id: str
    target_node_id: str
    future: Future
    timer: Optional[threading.Timer]

    def settle(self, *, result: Any = None, error: Optional[BaseException] = None) -> None:
        if self.timer is not None:
            self.timer.cancel()
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


class PubSub:
    """Transit implementation publishing and subscribing on a transport."""

    def __init__(self, broker: Any) -> None:
        self.broker = broker
        self.logger = logging.getLogger(__name__)
        self.serializer = JsonSerializer()
        self.transport: Optional[Transport] = None
        self.is_connected = False
        self.broker_started = False
        self.neighbours_timeout = _setting(broker.config, "neighbours_check_timeout", 0) or 0
        self._pending: dict[str, _PendingRequest] = {}
        self._pending_lock = threading.Lock()
        self._known_neighbours: dict[str, int] = {}
        self._neighbours_lock = threading.Lock()

        bus = broker.bus
        bus.on("$node.disconnected", self.on_node_disconnected)
        bus.on("$node.connected", self.on_node_connected)
        bus.on("$broker.started", self.on_broker_started)
        bus.on("$registry.service.added", self.on_service_added)

    # helpers

    @property
    def _node_id(self) -> str:
        return self.broker.local_node.id

    def _config(self, name: str, default: Any) -> Any:
        return _setting(self.broker.config, name, default)

    def _message(self, payload: dict[str, Any]) -> Any:
        try:
            return self.serializer.bytes_to_payload(self.serializer.payload_to_bytes(payload))
        except TransportError as exc:
            self.logger.error("Error serializing the payload: %r error: %s", payload, exc)
            raise TransportError(
                "Error trying to serialize the payload. "
                f"Likely issues with the action params. Error: {exc}"
            ) from exc

    def _publish(self, command: str, node_id: str, message: Any) -> None:
        if self.transport is None:
            raise NotConnectedError(f"no transport to publish {command} to {node_id!r}")
        self.transport.publish(command, node_id, message)

    # bus listeners

    def on_service_added(self, *args: Any) -> None:
        if not (self.is_connected and self.broker_started):
            return
        local = self._node_id
        if any(isinstance(v, dict) and v.get("nodeID") == local for v in args):
            self.broker.local_node.increase_sequence()
            self._broadcast_node_info("")

    def on_broker_started(self, *args: Any) -> None:
        if self.is_connected:
            self._broadcast_node_info("")
            self.broker_started = True

    def on_node_disconnected(self, *args: Any) -> None:
        node_id = args[0]
        with self._pending_lock:
            pending = [p for p in self._pending.values() if p.target_node_id == node_id]
            self.logger.debug(
                "onNodeDisconnected() nodeID: %s pending: %d", node_id, len(pending)
            )
            for request in pending:
                request.settle(
                    error=RequestError(
                        f"Node {node_id} disconnected. The request was canceled."
                    )
                )
                del self._pending[request.context_id]
        with self._neighbours_lock:
            self._known_neighbours.pop(node_id, None)

    def on_node_connected(self, *args: Any) -> None:
        node_id, neighbours = args[0], int(args[1])
        self.logger.debug("onNodeConnected() nodeID: %s neighbours: %d", node_id, neighbours)
        with self._neighbours_lock:
            self._known_neighbours[node_id] = neighbours

    # transport selection

    def _create_transport(self) -> Transport:
        factory = self._config("transporter_factory", None)
        name = self._config("transporter", "") or ""
        if factory is not None:
            self.logger.info("Transporter: Custom factory")
            transport = factory()
        elif name == "STAN" or _is_nats(name) or _is_kafka(name):
            raise UnsupportedTransporterError(f"transporter not available: {name}")
        else:
            self.logger.info("Transporter: Memory")
            transport = MemoryTransporter(SharedMemory(), self.logger.getChild("memory"))
        transport.prefix = resolve_namespace(self._config("namespace", "") or "")
        transport.node_id = self._node_id
        transport.serializer = self.serializer
        return transport

    # connection

    def connect(self) -> None:
        """Connect the transport and subscribe to every packet type."""
        if self.is_connected:
            return
        self.logger.debug("PubSub - Connecting transport...")
        self.transport = self._create_transport()
        try:
            self.transport.connect()
        except Exception as exc:
            self.logger.debug("PubSub - Error connecting transport - error: %s", exc)
            raise
        self.is_connected = True
        self.logger.debug("PubSub - Transport Connected!")
        self._subscribe()

    def disconnect(self) -> None:
        """Announce the node is leaving and disconnect the transport."""
        if not self.is_connected:
            return
        self.logger.info("PubSub - Disconnecting transport...")
        self._send_disconnect()
        self.is_connected = False
        self.transport.disconnect()

    def _subscribe(self) -> None:
        node_id = self._node_id
        subscribe = self.transport.subscribe
        subscribe("RES", node_id, self._validate(self._response_handler))
        subscribe("REQ", node_id, self._validate(self._request_handler))
        subscribe("EVENT", node_id, self._validate(self._event_handler))
        subscribe("HEARTBEAT", "", self._validate(self._registry_event("HEARTBEAT")))
        subscribe("DISCONNECT", "", self._validate(self._registry_event("DISCONNECT")))
        subscribe("INFO", "", self._validate(self._registry_event("INFO")))
        subscribe("INFO", node_id, self._validate(self._registry_event("INFO")))
        subscribe("DISCOVER", node_id, self._validate(self._discover_handler))
        subscribe("DISCOVER", "", self._validate(self._discover_handler))
        subscribe("PING", node_id, self._validate(self._ping_handler))
        subscribe("PONG", node_id, self._validate(self._pong_handler))

    def _send_disconnect(self) -> None:
        message = self._message({"sender": self._node_id, "ver": protocol_version()})
        self._publish("DISCONNECT", "", message)

    # neighbours

    def neighbours(self) -> int:
        """Number of known neighbour nodes."""
        with self._neighbours_lock:
            return len(self._known_neighbours)

    def expected_neighbours(self) -> int:
        """Average neighbour count announced by the known neighbours."""
        with self._neighbours_lock:
            if not self._known_neighbours:
                return 0
            return sum(self._known_neighbours.values()) // len(self._known_neighbours)

    def _wait_for_neighbours(self) -> bool:
        if self._config("dont_wait_for_neighbours", False):
            return True
        interval = self._config("wait_for_neighbours_interval", 0.1) or 0.1
        start = time.monotonic()
        while True:
            expected = self.expected_neighbours()
            neighbours = self.neighbours()
            if expected <= neighbours and (expected > 0 or neighbours > 0):
                self.logger.debug(
                    "waitForNeighbours() - received info from all expected neighbours: %d",
                    expected,
                )
                return True
            if time.monotonic() - start > self.neighbours_timeout:
                self.logger.warning(
                    "waitForNeighbours() - Time out ! expected neighbours: %d "
                    "INFOs received: %d",
                    expected, neighbours,
                )
                return False
            if not self.is_connected:
                return False
            time.sleep(interval)

    def discover_nodes(self) -> bool:
        """Broadcast DISCOVER and wait; True when neighbours answered."""
        self.discover_node("")
        return self._wait_for_neighbours()

    def discover_node(self, node_id: str) -> None:
        """Ask a node (or every node when empty) for its info."""
        payload = {"sender": self._node_id, "ver": protocol_version()}
        try:
            message = self._message(payload)
        except TransportError:
            return
        self._publish("DISCOVER", node_id, message)

    def send_heartbeat(self) -> None:
        """Broadcast the local node's CPU figures."""
        node = self.broker.local_node.export_as_map()
        payload = {
            "sender": node.get("id"),
            "cpu": node.get("cpu"),
            "cpuSeq": node.get("cpuSeq"),
            "ver": protocol_version(),
        }
        try:
            message = self._message(payload)
        except TransportError:
            return
        self._publish("HEARTBEAT", "", message)

    def send_ping(self) -> None:
        """Send a PING to the local node's topic."""
        sender = self._node_id
        message = self._message({
            "sender": sender,
            "ver": protocol_version(),
            "time": int(time.time()),
            "id": random_string(12),
        })
        self._publish("PING", sender, message)

    def _broadcast_node_info(self, target_node_id: str) -> None:
        payload = dict(self.broker.local_node.export_as_map())
        payload["sender"] = payload.get("id")
        payload["neighbours"] = self.neighbours()
        payload["ver"] = protocol_version()
        payload["config"] = config_to_map(self.broker.config)
        payload["instanceID"] = self.broker.instance_id
        self._publish("INFO", target_node_id, self._message(payload))

    # outgoing requests and events

    def emit(self, context: Any) -> None:
        """Send an event to the context's target node, or broadcast it."""
        target = context.target_node_id
        payload = dict(context.as_map())
        payload["sender"] = self._node_id
        payload["ver"] = protocol_version()
        data_type = DataType.JSON if context.payload is not None else DataType.NULL
        payload["dataType"] = int(data_type)
        self._publish("EVENT", target, self._message(payload))

    def request(self, context: Any) -> Future:
        """Send a request; the future resolves with the remote result."""
        target = context.target_node_id
        payload = dict(context.as_map())
        payload["sender"] = self._node_id
        payload["ver"] = protocol_version()
        params_type = DataType.JSON if context.payload is not None else DataType.NULL
        payload["paramsType"] = int(params_type)
        message = self._message(payload)

        future: Future = Future()
        timeout = self._config("request_timeout", None)
        with self._pending_lock:
            timer = None
            if timeout is not None:
                timer = threading.Timer(timeout, self._request_timed_out, args=(context.id,))
                timer.daemon = True
            self._pending[context.id] = _PendingRequest(context.id, target, future, timer)
            if timer is not None:
                timer.start()
        self.logger.debug("Request() pending request id: %s targetNodeId: %s", context.id, target)
        self._publish("REQ", target, message)
        return future

    def _request_timed_out(self, context_id: str) -> None:
        with self._pending_lock:
            request = self._pending.pop(context_id, None)
            if request is not None:
                self.logger.debug("requestTimedOut() nodeID: %s", request.target_node_id)
                request.settle(error=RequestError("request timeout"))

    # incoming packets

    def _validate(self, handler: Any) -> Any:
        def checked(message: Any) -> None:
            if self._valid_version(message) and not self._same_host(message):
                handler(message)
            else:
                self.logger.debug("Discarding invalid msg -> %r", message)

        return checked

    def _same_host(self, message: Any) -> bool:
        return message.get("sender") == self._node_id

    def _valid_version(self, message: Any) -> bool:
        version = str(message.get("ver", ""))
        if version == protocol_version():
            return True
        self.logger.error(
            "Discarding msg - wrong version: %s expected: %s msg: %r",
            version, protocol_version(), message,
        )
        return False

    def _response_handler(self, message: Any) -> None:
        request_id = str(message.get("id", ""))
        with self._pending_lock:
            request = self._pending.pop(request_id, None)
            if request is None:
                self.logger.debug(
                    "reponseHandler() - discarding response for unknown id: %s", request_id
                )
                return
            if message.get("success"):
                request.settle(result=message.get("data"))
            else:
                request.settle(error=self._parse_error(message))

    def _parse_error(self, message: Any) -> RequestError:
        error = message.get("error")
        if isinstance(error, dict) and "message" in error:
            if "stack" in error:
                self.logger.error(error["stack"])
            return RequestError(str(error["message"]))
        if error is None:
            return RequestError("")
        if isinstance(error, str):
            return RequestError(error)
        return RequestError(json.dumps(error))

    def _send_response(
        self, target_node_id: str, request_id: Any, meta: Any, response: Any
    ) -> None:
        if not target_node_id:
            raise TransportError("sendResponse() targetNodeID is required !")
        values: dict[str, Any] = {
            "sender": self._node_id,
            "ver": protocol_version(),
            "id": request_id,
            "meta": meta,
            "dataType": int(DataType.JSON if response is not None else DataType.NULL),
        }
        if isinstance(response, BaseException):
            error = {"message": str(response), "name": "Error"}
            stack = getattr(response, "stack", None)
            if stack is not None:
                error["stack"] = str(stack)
            values["success"] = False
            values["error"] = error
        else:
            values["success"] = True
            values["data"] = response
        self._publish("RES", target_node_id, self._message(values))

    def _request_handler(self, message: Any) -> None:
        sender = message.get("sender", "")
        params_type = parse_params_type(message.get("paramsType"))
        if params_type not in ("1", "2"):
            text = f"Expecting paramsType == 2 (JSON) or 1 (Null) - received: {params_type}"
            self.logger.error(text)
            self._send_response(sender, message.get("id"), message.get("meta"), RequestError(text))
            return
        try:
            result = self.broker.action_delegate(dict(message))
            if isinstance(result, Future):
                result = result.result()
        except Exception as exc:
            result = exc
        self._send_response(sender, message.get("id"), message.get("meta"), result)

    def _event_handler(self, message: Any) -> None:
        self.broker.handle_remote_event(dict(message))

    def _discover_handler(self, message: Any) -> None:
        sender = message.get("sender", "")
        if self.broker_started:
            self._broadcast_node_info(sender)
        else:
            self.broker.bus.once(
                "$broker.started", lambda *_: self._broadcast_node_info(sender)
            )

    def _registry_event(self, command: str) -> Any:
        def handler(message: Any) -> None:
            self.broker.bus.emit("$registry.transit.message", command, message)

        return handler

    def _ping_handler(self, message: Any) -> None:
        sender = message.get("sender", "")
        pong = self._message({
            "sender": sender,
            "ver": protocol_version(),
            "time": int(message.get("time") or 0),
            "arrived": int(time.time()),
            "id": random_string(12),
        })
        self._publish("PONG", sender, pong)

    def _pong_handler(self, message: Any) -> None:
        now = int(time.time())
        elapsed = now - int(message.get("time") or 0)
        arrived = int(message.get("arrived") or 0)
        time_diff = _round_half_away(float(now) - float(arrived) - elapsed / 2)
        self.broker.bus.emit("$node.pong", {
            "nodeID": message.get("sender", ""),
            "elapsedTime": elapsed,
            "timeDiff": time_diff,
            "id": message.get("id", ""),
        })