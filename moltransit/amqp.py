"""A transport over AMQP 0-9-1 brokers such as RabbitMQ."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

import pika
import pika.exceptions

from .transport import (
    JsonSerializer,
    NotConnectedError,
    Transport,
    TransportError,
    TransportHandler,
)

RECONNECT_DELAY = 5.0
_WAIT_POLL = 0.5

_INTERNAL_COMMANDS = ("DISCOVER", "DISCONNECT", "INFO", "PING", "PONG")


@dataclass
class AmqpOptions:
    """Settings of an AMQP transporter.

    Durations left as ``None`` (or zero) are not defined and add no
    queue arguments.
    """

    urls: list[str] = field(default_factory=list)
    queue_options: Optional[dict[str, Any]] = None
    exchange_options: Optional[dict[str, Any]] = None
    message_options: Optional[dict[str, Any]] = None
    consume_options: Optional[dict[str, Any]] = None
    logger: Optional[logging.Logger] = None
    serializer: Optional[JsonSerializer] = None
    disable_reconnect: bool = False
    auto_delete_queues: Optional[timedelta] = None
    event_time_to_live: Optional[timedelta] = None
    heartbeat_time_to_live: Optional[timedelta] = None
    prefetch: int = 0


DEFAULT_CONFIG = AmqpOptions(prefetch=1)


def merge_configs(base: AmqpOptions, user: AmqpOptions) -> AmqpOptions:
    """Return ``base`` overridden by every value set in ``user``."""
    changes: dict[str, Any] = {}
    if user.prefetch:
        changes["prefetch"] = user.prefetch
    for name in ("event_time_to_live", "heartbeat_time_to_live", "auto_delete_queues"):
        if getattr(user, name):
            changes[name] = getattr(user, name)
    for name in (
        "queue_options",
        "exchange_options",
        "message_options",
        "consume_options",
        "logger",
        "serializer",
    ):
        if getattr(user, name) is not None:
            changes[name] = getattr(user, name)
    changes["disable_reconnect"] = user.disable_reconnect
    changes["urls"] = list(user.urls or base.urls)
    return dataclasses.replace(base, **changes)


@dataclass(frozen=True)
class QueueOptions:
    """Flags and arguments used to declare a queue."""

    auto_delete: bool
    durable: bool
    exclusive: bool
    arguments: dict[str, Any]


@dataclass(frozen=True)
class ExchangeOptions:
    """Flags and arguments used to declare an exchange."""

    durable: bool
    auto_delete: bool
    arguments: dict[str, Any]


@dataclass(frozen=True)
class _Binding:
    queue_name: str
    topic: str
    pattern: str = ""


@dataclass(frozen=True)
class _Subscriber:
    command: str
    node_id: str
    handler: TransportHandler


@dataclass
class _Job:
    fn: Callable[[], Any]
    done: threading.Event = field(default_factory=threading.Event)
    value: Any = None
    error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.value = self.fn()
        except BaseException as exc:  # handed back to the waiting thread
            self.error = exc
        finally:
            self.done.set()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.done.set()

    def result(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


def _millis(duration: timedelta) -> int:
    return int(duration / timedelta(milliseconds=1))


def _flag(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"option {key!r} must be a bool, got {value!r}")
    return value


class _Consumer:
    """Hands messages of one queue to its handler, one at a time."""

    def __init__(
        self,
        channel: Any,
        queue_name: str,
        need_ack: bool,
        handler: TransportHandler,
        serializer: JsonSerializer,
        submit: Callable[[Callable[[], Any]], Any],
        logger: logging.Logger,
    ) -> None:
        self._channel = channel
        self._queue_name = queue_name
        self._need_ack = need_ack
        self._handler = handler
        self._serializer = serializer
        self._submit = submit
        self._logger = logger
        self._inbox: queue.Queue[Optional[tuple[int, bytes]]] = queue.Queue()
        self._thread = threading.Thread(
            target=self._work, daemon=True, name=f"amqp-consume-{queue_name}"
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._inbox.put(None)

    def on_message(self, channel: Any, method: Any, properties: Any, body: bytes) -> None:
        self._inbox.put((method.delivery_tag, body))

    def _work(self) -> None:
        while (item := self._inbox.get()) is not None:
            tag, body = item
            self._deliver(body)
            if self._need_ack:
                self._acknowledge(tag)

    def _deliver(self, body: bytes) -> None:
        try:
            payload = self._serializer.bytes_to_payload(body)
        except TransportError as exc:
            self._logger.error("AMQP doConsume() - %s", exc)
            return
        sender = payload.get("sender") if isinstance(payload, dict) else None
        self._logger.debug("Incoming %s packet from '%s'", self._queue_name, sender)
        try:
            self._handler(payload)
        except Exception:
            self._logger.exception("AMQP doConsume() - handler failed for %s", self._queue_name)

    def _acknowledge(self, tag: int) -> None:
        channel = self._channel
        try:
            self._submit(lambda: channel.basic_ack(delivery_tag=tag))
        except (pika.exceptions.AMQPError, TransportError) as exc:
            self._logger.error("AMQP doConsume() - Can't acknowledge message: %s", exc)
            try:
                self._submit(lambda: channel.basic_nack(delivery_tag=tag, requeue=True))
            except (pika.exceptions.AMQPError, TransportError) as nack_exc:
                self._logger.error(
                    "AMQP doConsume() - Can't negatively acknowledge message: %s", nack_exc
                )


class AmqpTransporter(Transport):
    """Publishes and consumes through an AMQP broker, reconnecting on loss.

    One background thread owns the connection; other threads hand it work.
    """

    def __init__(self, options: Optional[AmqpOptions] = None) -> None:
        self.opts = merge_configs(DEFAULT_CONFIG, options or AmqpOptions())
        self.logger = self.opts.logger or logging.getLogger(__name__)
        self.serializer = self.opts.serializer or JsonSerializer()
        self.prefix = ""
        self.node_id = ""

        self._connection: Any = None
        self._channel: Any = None
        self._lock = threading.Lock()
        self._subscribers: list[_Subscriber] = []
        self._bindings: list[_Binding] = []
        self._consumers: list[_Consumer] = []
        self._jobs: queue.Queue[_Job] = queue.Queue()
        self._close_job: Optional[_Job] = None
        self._disconnecting = False
        self._stop = threading.Event()
        self._recovered = threading.Event()
        self._recovered.set()
        self._io_thread: Optional[threading.Thread] = None
        self._io_ident: Optional[int] = None

    # connection lifecycle

    def connect(self) -> None:
        if not self.opts.urls:
            raise TransportError("AMQP Connect() - no url configured")
        if self._io_thread is not None and self._io_thread.is_alive():
            return
        self.logger.debug("AMQP Connect() - url: %s", self.opts.urls)
        self._disconnecting = False
        self._close_job = None
        self._stop.clear()
        started = _Job(lambda: None)
        self._io_thread = threading.Thread(
            target=self._run, args=(started,), daemon=True, name="amqp-io"
        )
        self._io_thread.start()
        started.done.wait()
        started.result()

    def disconnect(self) -> None:
        self._disconnecting = True
        self._stop.set()
        self._recovered.set()
        thread = self._io_thread
        if thread is None or not thread.is_alive():
            self._io_thread = None
            return
        if self._connection is None or self._channel is None:
            thread.join()
            self._io_thread = None
            return
        job = _Job(self._close_now)
        self._close_job = job
        self._wake()
        try:
            self._wait(job, thread)
        except NotConnectedError:
            pass
        finally:
            thread.join(timeout=RECONNECT_DELAY)
            self._io_thread = None

    def _run(self, started: _Job) -> None:
        self._io_ident = threading.get_ident()
        attempt = 0
        connected_once = False
        last_error: Optional[BaseException] = None
        while not self._stop.is_set():
            uri = self.opts.urls[attempt % len(self.opts.urls)]
            attempt += 1
            try:
                self._do_connect(uri)
            except TransportError as exc:
                last_error = exc
                self.logger.error("AMQP Connect() - Error: %s url: %s", exc, uri)
            else:
                with self._lock:
                    subscribers = list(self._subscribers)
                for subscriber in subscribers:
                    self._subscribe_internal(subscriber)
                self._recovered.set()
                if not connected_once:
                    connected_once = True
                    started.run()
                last_error = self._serve()
                self._stop_consumers()
                if self._disconnecting:
                    self.logger.info("AMQP connection is closed gracefully")
                    break
                self.logger.error("AMQP connection is closed -> %s", last_error)
            if self.opts.disable_reconnect:
                break
            self._recovered.clear()
            self._stop.wait(RECONNECT_DELAY)
        self._recovered.set()
        self._fail_pending_jobs()
        if not connected_once:
            started.fail(TransportError(f"AMQP failed to connect: {last_error}"))

    def _do_connect(self, uri: str) -> None:
        try:
            connection = pika.BlockingConnection(pika.URLParameters(uri))
        except (pika.exceptions.AMQPError, OSError, ValueError) as exc:
            raise TransportError(f"AMQP failed to connect: {exc}") from exc
        self.logger.info("AMQP is connected")
        try:
            channel = connection.channel()
        except pika.exceptions.AMQPError as exc:
            self._close_quietly(connection)
            raise TransportError(f"AMQP failed to create channel: {exc}") from exc
        self.logger.info("AMQP channel is created")
        try:
            channel.basic_qos(prefetch_count=self.opts.prefetch)
        except pika.exceptions.AMQPError as exc:
            self._close_quietly(connection)
            raise TransportError(f"AMQP failed set prefetch count: {exc}") from exc
        self._connection, self._channel = connection, channel

    @staticmethod
    def _close_quietly(connection: Any) -> None:
        try:
            connection.close()
        except pika.exceptions.AMQPError:
            pass

    def _serve(self) -> Optional[BaseException]:
        connection = self._connection
        try:
            while connection.is_open:
                if self._close_job is not None:
                    self._close_job.run()
                    return None
                self._run_jobs()
                connection.process_data_events(time_limit=1)
        except pika.exceptions.AMQPError as exc:
            return exc
        return None

    def _close_now(self) -> None:
        channel, connection = self._channel, self._connection
        with self._lock:
            bindings = list(self._bindings)
            self._subscribers.clear()
            self._bindings.clear()
        for binding in bindings:
            try:
                channel.queue_unbind(
                    queue=binding.queue_name,
                    exchange=binding.topic,
                    routing_key=binding.pattern,
                )
            except pika.exceptions.AMQPError as exc:
                self.logger.error(
                    "AMQP Disconnect() - Can't unbind queue '%r': %s", binding, exc
                )
        self._stop_consumers()
        try:
            channel.close()
        except pika.exceptions.AMQPError as exc:
            self.logger.error("AMQP Disconnect() - Channel close error: %s", exc)
            raise TransportError(f"AMQP channel close error: {exc}") from exc
        self._channel = None
        try:
            connection.close()
        except pika.exceptions.AMQPError as exc:
            self.logger.error("AMQP Disconnect() - Connection close error: %s", exc)
            raise TransportError(f"AMQP connection close error: {exc}") from exc
        self._connection = None

    # work handed to the connection thread

    def _run_jobs(self) -> None:
        while True:
            try:
                job = self._jobs.get_nowait()
            except queue.Empty:
                return
            job.run()

    def _fail_pending_jobs(self) -> None:
        while True:
            try:
                job = self._jobs.get_nowait()
            except queue.Empty:
                return
            job.fail(NotConnectedError("AMQP connection is closed"))

    def _wake(self) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            connection.add_callback_threadsafe(lambda: None)
        except pika.exceptions.AMQPError:
            pass

    def _wait(self, job: _Job, thread: threading.Thread) -> Any:
        while not job.done.wait(_WAIT_POLL):
            if not thread.is_alive():
                job.fail(NotConnectedError("AMQP connection is closed"))
        return job.result()

    def _submit(self, fn: Callable[[], Any]) -> Any:
        if threading.get_ident() == self._io_ident:
            return fn()
        thread = self._io_thread
        if thread is None or not thread.is_alive():
            raise NotConnectedError("AMQP has no running connection")
        job = _Job(fn)
        self._jobs.put(job)
        self._wake()
        return self._wait(job, thread)

    def _stop_consumers(self) -> None:
        with self._lock:
            consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            consumer.stop()

    # subscribing and publishing

    def subscribe(self, command: str, node_id: str, handler: TransportHandler) -> None:
        subscriber = _Subscriber(command, node_id, handler)
        with self._lock:
            self._subscribers.append(subscriber)
        if self._channel is None or not self._recovered.is_set():
            return
        self._submit(lambda: self._subscribe_internal(subscriber))

    def _subscribe_internal(self, subscriber: _Subscriber) -> None:
        channel = self._channel
        if channel is None:
            return
        topic = self.topic_name(subscriber.command, subscriber.node_id)
        try:
            if subscriber.node_id:
                # Topics for this node only need a queue, not an exchange.
                need_ack = subscriber.command == "REQ"
                options = self.queue_options(subscriber.command, False)
                channel.queue_declare(
                    queue=topic,
                    durable=options.durable,
                    auto_delete=options.auto_delete,
                    exclusive=options.exclusive,
                    arguments=options.arguments,
                )
                self._consume(channel, topic, need_ack, subscriber.handler)
            else:
                queue_name = f"{self.prefix}.{subscriber.command}.{self.node_id}"
                binding = _Binding(queue_name=queue_name, topic=topic)
                with self._lock:
                    if binding not in self._bindings:
                        self._bindings.append(binding)
                options = self.queue_options(subscriber.command, False)
                channel.queue_declare(
                    queue=queue_name,
                    durable=options.durable,
                    auto_delete=options.auto_delete,
                    exclusive=options.exclusive,
                    arguments=options.arguments,
                )
                exchange = self.exchange_options()
                channel.exchange_declare(
                    exchange=topic,
                    exchange_type="fanout",
                    durable=exchange.durable,
                    auto_delete=exchange.auto_delete,
                    arguments=exchange.arguments,
                )
                channel.queue_bind(
                    queue=binding.queue_name,
                    exchange=binding.topic,
                    routing_key=binding.pattern,
                )
                self._consume(channel, queue_name, False, subscriber.handler)
        except pika.exceptions.AMQPError as exc:
            self.logger.error("AMQP Subscribe() - topic %s: %s", topic, exc)

    def _consume(
        self, channel: Any, queue_name: str, need_ack: bool, handler: TransportHandler
    ) -> None:
        self.logger.debug("AMQP doConsume() - queue: %s", queue_name)
        consumer = _Consumer(
            channel,
            queue_name,
            need_ack,
            handler,
            self.serializer,
            self._submit,
            self.logger,
        )
        channel.basic_consume(
            queue=queue_name,
            on_message_callback=consumer.on_message,
            auto_ack=not need_ack,
            arguments=self.opts.consume_options,
        )
        consumer.start()
        with self._lock:
            self._consumers.append(consumer)

    def publish(self, command: str, node_id: str, message: Any) -> None:
        if self._channel is None:
            text = f"AMQP Publish() No connection -> command: {command} nodeID: {node_id}"
            self.logger.error(text)
            raise NotConnectedError(text)
        self._recovered.wait()

        topic = self.topic_name(command, node_id)
        routing_key = ""
        if node_id:
            routing_key, topic = topic, ""
        data = self.serializer.payload_to_bytes(message)
        try:
            self._submit(lambda: self._publish_now(topic, routing_key, data))
        except (pika.exceptions.AMQPError, TransportError) as exc:
            self.logger.warning(
                "AMQP Publish - Can't publish command: %s, nodeID: %s, error: %s",
                command, node_id, exc,
            )

    def _publish_now(self, exchange: str, routing_key: str, data: bytes) -> None:
        channel = self._channel
        if channel is None:
            raise NotConnectedError("AMQP channel is closed")
        channel.basic_publish(exchange=exchange, routing_key=routing_key, body=data)

    # declaration options

    def exchange_options(self) -> ExchangeOptions:
        """Split the configured exchange options into flags and arguments."""
        durable = auto_delete = False
        arguments: dict[str, Any] = {}
        for key, value in (self.opts.exchange_options or {}).items():
            if key == "durable":
                durable = _flag(key, value)
            elif key == "autoDelete":
                auto_delete = _flag(key, value)
            else:
                arguments[key] = value
        return ExchangeOptions(durable=durable, auto_delete=auto_delete, arguments=arguments)

    def queue_options(self, command: str, balanced_queue: bool = False) -> QueueOptions:
        """Return the queue flags and arguments for a packet type."""
        auto_delete = durable = exclusive = False
        arguments: dict[str, Any] = {}
        expires = self.opts.auto_delete_queues

        if command == "REQ":
            if expires is not None and not balanced_queue:
                arguments["x-expires"] = _millis(expires)
        elif command == "RES":
            if expires is not None:
                arguments["x-expires"] = _millis(expires)
        elif command in ("EVENT", "EVENTLB"):
            if expires is not None:
                arguments["x-expires"] = _millis(expires)
            if self.opts.event_time_to_live is not None:
                arguments["x-message-ttl"] = _millis(self.opts.event_time_to_live)
        elif command == "HEARTBEAT":
            auto_delete = True
            if self.opts.heartbeat_time_to_live is not None:
                arguments["x-message-ttl"] = _millis(self.opts.heartbeat_time_to_live)
        elif command in _INTERNAL_COMMANDS:
            auto_delete = True

        for key, value in (self.opts.queue_options or {}).items():
            if key == "exclusive":
                exclusive = _flag(key, value)
            elif key == "durable":
                durable = _flag(key, value)
            else:
                arguments[key] = value

        return QueueOptions(
            auto_delete=auto_delete,
            durable=durable,
            exclusive=exclusive,
            arguments=arguments,
        )