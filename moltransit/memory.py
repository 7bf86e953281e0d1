"""An in-process transport whose subscribers share one handler table."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from .transport import Transport, TransportHandler
from .util import random_string


@dataclass
class Subscription:
    """A handler registered on a topic by one transporter instance."""

    id: str
    transporter_id: str
    handler: TransportHandler
    active: bool = True


@dataclass
class SharedMemory:
    """Topic table shared by every memory transporter attached to it."""

    handlers: dict[str, list[Subscription]] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class MemoryTransporter(Transport):
    """Delivers published messages to handlers in the same process."""

    def __init__(
        self,
        memory: Optional[SharedMemory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.memory = memory if memory is not None else SharedMemory()
        self.logger = logger or logging.getLogger(__name__)
        self.instance_id = random_string(5)
        self.prefix = ""
        self.node_id = ""
        self.serializer = None

    def _tag(self) -> str:
        return f"[Mem-Trans-{self.instance_id}]"

    def connect(self) -> None:
        self.logger.debug("%s -> Connecting() ...", self._tag())
        self.logger.info("%s -> Connected() !", self._tag())

    def disconnect(self) -> None:
        self.logger.debug("%s -> Disconnecting() ...", self._tag())
        with self.memory.lock:
            self.memory.handlers = {
                topic: [s for s in subs if s.transporter_id != self.instance_id]
                for topic, subs in self.memory.handlers.items()
            }
        self.logger.info("%s -> Disconnected() !", self._tag())

    def subscribe(self, command: str, node_id: str, handler: TransportHandler) -> None:
        topic = self.topic_name(command, node_id)
        self.logger.debug(
            "%s Subscribe() listen for command: %s nodeID: %s topic: %s",
            self._tag(), command, node_id, topic,
        )
        subscription = Subscription(
            id=f"{random_string(5)}_{command}",
            transporter_id=self.instance_id,
            handler=handler,
        )
        with self.memory.lock:
            self.memory.handlers.setdefault(topic, []).append(subscription)

    def publish(self, command: str, node_id: str, message: Any) -> None:
        topic = self.topic_name(command, node_id)
        self.logger.debug(
            "%s Publish() command: %s nodeID: %s message: %r",
            self._tag(), command, node_id, message,
        )
        with self.memory.lock:
            subscriptions = list(self.memory.handlers.get(topic, ()))
        for subscription in subscriptions:
            if subscription.active:
                threading.Thread(
                    target=subscription.handler, args=(message,), daemon=True
                ).start()