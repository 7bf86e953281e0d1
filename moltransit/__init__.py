"""Transit layer for a microservices broker: packets between nodes over in-memory and AMQP transports."""

__version__ = "0.1.0"
__all__ = ["amqp", "memory", "pubsub", "transport", "util", "version"]