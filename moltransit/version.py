"""Version strings announced on the wire."""

_MOLECULER_VERSION = "0.1.0"
_PROTOCOL_VERSION = "4"
_RUNTIME_VERSION = "1.5"


def moleculer_version() -> str:
    """Version of the framework."""
    return _MOLECULER_VERSION


def protocol_version() -> str:
    """Version of the transit protocol carried in the ``ver`` field."""
    return _PROTOCOL_VERSION


def runtime_version() -> str:
    """Version of the runtime reported to other nodes."""
    return _RUNTIME_VERSION