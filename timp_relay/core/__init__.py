"""core — Connection registry, envelope protocol and message routing."""
from .errors import (
    InvalidEnvelope,
    ParseError,
    RelayError,
    StorageError,
    TransportError,
    UnknownMessageType,
)
from .registry import Connection, ConnectionRegistry, Role, Transport
from .router import MessageRouter

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "InvalidEnvelope",
    "MessageRouter",
    "ParseError",
    "RelayError",
    "Role",
    "StorageError",
    "Transport",
    "TransportError",
    "UnknownMessageType",
]
