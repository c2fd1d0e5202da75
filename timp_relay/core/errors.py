"""
core/errors.py — Exception taxonomy shared by the router, store and gateway.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    pass


class ParseError(RelayError):
    """Inbound frame is not a JSON object. Logged; the sender gets no reply."""


class UnknownMessageType(RelayError):
    def __init__(self, message_type: Optional[str]):
        self.message_type = message_type
        super().__init__(f"Unknown message type: {message_type!r}")


class InvalidEnvelope(RelayError):
    """Known message type with fields that fail validation."""

    def __init__(self, message_type: str, detail: str):
        self.message_type = message_type
        self.detail = detail
        super().__init__(f"Invalid '{message_type}' message: {detail}")


class StorageError(RelayError):
    pass


class TransportError(RelayError):
    pass
