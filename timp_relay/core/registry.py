"""
core/registry.py — Live connection registry with explicit role transitions.

Every accepted transport gets an identity and exactly one role:
  unclassified → extension (producer) | dashboard (observer)

The registry is the only owner of Connection objects. Callers look them up
by identity or role and must not hold on to the returned lists.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

log = logging.getLogger(__name__)


class Role(str, Enum):
    PRODUCER = "extension"
    OBSERVER = "dashboard"
    UNCLASSIFIED = "unclassified"

    @classmethod
    def from_hint(cls, hint: Optional[str]) -> "Role":
        """Resolve a path segment or register_role value. Anything ambiguous is UNCLASSIFIED."""
        if not hint:
            return cls.UNCLASSIFIED
        return _ROLE_ALIASES.get(hint.strip().strip("/").lower(), cls.UNCLASSIFIED)


_ROLE_ALIASES = {
    "extension": Role.PRODUCER,
    "producer": Role.PRODUCER,
    "ws/extension": Role.PRODUCER,
    "dashboard": Role.OBSERVER,
    "observer": Role.OBSERVER,
    "ws/dashboard": Role.OBSERVER,
}


class Transport(Protocol):
    """What the router needs from a live connection."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None: ...


@dataclass
class Connection:
    transport: Transport
    identity: str
    role: Role = Role.UNCLASSIFIED
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> str:
        return f"{self.role.value} ({self.identity})"


class ConnectionRegistry:
    def __init__(self):
        self._lock = threading.RLock()
        self._connections: dict[str, Connection] = {}
        self._by_role: dict[Role, dict[str, Connection]] = {role: {} for role in Role}

    def register(self, transport: Transport, role_hint: Optional[str] = None) -> Connection:
        role = Role.from_hint(role_hint)
        connection = Connection(transport=transport, identity=str(uuid.uuid4()), role=role)
        with self._lock:
            self._connections[connection.identity] = connection
            self._by_role[role][connection.identity] = connection
        log.info(f"Client connected: {connection.describe()}. Total: {len(self._connections)}")
        return connection

    def reclassify(self, identity: str, role: Role) -> Connection:
        if role is Role.UNCLASSIFIED:
            raise ValueError("A connection cannot be reclassified back to unclassified")
        with self._lock:
            connection = self._connections.get(identity)
            if connection is None:
                raise KeyError(identity)
            previous = connection.role
            self._by_role[previous].pop(identity, None)
            connection.role = role
            self._by_role[role][identity] = connection
        if previous is not role:
            log.info(f"Client {identity} reclassified: {previous.value} → {role.value}")
        return connection

    def unregister(self, identity: str) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.pop(identity, None)
            for members in self._by_role.values():
                members.pop(identity, None)
        if connection is not None:
            log.info(f"Client disconnected: {connection.describe()}. Total: {len(self._connections)}")
        return connection

    def get(self, identity: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(identity)

    def by_role(self, role: Role) -> list[Connection]:
        with self._lock:
            return list(self._by_role[role].values())

    def count(self, role: Optional[Role] = None) -> int:
        with self._lock:
            if role is None:
                return len(self._connections)
            return len(self._by_role[role])

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {role.value: len(members) for role, members in self._by_role.items()}

    def __contains__(self, identity: str) -> bool:
        with self._lock:
            return identity in self._connections
