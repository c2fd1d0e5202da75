import pytest

from timp_relay.core import ConnectionRegistry, MessageRouter, Role, TransportError
from timp_relay.store import MemoryScheduleStore, SqlScheduleStore


class FakeTransport:
    """Records every envelope the relay sends to one client."""

    def __init__(self, is_open: bool = True, broken: bool = False):
        self.is_open = is_open
        self.broken = broken
        self.sent: list[dict] = []

    async def send_json(self, message: dict) -> None:
        if self.broken:
            raise TransportError("connection reset")
        self.sent.append(message)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


@pytest.fixture(params=["sql", "memory"])
def store(request):
    if request.param == "sql":
        s = SqlScheduleStore("sqlite://")
    else:
        s = MemoryScheduleStore(max_extractions=100)
    yield s
    s.close()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def router(registry, store):
    return MessageRouter(registry, store)


@pytest.fixture
def connect(registry):
    """connect(role) → (Connection, FakeTransport)"""
    def _connect(role: Role | None = None, **transport_kwargs):
        transport = FakeTransport(**transport_kwargs)
        connection = registry.register(transport, role.value if role else None)
        return connection, transport
    return _connect
