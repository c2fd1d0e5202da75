"""
Message routing: dispatch by type, role checks, fan-out and store wiring.
"""

import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from timp_relay.core import MessageRouter, Role, StorageError


def schedule(fecha: str, *names: str, **extra) -> str:
    return json.dumps({
        "type": "schedule_data",
        "data": {
            "fecha": fecha,
            "clases": [{"nombre": n, "instructor": "Ana", "reservadas": 10} for n in names],
            **extra,
        },
    })


# ─── Ping / unknown / malformed ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ping_yields_exactly_one_pong(router, connect):
    sender, sender_t = connect(Role.OBSERVER)
    _, other_t = connect(Role.OBSERVER)
    _, producer_t = connect(Role.PRODUCER)

    await router.handle(sender.identity, '{"type": "ping"}')

    assert sender_t.sent == [{"type": "pong"}]
    assert other_t.sent == []
    assert producer_t.sent == []


@pytest.mark.asyncio
async def test_unknown_type_gets_error_reply(router, connect):
    conn, t = connect(Role.PRODUCER)
    await router.handle(conn.identity, '{"type": "teleport"}')
    assert t.types() == ["error"]
    assert "teleport" in t.sent[0]["message"]


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped_silently(router, connect, registry):
    conn, t = connect(Role.PRODUCER)
    await router.handle(conn.identity, "{not json")
    assert t.sent == []
    assert conn.identity in registry

    await router.handle(conn.identity, '{"type": "ping"}')
    assert t.types() == ["pong"]


@pytest.mark.asyncio
async def test_invalid_fields_get_error_reply(router, connect, store):
    conn, t = connect(Role.PRODUCER)
    await router.handle(conn.identity, '{"type": "schedule_data", "data": {"clases": []}}')
    assert t.types() == ["error"]
    assert store.recent_extractions() == []


# ─── Role registration ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_role_reclassifies(router, connect, registry):
    conn, t = connect()
    assert conn.role is Role.UNCLASSIFIED

    await router.handle(conn.identity, '{"type": "register_role", "role": "extension"}')

    assert conn.role is Role.PRODUCER
    assert registry.by_role(Role.PRODUCER) == [conn]
    assert t.sent == [{
        "type": "connected",
        "clientId": conn.identity,
        "clientType": "extension",
        "message": "Registered as extension",
    }]


@pytest.mark.asyncio
async def test_switching_producer_to_observer_stops_extract_requests(router, connect):
    producer, producer_t = connect(Role.PRODUCER)
    observer, _ = connect(Role.OBSERVER)

    await router.handle(producer.identity, '{"type": "register_role", "role": "dashboard"}')
    producer_t.sent.clear()
    await router.handle(observer.identity, '{"type": "extract_request"}')

    assert producer_t.sent == []


# ─── extract_request ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_extract_request_reaches_every_producer_and_no_observer(router, connect):
    observer, observer_t = connect(Role.OBSERVER)
    _, other_observer_t = connect(Role.OBSERVER)
    _, p1 = connect(Role.PRODUCER)
    _, p2 = connect(Role.PRODUCER)

    await router.handle(observer.identity, '{"type": "extract_request", "requestId": "req-1"}')

    for t in (p1, p2):
        assert len(t.sent) == 1
        assert t.sent[0]["type"] == "extract_request"
        assert t.sent[0]["requestId"] == "req-1"
        assert t.sent[0]["timestamp"]
    assert observer_t.sent == []
    assert other_observer_t.sent == []


@pytest.mark.asyncio
async def test_extract_request_generates_request_id(router, connect):
    observer, _ = connect(Role.OBSERVER)
    _, p = connect(Role.PRODUCER)

    await router.handle(observer.identity, '{"type": "extract_request"}')

    assert p.sent[0]["requestId"]


@pytest.mark.asyncio
async def test_extract_request_from_producer_is_rejected(router, connect):
    producer, producer_t = connect(Role.PRODUCER)
    _, other_producer_t = connect(Role.PRODUCER)

    await router.handle(producer.identity, '{"type": "extract_request"}')

    assert producer_t.types() == ["error"]
    assert other_producer_t.sent == []


@pytest.mark.asyncio
async def test_request_extraction_counts_live_producers(router, connect):
    connect(Role.PRODUCER)
    connect(Role.PRODUCER, is_open=False)
    connect(Role.PRODUCER, broken=True)

    request_id, delivered = await router.request_extraction()

    assert request_id
    assert delivered == 1


# ─── schedule_data ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_schedule_data_is_stored_broadcast_and_acknowledged(router, connect, store):
    producer, producer_t = connect(Role.PRODUCER)
    _, o1 = connect(Role.OBSERVER)
    _, o2 = connect(Role.OBSERVER)
    o3, o3_t = connect(Role.OBSERVER)
    router.registry.unregister(o3.identity)

    await router.handle(producer.identity, schedule("2026-01-27", "A", "B", url="https://example.test"))

    for t in (o1, o2):
        assert t.types() == ["schedule_updated"]
        assert t.sent[0]["fecha"] == "2026-01-27"
        assert t.sent[0]["totalClases"] == 2
        assert t.sent[0]["url"] == "https://example.test"
    assert o3_t.sent == []

    assert producer_t.types() == ["schedule_saved"]
    ack = producer_t.sent[0]
    assert ack["clasesGuardadas"] == 2
    assert ack["id"] == o1.sent[0]["id"]

    stored = store.get_extraction(date(2026, 1, 27))
    assert stored.source == "extension"
    assert stored.source_id == producer.identity
    assert [c.nombre for c in store.classes_by_date(date(2026, 1, 27))] == ["A", "B"]


@pytest.mark.asyncio
async def test_resubmitting_a_date_replaces_its_classes(router, connect, store):
    producer, _ = connect(Role.PRODUCER)

    await router.handle(producer.identity, schedule("2026-01-27", "A", "B"))
    assert [c.nombre for c in store.classes_by_date(date(2026, 1, 27))] == ["A", "B"]

    await router.handle(producer.identity, schedule("2026-01-27", "C"))
    assert [c.nombre for c in store.classes_by_date(date(2026, 1, 27))] == ["C"]
    assert len(store.recent_extractions()) == 1


@pytest.mark.asyncio
async def test_schedule_data_from_observer_is_rejected(router, connect, store):
    observer, observer_t = connect(Role.OBSERVER)
    _, other_t = connect(Role.OBSERVER)

    await router.handle(observer.identity, schedule("2026-01-27", "A"))

    assert observer_t.types() == ["error"]
    assert other_t.sent == []
    assert store.get_extraction(date(2026, 1, 27)) is None


@pytest.mark.asyncio
async def test_schedule_data_from_unclassified_is_rejected(router, connect, store):
    conn, t = connect()
    await router.handle(conn.identity, schedule("2026-01-27", "A"))
    assert t.types() == ["error"]
    assert store.get_extraction(date(2026, 1, 27)) is None


@pytest.mark.asyncio
async def test_storage_error_suppresses_broadcast(registry, connect):
    failing = MagicMock()
    failing.replace_by_date.side_effect = StorageError("disk full")
    router = MessageRouter(registry, failing)
    producer, producer_t = connect(Role.PRODUCER)
    _, observer_t = connect(Role.OBSERVER)

    await router.handle(producer.identity, schedule("2026-01-27", "A"))

    assert producer_t.types() == ["error"]
    assert "2026-01-27" in producer_t.sent[0]["message"]
    assert observer_t.sent == []


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(registry, connect):
    broken = MagicMock()
    broken.replace_by_date.side_effect = RuntimeError("boom")
    router = MessageRouter(registry, broken)
    producer, producer_t = connect(Role.PRODUCER)

    await router.handle(producer.identity, schedule("2026-01-27", "A"))
    await router.handle(producer.identity, '{"type": "ping"}')

    assert producer_t.types() == ["error", "pong"]
    assert producer.identity in registry


@pytest.mark.asyncio
async def test_broadcast_skips_closed_and_broken_observers(router, connect):
    producer, _ = connect(Role.PRODUCER)
    _, healthy = connect(Role.OBSERVER)
    _, closed = connect(Role.OBSERVER, is_open=False)
    broken_conn, broken = connect(Role.OBSERVER, broken=True)

    await router.handle(producer.identity, schedule("2026-02-01", "A"))

    assert healthy.types() == ["schedule_updated"]
    assert closed.sent == []
    assert broken.sent == []
    # closed transports are only removed by unregister
    assert broken_conn.identity in router.registry


@pytest.mark.asyncio
async def test_frames_from_unregistered_identity_are_ignored(router, connect):
    conn, t = connect(Role.PRODUCER)
    router.registry.unregister(conn.identity)
    await router.handle(conn.identity, '{"type": "ping"}')
    assert t.sent == []
