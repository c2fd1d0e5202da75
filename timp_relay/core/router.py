"""
core/router.py — Dispatch inbound envelopes and fan out notifications.

Each frame from a connection is handled to completion (including the store
write) before the gateway reads the next one. Nothing raised while handling
a single message escapes handle(): protocol problems become `error` replies
or log lines, everything else is logged and the connection stays open.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Optional

from .errors import InvalidEnvelope, ParseError, StorageError, TransportError, UnknownMessageType
from .protocol import (
    Connected,
    ErrorReply,
    ExtractRequest,
    ExtractRequestOut,
    OutboundEnvelope,
    Ping,
    Pong,
    RegisterRole,
    ScheduleDataMessage,
    ScheduleSaved,
    ScheduleUpdated,
    parse_envelope,
)
from .registry import Connection, ConnectionRegistry, Role

if TYPE_CHECKING:
    from timp_relay.store import ScheduleStore

log = logging.getLogger(__name__)


class MessageRouter:
    def __init__(self, registry: ConnectionRegistry, store: "ScheduleStore"):
        self.registry = registry
        self.store = store

    # ── Outbound ──────────────────────────────────────────────────────

    async def send(self, connection: Connection, message: OutboundEnvelope | dict[str, Any]) -> bool:
        """Unicast one envelope. Closed or broken transports are skipped silently."""
        if not connection.transport.is_open:
            return False
        payload = message.dump() if isinstance(message, OutboundEnvelope) else message
        try:
            await connection.transport.send_json(payload)
        except TransportError as e:
            log.debug(f"Dropped '{payload.get('type')}' to {connection.describe()}: {e}")
            return False
        return True

    async def broadcast(self, role: Role, message: OutboundEnvelope) -> int:
        """Send to every live connection in `role`. Returns how many sends succeeded."""
        targets = self.registry.by_role(role)
        if not targets:
            return 0
        payload = message.dump()
        results = await asyncio.gather(*(self.send(c, payload) for c in targets))
        delivered = sum(results)
        log.debug(f"Broadcast '{payload['type']}' to {delivered}/{len(targets)} {role.value} clients")
        return delivered

    async def request_extraction(self, request_id: Optional[str] = None) -> tuple[str, int]:
        """Ask every producer for a fresh extraction."""
        request_id = request_id or str(uuid.uuid4())
        delivered = await self.broadcast(Role.PRODUCER, ExtractRequestOut(request_id=request_id))
        if delivered:
            log.info(f"Extract request {request_id} sent to {delivered} extension(s)")
        else:
            log.warning(f"Extract request {request_id}: no extension connected")
        return request_id, delivered

    # ── Inbound ───────────────────────────────────────────────────────

    async def handle(self, identity: str, raw: str | bytes) -> None:
        connection = self.registry.get(identity)
        if connection is None:
            log.debug(f"Ignoring frame from unregistered client {identity}")
            return

        try:
            envelope = parse_envelope(raw)
        except ParseError as e:
            log.warning(f"Malformed frame from {connection.describe()}: {e}")
            return
        except (UnknownMessageType, InvalidEnvelope) as e:
            log.warning(f"Rejected frame from {connection.describe()}: {e}")
            await self.send(connection, ErrorReply(message=str(e)))
            return

        log.debug(f"Message from {connection.describe()}: {envelope.type}")
        try:
            await self.dispatch(connection, envelope)
        except Exception:
            log.exception(f"Error handling '{envelope.type}' from {connection.describe()}")
            await self.send(connection, ErrorReply(message="Error processing message"))

    async def dispatch(self, connection: Connection, envelope) -> None:
        match envelope:
            case RegisterRole(role=role):
                self.registry.reclassify(connection.identity, role)
                await self.send(connection, Connected(
                    client_id=connection.identity,
                    client_type=role,
                    message=f"Registered as {role.value}",
                ))
            case ExtractRequest(request_id=request_id):
                if connection.role is not Role.OBSERVER:
                    await self._reject_role(connection, Role.OBSERVER, envelope.type)
                    return
                await self.request_extraction(request_id)
            case ScheduleDataMessage():
                if connection.role is not Role.PRODUCER:
                    await self._reject_role(connection, Role.PRODUCER, envelope.type)
                    return
                await self._store_schedule(connection, envelope)
            case Ping():
                await self.send(connection, Pong())
            case _:
                raise TypeError(f"Unhandled envelope {type(envelope).__name__}")

    async def _reject_role(self, connection: Connection, role: Role, message_type: str) -> None:
        log.warning(f"'{message_type}' from {connection.describe()} ignored: only {role.value} clients may send it")
        await self.send(connection, ErrorReply(
            message=f"'{message_type}' is only accepted from {role.value} clients",
        ))

    async def _store_schedule(self, connection: Connection, envelope: ScheduleDataMessage) -> None:
        data = envelope.data
        log.info(f"Saving schedule for {data.fecha} from {connection.describe()} ({len(data.clases)} classes)")
        try:
            extraction = await asyncio.to_thread(
                self.store.replace_by_date,
                data,
                connection.role.value,
                connection.identity,
            )
        except StorageError as e:
            log.error(f"Schedule for {data.fecha} not saved: {e}")
            await self.send(connection, ErrorReply(message=f"Could not save schedule for {data.fecha}"))
            return

        await self.broadcast(Role.OBSERVER, ScheduleUpdated(
            id=extraction.id,
            fecha=extraction.fecha,
            total_clases=extraction.total_clases,
            url=extraction.url,
            received_at=extraction.received_at,
        ))
        await self.send(connection, ScheduleSaved(
            id=extraction.id,
            fecha=extraction.fecha,
            total_clases=extraction.total_clases,
            clases_guardadas=len(extraction.clases),
        ))
