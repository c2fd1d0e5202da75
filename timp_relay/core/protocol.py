"""
core/protocol.py — JSON envelopes exchanged over the relay WebSockets.

Every frame is one envelope: {"type": "...", ...type-specific fields}.

Inbound (client → relay):
  register_role   {role}
  extract_request {requestId?}
  schedule_data   {data: {fecha, clases[], url?, totalClases?, timestamp?}}
  ping            {}

Outbound (relay → client):
  connected       {clientId, clientType, message}
  extract_request {requestId, timestamp}
  schedule_saved  {id, fecha, totalClases, clasesGuardadas}
  schedule_updated{id, fecha, totalClases, url, receivedAt}
  pong            {}
  error           {message}
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import InvalidEnvelope, ParseError, UnknownMessageType
from .registry import Role


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ──────────────────────────────────────────────────────────────────────────────
# Schedule payload
# ──────────────────────────────────────────────────────────────────────────────

COUNTER_FIELDS = (
    "reservadas",
    "asistidas",
    "no_show",
    "salida_anticipada",
    "confirmadas",
    "canceladas",
    "ausentes",
)


class ClassPayload(_Envelope):
    nombre: str = ""
    hora_inicio: str = Field("", alias="horaInicio")
    hora_fin: str = Field("", alias="horaFin")
    instructor: str = ""
    reservadas: int = 0
    asistidas: int = 0
    no_show: int = Field(0, alias="noShow")
    salida_anticipada: int = Field(0, alias="salidaAnticipada")
    confirmadas: int = 0
    canceladas: int = 0
    ausentes: int = 0

    @field_validator(*COUNTER_FIELDS, mode="before")
    @classmethod
    def _blank_counter_is_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0
        return value

    @field_validator("nombre", "hora_inicio", "hora_fin", "instructor", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value


class ScheduleData(_Envelope):
    fecha: date
    clases: list[ClassPayload] = Field(default_factory=list)
    url: Optional[str] = None
    total_clases: Optional[int] = Field(None, alias="totalClases")
    timestamp: Optional[str] = None

    @property
    def declared_total(self) -> int:
        return self.total_clases if self.total_clases is not None else len(self.clases)


# ──────────────────────────────────────────────────────────────────────────────
# Inbound envelopes
# ──────────────────────────────────────────────────────────────────────────────

class RegisterRole(_Envelope):
    type: Literal["register_role"]
    role: Role

    @field_validator("role", mode="before")
    @classmethod
    def _resolve_role(cls, value: Any) -> Role:
        role = Role.from_hint(value if isinstance(value, str) else None)
        if role is Role.UNCLASSIFIED:
            raise ValueError(f"role must be one of extension/producer/dashboard/observer, got {value!r}")
        return role


class ExtractRequest(_Envelope):
    type: Literal["extract_request"]
    request_id: Optional[str] = Field(None, alias="requestId")


class ScheduleDataMessage(_Envelope):
    type: Literal["schedule_data"]
    data: ScheduleData


class Ping(_Envelope):
    type: Literal["ping"]


InboundEnvelope = Annotated[
    Union[RegisterRole, ExtractRequest, ScheduleDataMessage, Ping],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset({"register_role", "extract_request", "schedule_data", "ping"})

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEnvelope)


def parse_envelope(raw: str | bytes) -> InboundEnvelope:
    """
    Decode one frame into an inbound envelope.

    Raises ParseError when the frame is not a JSON object, UnknownMessageType
    when `type` is missing or not one we handle, and InvalidEnvelope when the
    fields for a known type fail validation.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ParseError(f"Envelope must be a JSON object, got {type(payload).__name__}")

    message_type = payload.get("type")
    if not isinstance(message_type, str) or message_type not in INBOUND_TYPES:
        raise UnknownMessageType(message_type if isinstance(message_type, str) else None)

    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as e:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'envelope'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidEnvelope(message_type, detail) from e


# ──────────────────────────────────────────────────────────────────────────────
# Outbound envelopes
# ──────────────────────────────────────────────────────────────────────────────

class OutboundEnvelope(_Envelope):
    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Connected(OutboundEnvelope):
    type: Literal["connected"] = "connected"
    client_id: str = Field(alias="clientId")
    client_type: Role = Field(alias="clientType")
    message: str = ""


class ExtractRequestOut(OutboundEnvelope):
    type: Literal["extract_request"] = "extract_request"
    request_id: str = Field(alias="requestId")
    timestamp: str = Field(default_factory=utc_now_iso)


class ScheduleSaved(OutboundEnvelope):
    type: Literal["schedule_saved"] = "schedule_saved"
    id: str
    fecha: date
    total_clases: int = Field(alias="totalClases")
    clases_guardadas: int = Field(alias="clasesGuardadas")


class ScheduleUpdated(OutboundEnvelope):
    type: Literal["schedule_updated"] = "schedule_updated"
    id: str
    fecha: date
    total_clases: int = Field(alias="totalClases")
    url: Optional[str] = None
    received_at: datetime = Field(alias="receivedAt")


class Pong(OutboundEnvelope):
    type: Literal["pong"] = "pong"


class ErrorReply(OutboundEnvelope):
    type: Literal["error"] = "error"
    message: str
