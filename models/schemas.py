"""
Core data models for the FlowDesk orchestration engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class BlockType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"
    DOCUMENT = "document"
    LOCATION = "location"
    INTERACTIVE = "interactive"
    TEMPLATE = "template"
    API_CALL = "api_call"
    SCRIPT = "script"
    HUMAN = "human"


SENDABLE_BLOCK_TYPES = frozenset({
    BlockType.TEXT, BlockType.IMAGE, BlockType.AUDIO, BlockType.VIDEO,
    BlockType.FILE, BlockType.DOCUMENT, BlockType.LOCATION,
    BlockType.INTERACTIVE, BlockType.TEMPLATE,
})


class ConditionOperator(str, Enum):
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class TicketStatus(str, Enum):
    OPEN = "open"
    TRANSFER = "transfer"
    CLOSED = "closed"


class AgentStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DistributionMode(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class HandoverStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


# ──────────────────────────────────────────────────────────────
#  Flow graph: consumed as already-published data
# ──────────────────────────────────────────────────────────────

class Condition(BaseModel):
    """A single predicate. ``type`` stays a raw string: unknown operators evaluate false."""
    model_config = ConfigDict(extra="allow")

    type: str = ""
    variable: Optional[str] = None
    value: Any = None


class Action(BaseModel):
    model_config = ConfigDict(extra="allow")

    conditions: list[Condition] = []
    next: Optional[str] = None


class Block(BaseModel):
    """One node of the flow graph."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    type: BlockType
    label: Optional[str] = None
    content: Any = None
    actions: list[Action] = []
    default_next: Optional[str] = Field(None, alias="defaultNext")
    await_response: bool = Field(False, alias="awaitResponse")
    await_time_in_seconds: Optional[float] = Field(None, alias="awaitTimeInSeconds")
    send_delay_in_seconds: Optional[float] = Field(None, alias="sendDelayInSeconds")

    # api_call
    url: Optional[str] = None
    method: str = "GET"
    headers: dict[str, Any] = {}
    body: Any = None
    script: Optional[str] = None
    output_var: Optional[str] = Field(None, alias="outputVar")
    status_var: Optional[str] = Field(None, alias="statusVar")

    # script
    code: Optional[str] = None
    function: Optional[str] = None

    @property
    def queue_name(self) -> Optional[str]:
        if isinstance(self.content, dict):
            return self.content.get("queueName")
        return None


class OnErrorContent(BaseModel):
    content: Any = None


class Flow(BaseModel):
    """An immutable conversation graph."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    name: str = ""
    start: str
    blocks: dict[str, Block]
    on_error: Optional[OnErrorContent] = Field(None, alias="onError")

    @model_validator(mode="after")
    def _fill_block_ids(self) -> Flow:
        for block_id, block in self.blocks.items():
            if not block.id:
                block.id = block_id
        return self


# ──────────────────────────────────────────────────────────────
#  Session: per-identity execution state
# ──────────────────────────────────────────────────────────────

class Handover(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    status: Optional[HandoverStatus] = None
    origin_block: Optional[str] = Field(None, alias="originBlock")
    pre_msg_sent: bool = Field(False, alias="preMsgSent")


class TicketRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    number: Optional[Union[int, str]] = None
    fila: Optional[str] = None


class SessionVars(BaseModel):
    """
    Variable bag for one session.

    Reserved orchestration keys are typed fields (camelCase on the wire);
    any other key is a tenant variable kept in the model's extras. ``bag()``
    flattens both into the dict that conditions and templates read.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow", validate_assignment=True)

    channel: Optional[str] = None
    previous_block: Optional[str] = Field(None, alias="previousBlock")
    last_user_message: Optional[str] = Field(None, alias="lastUserMessage")
    last_reply_id: Optional[str] = Field(None, alias="lastReplyId")
    last_reply_title: Optional[str] = Field(None, alias="lastReplyTitle")
    last_message_type: Optional[str] = Field(None, alias="lastMessageType")
    response_status: Optional[int] = Field(None, alias="responseStatus")
    response_data: Any = Field(None, alias="responseData")
    handover: Optional[Handover] = None
    offhours: Optional[bool] = None
    offhours_reason: Optional[str] = None
    fila: Optional[str] = None
    ticket_number: Optional[Union[int, str]] = Field(None, alias="ticketNumber")
    protocol: Optional[str] = None
    ticket: Optional[TicketRef] = None

    def bag(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.bag().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        name = _RESERVED_BY_ALIAS.get(key, key)
        if name in SessionVars.model_fields:
            setattr(self, name, value)
        else:
            self.__pydantic_extra__[key] = value

    def update(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def merged_over(self, base: dict[str, Any]) -> SessionVars:
        """Return base vars overlaid by this session's values."""
        return SessionVars.model_validate({**base, **self.bag()})


_RESERVED_BY_ALIAS: dict[str, str] = {
    (f.alias or name): name for name, f in SessionVars.model_fields.items()
}


class Session(BaseModel):
    user_id: str
    current_block: Optional[str] = None
    vars: SessionVars = Field(default_factory=SessionVars)
    last_flow_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Support: tickets, agents, business hours
# ──────────────────────────────────────────────────────────────

class Ticket(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    fila: str
    status: TicketStatus = TicketStatus.OPEN
    assigned_to: Optional[str] = None
    ticket_number: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Agent(BaseModel):
    id: str
    name: str = ""
    status: AgentStatus = AgentStatus.OFFLINE
    queues: list[str] = []


class HoursWindow(BaseModel):
    start: str = "00:00"
    end: str = "23:59"


class ConfiguredMessage(BaseModel):
    """A tenant-configured notice (pre-handoff or off-hours)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "text"
    message: Optional[str] = None
    payload: Any = None
    content: Any = None
    delay_ms: Optional[int] = Field(None, alias="delayMs")


class PreHumanConfig(ConfiguredMessage):
    enabled: bool = False


class OffHoursConfig(ConfiguredMessage):
    holiday: Optional[ConfiguredMessage] = None
    closed: Optional[ConfiguredMessage] = None
    next: Optional[str] = None


class QueueBusinessHoursConfig(BaseModel):
    queue_name: str = ""
    timezone: Optional[str] = None
    hours: dict[str, list[HoursWindow]] = {}
    holidays: list[str] = []
    exceptions: dict[str, list[HoursWindow]] = {}
    pre_human: Optional[PreHumanConfig] = None
    off_hours: Optional[OffHoursConfig] = None


# ──────────────────────────────────────────────────────────────
#  Messaging: inbound projection, outbound jobs, delivery records
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    """Normalized projection of a channel-native inbound message."""
    channel: ChannelType
    sender: str                               # raw channel address (phone, chat id)
    provider_message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = "text"
    text: Optional[str] = None
    id: Optional[str] = None                  # interactive reply id
    title: Optional[str] = None               # interactive reply title
    sender_name: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class InboundEvent(BaseModel):
    """Raw event as consumed from the ingestion queue."""
    channel: ChannelType
    payload: Any
    external_id: Optional[str] = None
    tenant_id: Optional[str] = None


class TicketStatusEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "ticket_status"
    status: TicketStatus
    user_id: str = Field(alias="userId")
    ticket_number: Optional[Union[int, str]] = Field(None, alias="ticketNumber")
    fila: Optional[str] = None


class FlowContinuation(BaseModel):
    """Scheduled re-entry of a turn after a long configured delay."""
    user_id: str
    block_id: str
    flow_id: Optional[str] = None


class OutgoingJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temp_id: str = Field(alias="tempId")
    channel: ChannelType
    to: str
    user_id: str = Field(alias="userId")
    type: str
    content: Any
    context: dict[str, Any] = {}


class DeliveryRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    channel: ChannelType
    to: str
    type: str
    content: Any = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
