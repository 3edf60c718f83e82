from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Literal, Optional, Union
from datetime import datetime, timezone
import uuid

from errors import MalformedEvent


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Message(WireModel):
    """An immutable chat message. ``message_id`` is the idempotency key."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    room_id: str
    sender_id: str
    payload: Any
    sent_at: str = Field(default_factory=utc_now)


class QueuedDelivery(WireModel):
    recipient_user_id: str
    message: Message
    enqueued_at: str = Field(default_factory=utc_now)
    delivery_attempts: int = 0
    # position in the recipient's queue, assigned by the store
    sequence: int = 0


# Inbound events

class JoinRoomEvent(WireModel):
    type: Literal["joinRoom"]
    room_id: str = Field(min_length=1)


class LeaveRoomEvent(WireModel):
    type: Literal["leaveRoom"]
    room_id: str = Field(min_length=1)


class SendMessageEvent(WireModel):
    type: Literal["sendMessage"]
    room_id: str = Field(min_length=1)
    payload: Any


class AckEvent(WireModel):
    type: Literal["ack"]
    message_id: str = Field(min_length=1)


class PingEvent(WireModel):
    type: Literal["ping"]


InboundEvent = Annotated[
    Union[JoinRoomEvent, LeaveRoomEvent, SendMessageEvent, AckEvent, PingEvent],
    Field(discriminator="type"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)


def parse_inbound_event(raw: str):
    """Parse one inbound frame, raising MalformedEvent on anything unusable."""
    try:
        return inbound_event_adapter.validate_json(raw)
    except ValidationError as e:
        errors = e.errors(include_url=False)
        detail = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in errors)
        raise MalformedEvent(detail or "invalid event") from e


# Outbound events

class MessagePush(WireModel):
    type: Literal["messagePush"] = "messagePush"
    message_id: str
    room_id: str
    sender_id: str
    payload: Any
    sent_at: str
    replay: bool = False

    @classmethod
    def from_message(cls, message: Message, replay: bool = False) -> "MessagePush":
        return cls(replay=replay, **message.model_dump())


class MessageAccepted(WireModel):
    type: Literal["messageAccepted"] = "messageAccepted"
    message_id: str


class MessageRejected(WireModel):
    type: Literal["messageRejected"] = "messageRejected"
    reason: str
    message_id: Optional[str] = None


class Pong(WireModel):
    type: Literal["pong"] = "pong"


class Ready(WireModel):
    type: Literal["ready"] = "ready"
    connection_id: str
    user_id: str
    drained: int = 0


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    reason: str
    detail: Optional[str] = None
