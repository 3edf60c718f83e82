from pydantic import BaseModel
from typing import Optional


class RoomConnection(BaseModel):
    connection_id: str
    user_id: str


class RoomDetailsResponse(BaseModel):
    room_id: str
    members: list[str]
    member_count: int
    online_members: list[str]
    online_count: int
    connections: Optional[list[RoomConnection]] = None


class PresenceConnection(BaseModel):
    connection_id: str
    gateway_instance_id: str
    last_seen: Optional[str] = None


class PresenceResponse(BaseModel):
    user_id: str
    online: bool
    last_seen: Optional[str] = None
    connections: list[PresenceConnection] = []


class QueueStatusResponse(BaseModel):
    user_id: str
    pending: int
