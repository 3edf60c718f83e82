from fastapi import APIRouter, HTTPException, Query, Request
from schemas.rooms import RoomDetailsResponse, RoomConnection
from errors import StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(
    room_id: str,
    request: Request,
    include_connections: bool = Query(False, description="List the live connections joined to the room"),
):
    """
    Get room membership and how many members are online.

    Returns:
    - members: user ids joined to the room
    - online_members: members with at least one live connection anywhere
    - connections: live connections joined to the room (when requested)
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")
    gateway = request.app.state.gateway

    try:
        members = await gateway.rooms.members(room_id)
        online = [user_id for user_id in sorted(members) if await gateway.presence.is_online(user_id)]
        connections = None
        if include_connections:
            joined = await gateway.rooms.member_connections(room_id)
            connections = [
                RoomConnection(connection_id=connection_id, user_id=user_id)
                for connection_id, user_id in sorted(joined.items())
            ]
    except StoreUnavailable as e:
        logger.error(f"Room details failed for {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")

    if not members:
        logger.info(f"Room details: room {room_id} has no members")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room details retrieved for {room_id}: {len(online)}/{len(members)} members online")
    return RoomDetailsResponse(
        room_id=room_id,
        members=sorted(members),
        member_count=len(members),
        online_members=online,
        online_count=len(online),
        connections=connections,
    )
