from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import PresenceConnection, PresenceResponse, QueueStatusResponse
from errors import QueueUnavailable, StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

users_router = APIRouter(prefix="/users", tags=["users"])


@users_router.get("/{user_id}/presence", response_model=PresenceResponse)
async def get_presence(user_id: str, request: Request):
    gateway = request.app.state.gateway
    try:
        entry = await gateway.presence.get_entry(user_id)
    except StoreUnavailable as e:
        logger.error(f"Presence lookup failed for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")

    if entry is None:
        return PresenceResponse(user_id=user_id, online=False)

    connections = [
        PresenceConnection(
            connection_id=connection_id,
            gateway_instance_id=data.get("gateway", ""),
            last_seen=data.get("last_seen"),
        )
        for connection_id, data in sorted(entry["connections"].items())
    ]
    return PresenceResponse(user_id=user_id, online=True, last_seen=entry["last_seen"], connections=connections)


@users_router.get("/{user_id}/queue", response_model=QueueStatusResponse)
async def get_queue_status(user_id: str, request: Request):
    """Number of messages waiting for the user to reconnect."""
    gateway = request.app.state.gateway
    try:
        pending = await gateway.queue.pending_count(user_id)
    except QueueUnavailable as e:
        logger.error(f"Queue lookup failed for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Queue unavailable")
    return QueueStatusResponse(user_id=user_id, pending=pending)
