from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import WatchError

from backend import store_errors
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import ROOM_MEMBERS_KEY, ROOM_USERS_KEY, ROOM_CONN_KEY

logger = get_logger(__name__)


class RoomRegistry:
    """Room membership kept in the shared store.

    Two views are maintained: the user ids that joined a room (what fan-out
    targets) and the live connections currently joined. Rooms exist
    implicitly and vanish from Redis when their last member is removed.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    async def join(self, room_id: str, connection_id: str, user_id: str) -> bool:
        """Add a connection (and its user) to a room. No-op if already joined."""
        with store_errors(StoreUnavailable, f"join room {room_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(ROOM_MEMBERS_KEY.format(room_id=room_id), connection_id, user_id)
                pipe.sadd(ROOM_USERS_KEY.format(room_id=room_id), user_id)
                pipe.sadd(ROOM_CONN_KEY.format(connection_id=connection_id), room_id)
                added, _, _ = await pipe.execute()
        if added:
            logger.info(f"Connection {connection_id} (user {user_id}) joined room {room_id}")
        else:
            logger.debug(f"Connection {connection_id} already in room {room_id}")
        return True

    async def leave(
        self,
        room_id: str,
        connection_id: str,
        user_id: Optional[str] = None,
        keep_membership: bool = False,
    ) -> bool:
        """Remove a connection from a room. Safe when it is not a member.

        Unless ``keep_membership`` is set, the user is dropped from the room as
        well once none of their other connections remain joined. Returns True
        if the connection was joined.
        """
        members_key = ROOM_MEMBERS_KEY.format(room_id=room_id)
        users_key = ROOM_USERS_KEY.format(room_id=room_id)
        conn_key = ROOM_CONN_KEY.format(connection_id=connection_id)

        with store_errors(StoreUnavailable, f"leave room {room_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        # a concurrent join by another device must not be lost
                        await pipe.watch(members_key)
                        joined = await pipe.hgetall(members_key)
                        was_joined = connection_id in joined
                        owner = user_id or joined.get(connection_id)
                        others = any(
                            uid == owner for cid, uid in joined.items() if cid != connection_id
                        )
                        pipe.multi()
                        pipe.hdel(members_key, connection_id)
                        pipe.srem(conn_key, room_id)
                        if owner and not keep_membership and not others:
                            pipe.srem(users_key, owner)
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.debug(f"Room {room_id} changed during leave, retrying")
                        continue
        if was_joined:
            logger.info(f"Connection {connection_id} left room {room_id}")
        return was_joined

    async def detach_connection(self, connection_id: str) -> Set[str]:
        """Drop a closed connection from every room it joined.

        The user keeps their room memberships, so messages sent while they
        are away are queued for them. Returns the affected room ids.
        """
        with store_errors(StoreUnavailable, f"detach connection {connection_id}"):
            room_ids = await self.redis_client.smembers(ROOM_CONN_KEY.format(connection_id=connection_id))
            if room_ids:
                async with self.redis_client.pipeline(transaction=True) as pipe:
                    for room_id in room_ids:
                        pipe.hdel(ROOM_MEMBERS_KEY.format(room_id=room_id), connection_id)
                    pipe.delete(ROOM_CONN_KEY.format(connection_id=connection_id))
                    await pipe.execute()
        if room_ids:
            logger.debug(f"Connection {connection_id} detached from rooms {sorted(room_ids)}")
        return set(room_ids)

    async def members(self, room_id: str) -> Set[str]:
        """User ids currently joined to the room."""
        with store_errors(StoreUnavailable, f"member lookup for room {room_id}"):
            return set(await self.redis_client.smembers(ROOM_USERS_KEY.format(room_id=room_id)))

    async def is_member(self, room_id: str, user_id: str) -> bool:
        with store_errors(StoreUnavailable, f"member lookup for room {room_id}"):
            return bool(await self.redis_client.sismember(ROOM_USERS_KEY.format(room_id=room_id), user_id))

    async def member_connections(self, room_id: str) -> Dict[str, str]:
        """Connection id -> user id for live connections joined to the room."""
        with store_errors(StoreUnavailable, f"member lookup for room {room_id}"):
            return await self.redis_client.hgetall(ROOM_MEMBERS_KEY.format(room_id=room_id))

    async def rooms_for(self, connection_id: str) -> Set[str]:
        with store_errors(StoreUnavailable, f"room lookup for {connection_id}"):
            return set(await self.redis_client.smembers(ROOM_CONN_KEY.format(connection_id=connection_id)))
