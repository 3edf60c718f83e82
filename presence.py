import json
import time
from typing import Dict, List, Optional, Set, Tuple
from datetime import datetime, timezone

import redis.asyncio as redis
from redis.exceptions import WatchError

from backend import store_errors
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import PRESENCE_USER_KEY, PRESENCE_OWNER_KEY, PRESENCE_HEARTBEATS_KEY

logger = get_logger(__name__)


class PresenceStore:
    """Shared registry of which connections serve which user, and on which gateway.

    A user is online while their presence hash exists. All writes go through
    MULTI/EXEC pipelines so several gateway processes can register and
    deregister the same user concurrently.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    async def register_connection(self, user_id: str, connection_id: str, gateway_instance_id: str):
        """Add a connection to the user's presence set. Idempotent."""
        logger.debug(f"Registering connection {connection_id} for user {user_id} on gateway {gateway_instance_id}")
        now = time.time()
        entry = {
            "gateway": gateway_instance_id,
            "last_seen": datetime.fromtimestamp(now, timezone.utc).isoformat(),
        }
        user_key = PRESENCE_USER_KEY.format(user_id=user_id)
        with store_errors(StoreUnavailable, f"register connection {connection_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(user_key, connection_id, json.dumps(entry))
                pipe.expire(user_key, self.ttl_seconds)
                pipe.hset(PRESENCE_OWNER_KEY, connection_id, user_id)
                pipe.zadd(PRESENCE_HEARTBEATS_KEY, {connection_id: now})
                await pipe.execute()
        logger.info(f"User {user_id} online via connection {connection_id}")
        return True

    async def heartbeat(self, user_id: str, connection_id: str) -> bool:
        """Refresh ``last_seen`` for a registered connection.

        Returns False when the connection is no longer registered (for example
        after the sweep expired it), so the caller can register it again.
        """
        user_key = PRESENCE_USER_KEY.format(user_id=user_id)
        now = time.time()
        with store_errors(StoreUnavailable, f"heartbeat for connection {connection_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        # a concurrent deregister must not be undone by this write
                        await pipe.watch(user_key)
                        raw = await pipe.hget(user_key, connection_id)
                        if raw is None:
                            await pipe.unwatch()
                            return False
                        entry = json.loads(raw)
                        entry["last_seen"] = datetime.fromtimestamp(now, timezone.utc).isoformat()
                        pipe.multi()
                        pipe.hset(user_key, connection_id, json.dumps(entry))
                        pipe.expire(user_key, self.ttl_seconds)
                        pipe.zadd(PRESENCE_HEARTBEATS_KEY, {connection_id: now})
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug(f"Presence of {user_id} changed during heartbeat, retrying")
                        continue

    async def deregister_connection(self, user_id: str, connection_id: str) -> bool:
        """Remove one connection. Returns True if the user went offline."""
        logger.debug(f"Deregistering connection {connection_id} for user {user_id}")
        user_key = PRESENCE_USER_KEY.format(user_id=user_id)
        with store_errors(StoreUnavailable, f"deregister connection {connection_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hdel(user_key, connection_id)
                pipe.hdel(PRESENCE_OWNER_KEY, connection_id)
                pipe.zrem(PRESENCE_HEARTBEATS_KEY, connection_id)
                # Redis drops the hash once its last field is gone
                pipe.exists(user_key)
                results = await pipe.execute()
        went_offline = results[-1] == 0
        if went_offline:
            logger.info(f"User {user_id} went offline (last connection {connection_id} closed)")
        else:
            logger.debug(f"User {user_id} closed connection {connection_id}, other connections remain")
        return went_offline

    async def is_online(self, user_id: str) -> bool:
        with store_errors(StoreUnavailable, f"presence lookup for {user_id}"):
            return await self.redis_client.exists(PRESENCE_USER_KEY.format(user_id=user_id)) > 0

    async def list_connections(self, user_id: str) -> Set[str]:
        with store_errors(StoreUnavailable, f"connection listing for {user_id}"):
            return set(await self.redis_client.hkeys(PRESENCE_USER_KEY.format(user_id=user_id)))

    async def connection_gateways(self, user_id: str) -> Dict[str, str]:
        """Map each live connection of a user to the gateway instance that owns it."""
        with store_errors(StoreUnavailable, f"connection listing for {user_id}"):
            entries = await self.redis_client.hgetall(PRESENCE_USER_KEY.format(user_id=user_id))
        gateways = {}
        for connection_id, raw in entries.items():
            try:
                gateways[connection_id] = json.loads(raw)["gateway"]
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning(f"Ignoring unreadable presence entry {connection_id} for user {user_id}")
        return gateways

    async def get_entry(self, user_id: str) -> Optional[dict]:
        """Full presence entry for a user, or None when offline."""
        with store_errors(StoreUnavailable, f"presence lookup for {user_id}"):
            entries = await self.redis_client.hgetall(PRESENCE_USER_KEY.format(user_id=user_id))
        if not entries:
            return None
        connections = {}
        for connection_id, raw in entries.items():
            try:
                connections[connection_id] = json.loads(raw)
            except json.JSONDecodeError:
                continue
        last_seen = max((c.get("last_seen", "") for c in connections.values()), default=None)
        return {"user_id": user_id, "connections": connections, "last_seen": last_seen}

    async def sweep(self, max_age_seconds: float) -> List[Tuple[str, str]]:
        """Expire connections whose last heartbeat is older than ``max_age_seconds``.

        Returns the ``(user_id, connection_id)`` pairs that were removed.
        """
        cutoff = time.time() - max_age_seconds
        with store_errors(StoreUnavailable, "presence sweep"):
            stale = await self.redis_client.zrangebyscore(PRESENCE_HEARTBEATS_KEY, "-inf", cutoff)
            removed = []
            for connection_id in stale:
                user_id = await self.redis_client.hget(PRESENCE_OWNER_KEY, connection_id)
                if user_id is None:
                    await self.redis_client.zrem(PRESENCE_HEARTBEATS_KEY, connection_id)
                    continue
                # another process may have refreshed it since the range read
                score = await self.redis_client.zscore(PRESENCE_HEARTBEATS_KEY, connection_id)
                if score is not None and score > cutoff:
                    continue
                await self.deregister_connection(user_id, connection_id)
                removed.append((user_id, connection_id))
        if removed:
            logger.info(f"Presence sweep expired {len(removed)} stale connections")
        return removed
