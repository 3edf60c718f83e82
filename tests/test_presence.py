import time

import pytest

from errors import StoreUnavailable
from redis_keys import PRESENCE_HEARTBEATS_KEY


@pytest.mark.asyncio
async def test_register_makes_user_online(presence):
    assert await presence.is_online("alice") is False

    await presence.register_connection("alice", "c1", "gw-1")

    assert await presence.is_online("alice") is True
    assert await presence.list_connections("alice") == {"c1"}
    assert await presence.connection_gateways("alice") == {"c1": "gw-1"}


@pytest.mark.asyncio
async def test_register_is_idempotent(presence):
    await presence.register_connection("alice", "c1", "gw-1")
    await presence.register_connection("alice", "c1", "gw-1")

    assert await presence.list_connections("alice") == {"c1"}


@pytest.mark.asyncio
async def test_user_stays_online_until_last_connection_closes(presence):
    """Multi-device: closing one socket must not take the user offline."""
    await presence.register_connection("alice", "phone", "gw-1")
    await presence.register_connection("alice", "laptop", "gw-2")

    went_offline = await presence.deregister_connection("alice", "phone")
    assert went_offline is False
    assert await presence.is_online("alice") is True
    assert await presence.list_connections("alice") == {"laptop"}

    went_offline = await presence.deregister_connection("alice", "laptop")
    assert went_offline is True
    assert await presence.is_online("alice") is False
    assert await presence.list_connections("alice") == set()


@pytest.mark.asyncio
async def test_deregister_unknown_connection_is_harmless(presence):
    assert await presence.deregister_connection("ghost", "nope") is True
    assert await presence.is_online("ghost") is False


@pytest.mark.asyncio
async def test_register_stamps_last_seen_and_ttl(presence, sync_redis, config):
    await presence.register_connection("alice", "c1", "gw-1")

    entry = await presence.get_entry("alice")
    assert entry["connections"]["c1"]["gateway"] == "gw-1"
    assert entry["last_seen"]
    assert 0 < sync_redis.ttl("presence:user:alice") <= config.presence_ttl
    assert sync_redis.zscore(PRESENCE_HEARTBEATS_KEY, "c1") is not None


@pytest.mark.asyncio
async def test_heartbeat_reports_unknown_connection(presence):
    assert await presence.heartbeat("alice", "c1") is False

    await presence.register_connection("alice", "c1", "gw-1")
    assert await presence.heartbeat("alice", "c1") is True


@pytest.mark.asyncio
async def test_sweep_expires_stale_connections_only(presence, sync_redis):
    await presence.register_connection("alice", "stale", "gw-1")
    await presence.register_connection("alice", "fresh", "gw-1")
    await presence.register_connection("bob", "gone", "gw-2")
    # pretend two sockets stopped heartbeating ten minutes ago
    old = time.time() - 600
    sync_redis.zadd(PRESENCE_HEARTBEATS_KEY, {"stale": old, "gone": old})

    removed = await presence.sweep(max_age_seconds=60)

    assert sorted(removed) == [("alice", "stale"), ("bob", "gone")]
    assert await presence.list_connections("alice") == {"fresh"}
    assert await presence.is_online("bob") is False


@pytest.mark.asyncio
async def test_store_outage_raises_store_unavailable(presence, fake_server):
    fake_server.connected = False

    with pytest.raises(StoreUnavailable):
        await presence.register_connection("alice", "c1", "gw-1")
    with pytest.raises(StoreUnavailable):
        await presence.is_online("alice")


@pytest.mark.asyncio
async def test_heartbeat_does_not_revive_a_connection_removed_meanwhile(presence, redis_client, sync_redis, monkeypatch):
    await presence.register_connection("alice", "c1", "gw-a")
    real_pipeline = redis_client.pipeline

    def racing_pipeline(*args, **kwargs):
        pipe = real_pipeline(*args, **kwargs)
        real_hget = pipe.hget

        async def hget_then_sweep(key, field):
            value = await real_hget(key, field)
            # another process expires the connection before the write lands
            sync_redis.hdel(key, field)
            return value

        pipe.hget = hget_then_sweep
        return pipe

    monkeypatch.setattr(redis_client, "pipeline", racing_pipeline)

    assert await presence.heartbeat("alice", "c1") is False
    assert sync_redis.exists("presence:user:alice") == 0
