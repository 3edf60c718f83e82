import asyncio
import json
from typing import Callable, Optional

import fakeredis
import pytest

from app import build_gateway
from delivery_queue import DeliveryQueue
from identity import JwtIdentityResolver
from presence import PresenceStore
from room_registry import RoomRegistry
from schemas.config import RelayConfig

TEST_SECRET = "test-secret"


class FakeTransport:
    """In-memory stand-in for a starlette WebSocket."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.accepted = False
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self.fail_sends = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.closed or self.fail_sends:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    async def receive(self):
        item = await self.inbound.get()
        if item is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(item, bytes):
            return {"type": "websocket.receive", "bytes": item}
        return {"type": "websocket.receive", "text": item}

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    # test helpers

    def send_event(self, **event):
        self.inbound.put_nowait(json.dumps(event))

    def send_raw(self, data: str):
        self.inbound.put_nowait(data)

    def send_bytes(self, data: bytes):
        self.inbound.put_nowait(data)

    def disconnect(self):
        self.inbound.put_nowait(None)

    def of_type(self, event_type: str):
        return [event for event in self.sent if event.get("type") == event_type]

    async def wait_for(self, event_type: str, predicate: Callable[[dict], bool] = lambda e: True, timeout: float = 2.0):
        async def poll():
            while True:
                for event in self.sent:
                    if event.get("type") == event_type and predicate(event):
                        return event
                await asyncio.sleep(0.005)

        return await asyncio.wait_for(poll(), timeout)


async def eventually(check, timeout: float = 2.0):
    """Await until the async ``check`` returns a truthy value."""
    async def poll():
        while True:
            result = await check()
            if result:
                return result
            await asyncio.sleep(0.005)

    return await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def sync_redis(fake_server):
    """Synchronous client on the same fake server, for seeding and inspection."""
    return fakeredis.FakeRedis(server=fake_server, decode_responses=True)


@pytest.fixture
async def redis_client(fake_server):
    client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def config():
    return RelayConfig(
        storeEndpoint="redis://fake",
        heartbeatIntervalMs=60000,
        heartbeatMissLimit=3,
        queueRetryMaxAttempts=3,
        queueRetryBackoffMs=0,
        store_retry_max_attempts=2,
        store_retry_backoff_ms=0,
        gateway_instance_id="gw-test",
        jwt_secret=TEST_SECRET,
    )


@pytest.fixture
def identity():
    return JwtIdentityResolver(TEST_SECRET)


@pytest.fixture
def presence(redis_client, config):
    return PresenceStore(redis_client, ttl_seconds=config.presence_ttl)


@pytest.fixture
def rooms(redis_client):
    return RoomRegistry(redis_client)


@pytest.fixture
def queue(redis_client):
    return DeliveryQueue(redis_client, batch_size=2)


@pytest.fixture
def gateway(config, redis_client, identity):
    return build_gateway(config, redis_client, identity)


@pytest.fixture
async def connect(gateway, identity):
    """Open a session for a user and wait until it is ready."""
    sessions = []

    async def _connect(user_id: str, gw=None, wait_ready: bool = True):
        gw = gw or gateway
        transport = FakeTransport()
        task = asyncio.create_task(gw.serve(transport, identity.issue(user_id)))
        sessions.append((transport, task))
        if wait_ready:
            await transport.wait_for("ready")
        return transport, task

    yield _connect

    for transport, task in sessions:
        if not task.done():
            transport.disconnect()
    await asyncio.gather(*(task for _, task in sessions), return_exceptions=True)
