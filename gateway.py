import asyncio
import json
import time
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis

from backend import UNREACHABLE_ERRORS, with_retry
from constants import CLOSE_GOING_AWAY, CLOSE_POLICY_VIOLATION
from delivery_queue import DeliveryQueue
from errors import HeartbeatTimeout, MalformedEvent, QueueUnavailable, StoreUnavailable, Unauthorized
from fanout import FanoutCoordinator
from identity import IdentityResolver
from logging_config import get_logger
from presence import PresenceStore
from redis_keys import GATEWAY_CHANNEL
from room_registry import RoomRegistry
from schemas.config import RelayConfig
from schemas.events import (
    AckEvent,
    ErrorEvent,
    JoinRoomEvent,
    LeaveRoomEvent,
    Message,
    MessageAccepted,
    MessagePush,
    MessageRejected,
    PingEvent,
    Pong,
    Ready,
    SendMessageEvent,
    WireModel,
    parse_inbound_event,
)

logger = get_logger(__name__)

# message ids remembered per connection for duplicate suppression
SEEN_MESSAGE_LIMIT = 1024


class Transport(Protocol):
    """The slice of a websocket the gateway needs (matches starlette's WebSocket).

    ``receive`` returns raw ASGI messages so binary frames and disconnects can
    be told apart from text.
    """

    async def accept(self) -> None: ...

    async def send_json(self, data) -> None: ...

    async def receive(self) -> dict: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DRAINING = "draining"
    ACTIVE = "active"
    CLOSED = "closed"


class Connection:
    def __init__(self, transport: Transport, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.transport = transport
        self.user_id: Optional[str] = None
        self.room_ids = set()
        self.state = ConnectionState.CONNECTING
        self.last_seen = time.monotonic()
        self.connected_at = time.time()
        # set while presence registration is failing
        self.degraded = False
        # sequence of the last queued message pushed to this connection
        self.drain_cursor: Optional[int] = None
        self.ready = asyncio.Event()
        self._held: List[Message] = []
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._send_lock = asyncio.Lock()

    def touch(self):
        self.last_seen = time.monotonic()

    def has_seen(self, message_id: str) -> bool:
        return message_id in self._seen

    def _remember(self, message_id: str):
        self._seen[message_id] = None
        self._seen.move_to_end(message_id)
        while len(self._seen) > SEEN_MESSAGE_LIMIT:
            self._seen.popitem(last=False)

    async def send(self, event: WireModel):
        async with self._send_lock:
            await self.transport.send_json(event.to_wire())

    async def push(self, message: Message, replay: bool = False) -> bool:
        """Write a messagePush to the socket, at most once per message id.

        Live pushes that arrive before the drain has finished are held and
        flushed afterwards so they never overtake queued messages.
        """
        if self.state == ConnectionState.CLOSED:
            return False
        if self.has_seen(message.message_id):
            logger.debug(f"Skipping duplicate {message.message_id} for connection {self.connection_id}")
            return True
        if not replay and self.state != ConnectionState.ACTIVE:
            self._held.append(message)
            self._remember(message.message_id)
            return True
        try:
            await self.send(MessagePush.from_message(message, replay=replay))
        except Exception as e:
            logger.warning(f"Push of {message.message_id} to connection {self.connection_id} failed: {e}")
            return False
        self._remember(message.message_id)
        return True


class ConnectionGateway:
    """Owns the websocket connections of this process and their lifecycle.

    Each connection moves Connecting -> Authenticated -> Draining -> Active
    -> Closed. Pushes for connections owned by other gateway processes travel
    over the owner's Redis pub/sub channel.
    """

    def __init__(
        self,
        config: RelayConfig,
        redis_client: redis.Redis,
        presence: PresenceStore,
        rooms: RoomRegistry,
        queue: DeliveryQueue,
        identity: IdentityResolver,
    ):
        self.config = config
        self.redis_client = redis_client
        self.presence = presence
        self.rooms = rooms
        self.queue = queue
        self.identity = identity
        self.instance_id = config.gateway_instance_id
        self.connections: Dict[str, Connection] = {}
        self.fanout = FanoutCoordinator(config, rooms, presence, queue, self)

    # Connection lifecycle

    async def serve(self, transport: Transport, credentials: Optional[str]) -> Connection:
        """Run one connection from handshake to cleanup."""
        conn = Connection(transport)
        logger.info(f"WebSocket connection attempt {conn.connection_id}")

        try:
            conn.user_id = await self.identity.resolve(credentials)
        except Unauthorized as e:
            logger.warning(f"Connection {conn.connection_id} rejected: {e}")
            conn.state = ConnectionState.CLOSED
            await transport.close(code=CLOSE_POLICY_VIOLATION, reason=Unauthorized.reason)
            return conn

        await transport.accept()
        conn.state = ConnectionState.AUTHENTICATED
        self.connections[conn.connection_id] = conn
        logger.info(f"Connection {conn.connection_id} authenticated as user {conn.user_id}")

        receiver = asyncio.create_task(self._receive_loop(conn))
        watchdog = asyncio.create_task(self._watch_heartbeat(conn))
        drainer = asyncio.create_task(self._drain_then_activate(conn))

        close_code, close_reason = 1000, None
        pending = {receiver, watchdog, drainer}
        try:
            finished = False
            while not finished:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if task is drainer and exc is None:
                        continue
                    finished = True
                    if isinstance(exc, HeartbeatTimeout):
                        logger.info(f"Connection {conn.connection_id} timed out: {exc}")
                        close_code, close_reason = CLOSE_GOING_AWAY, HeartbeatTimeout.reason
                    elif exc is not None:
                        logger.error(f"Connection {conn.connection_id} failed: {exc}", exc_info=exc)
        finally:
            for task in (drainer, receiver, watchdog):
                task.cancel()
            await asyncio.gather(drainer, receiver, watchdog, return_exceptions=True)
            await self._close(conn, close_code, close_reason)
        return conn

    async def _receive_loop(self, conn: Connection):
        message_count = 0
        while True:
            frame = await conn.transport.receive()
            if frame["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected for connection {conn.connection_id} (code {frame.get('code')})")
                return
            message_count += 1
            conn.touch()
            data = frame.get("text")
            if data is None:
                logger.info(f"Non-text frame from connection {conn.connection_id} rejected")
                await conn.send(ErrorEvent(reason=MalformedEvent.reason, detail="only text frames are accepted"))
                continue
            logger.debug(f"Received event #{message_count} from connection {conn.connection_id}")
            await self.handle_event(conn, data)

    async def _watch_heartbeat(self, conn: Connection):
        interval = self.config.heartbeat_interval
        timeout = self.config.heartbeat_timeout
        while True:
            await asyncio.sleep(interval)
            silent_for = time.monotonic() - conn.last_seen
            if silent_for > timeout:
                raise HeartbeatTimeout(
                    f"no heartbeat from {conn.connection_id} for {silent_for:.1f}s "
                    f"({self.config.heartbeat_miss_limit} missed)"
                )

    async def _drain_then_activate(self, conn: Connection):
        """Flush the user's queued messages, then make the connection live."""
        conn.state = ConnectionState.DRAINING
        drained, cursor = await self._drain(conn, None)

        await self._register_presence(conn)

        # catch anything fan-out queued while this connection was not yet visible
        caught_up, conn.drain_cursor = await self._drain(conn, cursor)
        drained += caught_up

        await conn.send(Ready(connection_id=conn.connection_id, user_id=conn.user_id, drained=drained))

        # no await between the last empty check and the state change
        while conn._held:
            # popped only once written, so a close mid-send still queues it
            message = conn._held[0]
            try:
                await conn.send(MessagePush.from_message(message))
            except Exception as e:
                logger.warning(f"Flushing held message {message.message_id} failed, queueing: {e}")
                await self.fanout.enqueue(conn.user_id, message)
            conn._held.pop(0)
        conn.state = ConnectionState.ACTIVE
        conn.ready.set()
        logger.info(f"Connection {conn.connection_id} active (drained {drained} queued messages)")

    async def _drain(self, conn: Connection, after: Optional[int]) -> Tuple[int, Optional[int]]:
        progress = {"cursor": after, "count": 0}

        async def run():
            async for delivery in self.queue.drain(conn.user_id, after=progress["cursor"]):
                if not await conn.push(delivery.message, replay=True):
                    # socket is gone; entries stay queued for the next reconnect
                    return
                progress["cursor"] = delivery.sequence
                progress["count"] += 1

        try:
            await with_retry(
                run,
                attempts=self.config.queue_retry_max_attempts,
                backoff_ms=self.config.queue_retry_backoff_ms,
                retry_on=QueueUnavailable,
                description=f"drain for {conn.user_id}",
            )
        except QueueUnavailable:
            logger.error(f"Drain for user {conn.user_id} exhausted retries after {progress['count']} messages")
        return progress["count"], progress["cursor"]

    async def _register_presence(self, conn: Connection, rejoin: bool = False) -> bool:
        try:
            await with_retry(
                lambda: self.presence.register_connection(conn.user_id, conn.connection_id, self.instance_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"presence registration for {conn.connection_id}",
            )
            if rejoin:
                for room_id in sorted(conn.room_ids):
                    await self.rooms.join(room_id, conn.connection_id, conn.user_id)
        except StoreUnavailable as e:
            if not conn.degraded:
                logger.warning(f"Connection {conn.connection_id} running degraded, presence not registered: {e}")
            conn.degraded = True
            return False
        if conn.degraded:
            logger.info(f"Connection {conn.connection_id} recovered from degraded mode")
        conn.degraded = False
        return True

    async def _close(self, conn: Connection, code: int = 1000, reason: Optional[str] = None):
        """Tear down a connection. Runs for graceful and abrupt closes alike."""
        conn.state = ConnectionState.CLOSED
        conn.ready.set()
        self.connections.pop(conn.connection_id, None)

        # live pushes held for a drain that never finished were counted as delivered
        held, conn._held = conn._held, []
        for message in held:
            if not await self.fanout.enqueue(conn.user_id, message):
                logger.error(f"Held message {message.message_id} for {conn.user_id} lost on close")
        if held:
            logger.info(f"Queued {len(held)} held messages of closed connection {conn.connection_id}")

        try:
            await with_retry(
                lambda: self.presence.deregister_connection(conn.user_id, conn.connection_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"presence deregistration for {conn.connection_id}",
            )
        except StoreUnavailable:
            logger.error(f"Could not deregister {conn.connection_id}; presence sweep will expire it")

        try:
            for room_id in sorted(conn.room_ids):
                await self.rooms.leave(room_id, conn.connection_id, conn.user_id, keep_membership=True)
            await self.rooms.detach_connection(conn.connection_id)
        except StoreUnavailable:
            logger.error(f"Could not remove {conn.connection_id} from rooms {sorted(conn.room_ids)}")

        try:
            await conn.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket {conn.connection_id}: {e}")
        logger.info(f"Connection {conn.connection_id} for user {conn.user_id} closed")

    # Inbound events

    async def handle_event(self, conn: Connection, data: str):
        try:
            event = parse_inbound_event(data)
        except MalformedEvent as e:
            logger.info(f"Malformed event from connection {conn.connection_id}: {e}")
            await conn.send(ErrorEvent(reason=MalformedEvent.reason, detail=str(e)))
            return

        if isinstance(event, PingEvent):
            await self._on_ping(conn)
            return
        if isinstance(event, AckEvent):
            await self._on_ack(conn, event)
            return

        # room traffic waits for the drain to finish
        await conn.ready.wait()
        if conn.state == ConnectionState.CLOSED:
            return
        if isinstance(event, JoinRoomEvent):
            await self._on_join(conn, event)
        elif isinstance(event, LeaveRoomEvent):
            await self._on_leave(conn, event)
        elif isinstance(event, SendMessageEvent):
            await self._on_send(conn, event)

    async def _on_ping(self, conn: Connection):
        await conn.send(Pong())
        if conn.state != ConnectionState.ACTIVE:
            return
        if conn.degraded:
            if await self._register_presence(conn, rejoin=True):
                # fan-out queued for this user while they looked offline
                _, conn.drain_cursor = await self._drain(conn, conn.drain_cursor)
            return
        try:
            registered = await self.presence.heartbeat(conn.user_id, conn.connection_id)
        except StoreUnavailable as e:
            logger.warning(f"Heartbeat for {conn.connection_id} not recorded: {e}")
            return
        if not registered:
            # swept while still alive
            logger.info(f"Connection {conn.connection_id} was expired by the sweep, registering again")
            await self._register_presence(conn, rejoin=True)

    async def _on_ack(self, conn: Connection, event: AckEvent):
        try:
            removed = await with_retry(
                lambda: self.queue.acknowledge(conn.user_id, event.message_id),
                attempts=self.config.queue_retry_max_attempts,
                backoff_ms=self.config.queue_retry_backoff_ms,
                retry_on=QueueUnavailable,
                description=f"ack of {event.message_id}",
            )
        except QueueUnavailable:
            logger.warning(f"Ack of {event.message_id} by {conn.user_id} lost; it will be redelivered")
            return
        if not removed:
            logger.debug(f"Ack of {event.message_id} by {conn.user_id} matched nothing queued")

    async def _on_join(self, conn: Connection, event: JoinRoomEvent):
        try:
            await with_retry(
                lambda: self.rooms.join(event.room_id, conn.connection_id, conn.user_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"join of room {event.room_id}",
            )
        except StoreUnavailable as e:
            await conn.send(ErrorEvent(reason=StoreUnavailable.reason, detail=f"joinRoom {event.room_id}: {e}"))
            return
        conn.room_ids.add(event.room_id)

    async def _on_leave(self, conn: Connection, event: LeaveRoomEvent):
        try:
            await with_retry(
                lambda: self.rooms.leave(event.room_id, conn.connection_id, conn.user_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"leave of room {event.room_id}",
            )
        except StoreUnavailable as e:
            await conn.send(ErrorEvent(reason=StoreUnavailable.reason, detail=f"leaveRoom {event.room_id}: {e}"))
            return
        conn.room_ids.discard(event.room_id)

    async def _on_send(self, conn: Connection, event: SendMessageEvent):
        try:
            if event.room_id not in conn.room_ids and not await self.rooms.is_member(event.room_id, conn.user_id):
                await conn.send(MessageRejected(reason="not-a-member"))
                return
            result = await self.fanout.send_message(event.room_id, conn.user_id, event.payload)
        except StoreUnavailable as e:
            logger.warning(f"Message from {conn.user_id} to room {event.room_id} rejected: {e}")
            await conn.send(MessageRejected(reason=StoreUnavailable.reason))
            return

        if result.accepted:
            await conn.send(MessageAccepted(message_id=result.message.message_id))
        else:
            await conn.send(MessageRejected(reason=QueueUnavailable.reason, message_id=result.message.message_id))

    # Outbound delivery

    async def deliver(self, connection_id: str, gateway_instance_id: str, recipient_id: str, message: Message) -> bool:
        """Push a message to one connection, wherever it lives."""
        if gateway_instance_id == self.instance_id:
            conn = self.connections.get(connection_id)
            if conn is None:
                logger.debug(f"Connection {connection_id} is no longer on this gateway")
                return False
            return await conn.push(message)

        envelope = {
            "recipientId": recipient_id,
            "connectionId": connection_id,
            "message": message.to_wire(),
        }
        channel = GATEWAY_CHANNEL.format(instance_id=gateway_instance_id)
        try:
            receivers = await self.redis_client.publish(channel, json.dumps(envelope))
        except UNREACHABLE_ERRORS as e:
            logger.warning(f"Could not publish {message.message_id} to gateway {gateway_instance_id}: {e}")
            return False
        if not receivers:
            logger.warning(f"Gateway {gateway_instance_id} is not listening; {message.message_id} not pushed")
        return receivers > 0

    async def handle_remote_push(self, data: str):
        """Deliver a push another gateway routed to one of our connections."""
        try:
            envelope = json.loads(data)
            message = Message.model_validate(envelope["message"])
            connection_id = envelope["connectionId"]
            recipient_id = envelope["recipientId"]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Dropping unreadable gateway envelope: {e}")
            return
        conn = self.connections.get(connection_id)
        if conn is not None and await conn.push(message):
            return
        # the sender's gateway already counted this as pushed
        logger.info(f"Routed push {message.message_id} for {connection_id} failed locally, queueing")
        await self.fanout.enqueue(recipient_id, message)

    async def listen_for_remote_pushes(self):
        """Background task: consume this gateway's pub/sub channel."""
        channel = GATEWAY_CHANNEL.format(instance_id=self.instance_id)
        logger.info(f"Starting gateway listener on {channel}")
        pubsub = None
        try:
            pubsub = self.redis_client.pubsub()
            await pubsub.subscribe(channel)
            while True:
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                except UNREACHABLE_ERRORS as e:
                    logger.error(f"Gateway listener lost the store: {e}")
                    await asyncio.sleep(self.config.store_retry_backoff_ms / 1000)
                    continue
                if message is None or message.get("type") != "message":
                    continue
                await self.handle_remote_push(message["data"])
        except asyncio.CancelledError:
            logger.info(f"Gateway listener on {channel} cancelled")
            raise
        finally:
            if pubsub is not None:
                try:
                    await pubsub.aclose()
                except Exception as e:
                    logger.error(f"Error closing pub/sub for {channel}: {e}")

    # Presence sweep

    async def sweep_once(self) -> List[Tuple[str, str]]:
        removed = await self.presence.sweep(self.config.heartbeat_timeout)
        for user_id, connection_id in removed:
            await self.rooms.detach_connection(connection_id)
            conn = self.connections.get(connection_id)
            if conn is not None:
                # our own connection lost its entry; the next ping restores it
                logger.warning(f"Sweep expired local connection {connection_id} of user {user_id}")
        return removed

    async def sweep_presence(self):
        """Background task: expire presence entries whose heartbeat went stale."""
        logger.info(f"Starting presence sweep every {self.config.sweep_interval}s")
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep_once()
            except StoreUnavailable as e:
                logger.warning(f"Presence sweep skipped: {e}")
