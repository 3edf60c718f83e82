import asyncio
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from backend import with_retry
from delivery_queue import DeliveryQueue
from errors import QueueUnavailable, StoreUnavailable
from logging_config import get_logger
from presence import PresenceStore
from room_registry import RoomRegistry
from schemas.config import RelayConfig
from schemas.events import Message

logger = get_logger(__name__)


class Deliverer(Protocol):
    async def deliver(self, connection_id: str, gateway_instance_id: str, recipient_id: str, message: Message) -> bool:
        ...


@dataclass
class FanoutResult:
    message: Message
    # connection-level pushes that were written (or handed to the owning gateway)
    push_count: int = 0
    pushed: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    # recipients for whom neither a push nor an enqueue could be confirmed
    undelivered: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return not self.undelivered


class FanoutCoordinator:
    """Delivers a room message to every other member, live or queued."""

    def __init__(
        self,
        config: RelayConfig,
        rooms: RoomRegistry,
        presence: PresenceStore,
        queue: DeliveryQueue,
        deliverer: Deliverer,
    ):
        self.config = config
        self.rooms = rooms
        self.presence = presence
        self.queue = queue
        self.deliverer = deliverer
        # serializes fan-out per room within this process
        self._room_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        return lock

    async def send_message(self, room_id: str, sender_id: str, payload: Any) -> FanoutResult:
        """Fan a new message out to the room.

        Raises StoreUnavailable if the room's members cannot be resolved.
        """
        message = Message(room_id=room_id, sender_id=sender_id, payload=payload)
        result = FanoutResult(message=message)

        lock = self._room_lock(room_id)
        async with lock:
            members = await with_retry(
                lambda: self.rooms.members(room_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"member lookup for room {room_id}",
            )
            recipients = sorted(members - {sender_id})
            logger.debug(f"Fanning out message {message.message_id} in room {room_id} to {len(recipients)} recipients")

            outcomes = await asyncio.gather(*(self._deliver_to(user_id, message) for user_id in recipients))

        for user_id, (status, pushes) in zip(recipients, outcomes):
            result.push_count += pushes
            if status == "pushed":
                result.pushed.append(user_id)
            elif status == "queued":
                result.queued.append(user_id)
            else:
                result.undelivered.append(user_id)

        logger.info(
            f"Message {message.message_id} in room {room_id}: {len(result.pushed)} pushed, "
            f"{len(result.queued)} queued, {len(result.undelivered)} undelivered"
        )
        return result

    async def _deliver_to(self, user_id: str, message: Message):
        try:
            gateways: Dict[str, str] = await with_retry(
                lambda: self.presence.connection_gateways(user_id),
                attempts=self.config.store_retry_max_attempts,
                backoff_ms=self.config.store_retry_backoff_ms,
                retry_on=StoreUnavailable,
                description=f"presence lookup for {user_id}",
            )
        except StoreUnavailable:
            # unknown presence is handled like offline; queueing keeps at-least-once
            gateways = {}

        pushes = 0
        if gateways:
            writes = await asyncio.gather(
                *(
                    self.deliverer.deliver(connection_id, gateway_id, user_id, message)
                    for connection_id, gateway_id in gateways.items()
                )
            )
            pushes = sum(1 for ok in writes if ok)
            if all(writes):
                return "pushed", pushes
            logger.warning(
                f"Push of {message.message_id} failed on {len(writes) - pushes} of {len(writes)} "
                f"connections of {user_id}, queueing instead"
            )

        if await self.enqueue(user_id, message):
            return "queued", pushes
        if pushes:
            # at least one device has it
            return "pushed", pushes
        return "undelivered", pushes

    async def enqueue(self, user_id: str, message: Message) -> bool:
        """Durably queue ``message`` for ``user_id`` with bounded retries."""
        try:
            await with_retry(
                lambda: self.queue.enqueue(user_id, message),
                attempts=self.config.queue_retry_max_attempts,
                backoff_ms=self.config.queue_retry_backoff_ms,
                retry_on=QueueUnavailable,
                description=f"enqueue of {message.message_id} for {user_id}",
            )
        except QueueUnavailable:
            logger.error(f"Delivery of {message.message_id} to {user_id} is uncertain: queue unavailable")
            return False
        return True
