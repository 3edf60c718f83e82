from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from backend import store_errors
from errors import QueueUnavailable
from logging_config import get_logger
from redis_keys import QUEUE_SEQ_KEY, QUEUE_INDEX_KEY, QUEUE_ENTRIES_KEY, QUEUE_ATTEMPTS_KEY
from schemas.events import Message, QueuedDelivery

logger = get_logger(__name__)


class DeliveryQueue:
    """Durable per-recipient FIFO of messages that could not be pushed live.

    Entries stay in the store until the recipient acknowledges them, which
    gives at-least-once delivery. Enqueueing the same message id twice for
    the same recipient keeps the first copy and its position.
    """

    def __init__(self, redis_client: redis.Redis, batch_size: int = 100):
        self.redis_client = redis_client
        self.batch_size = batch_size

    async def enqueue(self, recipient_user_id: str, message: Message) -> QueuedDelivery:
        """Append ``message`` to the recipient's queue.

        The sequence is claimed and the entry indexed in one transaction, so
        sequences become visible in order even with several writer processes.
        """
        delivery = QueuedDelivery(recipient_user_id=recipient_user_id, message=message)
        seq_key = QUEUE_SEQ_KEY.format(user_id=recipient_user_id)
        entries_key = QUEUE_ENTRIES_KEY.format(user_id=recipient_user_id)
        index_key = QUEUE_INDEX_KEY.format(user_id=recipient_user_id)
        with store_errors(QueueUnavailable, f"enqueue {message.message_id} for {recipient_user_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(seq_key)
                        sequence = int(await pipe.get(seq_key) or 0) + 1
                        delivery.sequence = sequence
                        pipe.multi()
                        pipe.set(seq_key, sequence)
                        pipe.hsetnx(entries_key, message.message_id, delivery.model_dump_json())
                        pipe.zadd(index_key, {message.message_id: sequence}, nx=True)
                        _, created, _ = await pipe.execute()
                        break
                    except WatchError:
                        logger.debug(f"Sequence for {recipient_user_id} claimed concurrently, retrying")
                        continue
        if created:
            logger.info(f"Queued message {message.message_id} for offline user {recipient_user_id} (seq {sequence})")
        else:
            logger.debug(f"Message {message.message_id} already queued for {recipient_user_id}")
        return delivery

    async def drain(self, recipient_user_id: str, after: Optional[int] = None) -> AsyncIterator[QueuedDelivery]:
        """Yield pending deliveries in enqueue order.

        Reads lazily in batches and stops when nothing newer than the cursor is
        left. Nothing is removed here; an interrupted drain leaves unacknowledged
        entries in place, and passing ``after`` resumes past a known sequence.
        Each yielded delivery has its attempt counter bumped.
        """
        index_key = QUEUE_INDEX_KEY.format(user_id=recipient_user_id)
        entries_key = QUEUE_ENTRIES_KEY.format(user_id=recipient_user_id)
        attempts_key = QUEUE_ATTEMPTS_KEY.format(user_id=recipient_user_id)
        cursor = after if after is not None else 0

        while True:
            with store_errors(QueueUnavailable, f"drain for {recipient_user_id}"):
                batch = await self.redis_client.zrangebyscore(
                    index_key, f"({cursor}", "+inf", start=0, num=self.batch_size, withscores=True
                )
                if not batch:
                    return
                message_ids = [message_id for message_id, _ in batch]
                raw_entries = await self.redis_client.hmget(entries_key, message_ids)

            for (message_id, score), raw in zip(batch, raw_entries):
                cursor = int(score)
                if raw is None:
                    # acknowledged between the index read and the entry read
                    continue
                with store_errors(QueueUnavailable, f"drain for {recipient_user_id}"):
                    attempts = await self.redis_client.hincrby(attempts_key, message_id, 1)
                delivery = QueuedDelivery.model_validate_json(raw)
                delivery.delivery_attempts = attempts
                delivery.sequence = cursor
                yield delivery

    async def acknowledge(self, recipient_user_id: str, message_id: str) -> bool:
        """Remove one delivered message. Returns False if it was not queued."""
        with store_errors(QueueUnavailable, f"acknowledge {message_id} for {recipient_user_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.zrem(QUEUE_INDEX_KEY.format(user_id=recipient_user_id), message_id)
                pipe.hdel(QUEUE_ENTRIES_KEY.format(user_id=recipient_user_id), message_id)
                pipe.hdel(QUEUE_ATTEMPTS_KEY.format(user_id=recipient_user_id), message_id)
                removed, _, _ = await pipe.execute()
        if removed:
            logger.debug(f"Message {message_id} acknowledged by {recipient_user_id}")
        return bool(removed)

    async def pending_count(self, recipient_user_id: str) -> int:
        with store_errors(QueueUnavailable, f"pending count for {recipient_user_id}"):
            return await self.redis_client.zcard(QUEUE_INDEX_KEY.format(user_id=recipient_user_id))
