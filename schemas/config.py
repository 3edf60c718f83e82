from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional
import uuid

import constants


class RelayConfig(BaseModel):
    """Process configuration injected into the gateway.

    Accepts both camelCase option names (``storeEndpoint``) and attribute names.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    store_endpoint: str = constants.STORE_ENDPOINT
    heartbeat_interval_ms: int = Field(default=30000, gt=0)
    heartbeat_miss_limit: int = Field(default=3, ge=1)
    queue_retry_max_attempts: int = Field(default=5, ge=1)
    queue_retry_backoff_ms: int = Field(default=100, ge=0)
    store_retry_max_attempts: int = Field(default=3, ge=1)
    store_retry_backoff_ms: int = Field(default=100, ge=0)
    gateway_instance_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    jwt_secret: str = constants.ACCESS_TOKEN_SECRET
    jwt_algorithm: str = constants.ACCESS_TOKEN_ALGORITHM
    drain_batch_size: int = Field(default=100, ge=1)
    presence_sweep_interval_ms: Optional[int] = Field(default=None, gt=0)

    @property
    def heartbeat_interval(self) -> float:
        return self.heartbeat_interval_ms / 1000

    @property
    def heartbeat_timeout(self) -> float:
        """Seconds without inbound traffic before a connection is considered dead."""
        return self.heartbeat_interval * self.heartbeat_miss_limit

    @property
    def presence_ttl(self) -> int:
        return max(1, int(round(self.heartbeat_timeout)))

    @property
    def sweep_interval(self) -> float:
        if self.presence_sweep_interval_ms:
            return self.presence_sweep_interval_ms / 1000
        return self.heartbeat_interval

    @classmethod
    def from_env(cls) -> "RelayConfig":
        options = {
            "store_endpoint": constants.STORE_ENDPOINT,
            "heartbeat_interval_ms": constants.HEARTBEAT_INTERVAL_MS,
            "heartbeat_miss_limit": constants.HEARTBEAT_MISS_LIMIT,
            "queue_retry_max_attempts": constants.QUEUE_RETRY_MAX_ATTEMPTS,
            "queue_retry_backoff_ms": constants.QUEUE_RETRY_BACKOFF_MS,
            "store_retry_max_attempts": constants.STORE_RETRY_MAX_ATTEMPTS,
            "store_retry_backoff_ms": constants.STORE_RETRY_BACKOFF_MS,
            "drain_batch_size": constants.DRAIN_BATCH_SIZE,
        }
        if constants.GATEWAY_INSTANCE_ID:
            options["gateway_instance_id"] = constants.GATEWAY_INSTANCE_ID
        return cls(**options)
