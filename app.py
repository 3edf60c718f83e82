from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import os

import redis.asyncio as redis

from backend import create_redis_client
from delivery_queue import DeliveryQueue
from gateway import ConnectionGateway
from identity import IdentityResolver, JwtIdentityResolver
from logging_config import get_logger, setup_logging
from presence import PresenceStore
from room_registry import RoomRegistry
from routers.rooms import rooms_router
from routers.users import users_router
from schemas.config import RelayConfig

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_gateway(config: RelayConfig, redis_client: redis.Redis, identity: Optional[IdentityResolver] = None) -> ConnectionGateway:
    """Wire the stores and the gateway around one shared Redis client."""
    presence = PresenceStore(redis_client, ttl_seconds=config.presence_ttl)
    rooms = RoomRegistry(redis_client)
    queue = DeliveryQueue(redis_client, batch_size=config.drain_batch_size)
    identity = identity or JwtIdentityResolver(config.jwt_secret, config.jwt_algorithm)
    return ConnectionGateway(config, redis_client, presence, rooms, queue, identity)


def create_app(
    config: Optional[RelayConfig] = None,
    redis_client: Optional[redis.Redis] = None,
    identity: Optional[IdentityResolver] = None,
) -> FastAPI:
    config = config or RelayConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = redis_client is None
        client = redis_client or await create_redis_client(config.store_endpoint)
        gateway = build_gateway(config, client, identity)
        app.state.config = config
        app.state.gateway = gateway

        # Background tasks: routed pushes from other gateways, and the presence TTL sweep
        tasks = [
            asyncio.create_task(gateway.listen_for_remote_pushes()),
            asyncio.create_task(gateway.sweep_presence()),
        ]
        logger.info(f"Gateway {gateway.instance_id} started")
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if owns_client:
                await client.aclose()
            logger.info(f"Gateway {gateway.instance_id} stopped")

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(users_router)

    @app.get("/health")
    async def health():
        gateway: ConnectionGateway = app.state.gateway
        try:
            await gateway.redis_client.ping()
            store = "ok"
        except Exception as e:
            logger.warning(f"Health check could not reach the store: {e}")
            store = "unavailable"
        return {
            "status": "ok" if store == "ok" else "degraded",
            "store": store,
            "gateway_instance_id": gateway.instance_id,
            "local_connections": len(gateway.connections),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        """WebSocket endpoint for the relay.

        Credentials come from the ``token`` query parameter or an
        ``Authorization: Bearer`` header.
        """
        credentials = token or websocket.headers.get("authorization")
        await app.state.gateway.serve(websocket, credentials)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
