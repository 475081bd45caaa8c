"""
redis_client.py
---------------
Cliente Redis del Motor de Pagos.

Redis solo guarda el challenge OTP activo de cada usuario
(services/otp_service.py); transacciones, órdenes y stock viven en la
base de datos. Cada verificación hace una o dos operaciones cortas, así
que el pool es chico y el timeout por operación es agresivo: un Redis
lento se reporta como 503 y no deja al checkout esperando.

  - connect()/disconnect() desde el lifespan de main.py
  - ping() para /health, nunca lanza
  - unavailable_on_error() traduce cualquier RedisError a
    RedisUnavailableException en un solo lugar

    async with redis_manager.unavailable_on_error(f"leyendo challenge user={user_id}"):
        raw = await redis_manager.client.get(key)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from motor_pagos.core.config import settings
from motor_pagos.core.exceptions import RedisUnavailableException

logger = logging.getLogger(__name__)


class RedisManager:

    def __init__(self):
        self.client: redis.Redis | None = None

    async def connect(self) -> None:
        """Falla el arranque si Redis no responde: sin challenge no hay checkout."""
        self.client = redis.Redis.from_url(
            settings.REDIS_URL,
            max_connections        = settings.REDIS_MAX_CONNECTIONS,
            socket_timeout         = settings.REDIS_OPERATION_TIMEOUT,
            socket_connect_timeout = 2.0,
            retry_on_timeout       = False,
            decode_responses       = False,
        )
        if not await self.ping():
            raise RedisUnavailableException(f"Redis no responde en {settings.REDIS_URL}")
        logger.info("[Redis] Conectado (challenges OTP)")

    async def disconnect(self) -> None:
        if self.client is None:
            return
        await self.client.aclose()
        self.client = None
        logger.info("[Redis] Conexiones cerradas")

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=2.0))
        except (RedisError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"[Redis] PING falló: {e!r}")
            return False

    @asynccontextmanager
    async def unavailable_on_error(self, action: str) -> AsyncIterator[None]:
        if self.client is None:
            logger.error(f"[Redis] Sin cliente al {action}")
            raise RedisUnavailableException()
        try:
            yield
        except RedisError as e:
            logger.error(f"[Redis] Error {action}: {e!r}")
            raise RedisUnavailableException() from e


# Singleton
redis_manager = RedisManager()
