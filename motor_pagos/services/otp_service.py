"""
otp_service.py
--------------
Emisión y validación de OTP para el segundo factor del checkout.

Dos piezas:
  - OtpIssuer: genera el código y su expiración, y valida un intento
    contra el digest guardado. No lleva la cuenta de intentos — eso lo
    coordina el orquestador con el ciclo de vida de la transacción.
  - OtpChallengeStore: el challenge activo del usuario en Redis.

Estructura de keys en Redis:
  otp:{user_id}:code      → JSON {code_hash, expires_at, transaction_id}
  otp:{user_id}:attempts  → contador de intentos fallidos

Un solo challenge activo por usuario. Cada challenge recuerda para qué
transacción se emitió: si el usuario abre un segundo pago, el primero
deja de tener challenge (NoActiveChallenge) en vez de aceptar el código
del segundo.

Seguridad:
  - El OTP se guarda hasheado con SHA-256 (nunca en texto plano)
  - Comparación en tiempo constante (hmac.compare_digest)
  - El TTL de Redis dura más que la expiración lógica para poder
    responder "expired" en lugar de "no existe"
  - consume() es un DELETE: de dos verificaciones concurrentes con el
    código correcto solo una gana
"""

import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from motor_pagos.core.config import settings
from motor_pagos.core.vault import hash_data
from motor_pagos.infrastructure.cache.redis_client import redis_manager

logger = logging.getLogger(__name__)

OTP_EXPIRED = "expired"
OTP_INVALID = "invalid"

# Margen extra del TTL en Redis sobre la expiración lógica
_TTL_GRACE_SECONDS = 10 * 60


@dataclass(frozen=True)
class IssuedOtp:
    code:       str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedOtp(code=******, expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True)
class OtpValidation:
    valid:  bool
    reason: str | None = None


@dataclass(frozen=True)
class OtpChallenge:
    user_id:        uuid.UUID
    transaction_id: uuid.UUID
    code_hash:      str
    expires_at:     datetime
    attempts:       int = 0


class OtpIssuer:

    def __init__(self, expire_minutes: int | None = None):
        self.expire_minutes = expire_minutes or settings.OTP_EXPIRE_MINUTES

    def issue(
        self,
        length:         int | None = None,
        expire_minutes: int | None = None,
        now:            datetime | None = None,
    ) -> IssuedOtp:
        """Código numérico de `length` dígitos desde una fuente criptográfica."""
        length = length or settings.OTP_LENGTH
        expire_minutes = expire_minutes or self.expire_minutes
        # secrets.randbelow es criptográficamente seguro (no usar random)
        code = str(secrets.randbelow(10 ** length)).zfill(length)
        now = now or datetime.now(timezone.utc)
        return IssuedOtp(code=code, expires_at=now + timedelta(minutes=expire_minutes))

    @staticmethod
    def digest(code: str) -> str:
        return hash_data(code.strip())

    def validate(
        self,
        otp_input:     str,
        stored_digest: str,
        expires_at:    datetime,
        now:           datetime | None = None,
    ) -> OtpValidation:
        """
        expired → si ya pasó expires_at, aunque el código sea correcto
        invalid → si el digest del input no coincide
        """
        now = now or datetime.now(timezone.utc)
        if now > expires_at:
            return OtpValidation(valid=False, reason=OTP_EXPIRED)
        if not hmac.compare_digest(self.digest(otp_input), stored_digest):
            return OtpValidation(valid=False, reason=OTP_INVALID)
        return OtpValidation(valid=True)


class OtpChallengeStore:
    """Challenge OTP activo por usuario, en Redis."""

    CODE_KEY     = "otp:{user_id}:code"
    ATTEMPTS_KEY = "otp:{user_id}:attempts"

    @property
    def redis(self):
        return redis_manager.client

    def _ttl(self, expires_at: datetime) -> int:
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(int(remaining), 0) + _TTL_GRACE_SECONDS

    async def save(
        self,
        user_id:        uuid.UUID,
        transaction_id: uuid.UUID,
        code_hash:      str,
        expires_at:     datetime,
    ) -> None:
        """Reemplaza cualquier challenge anterior del usuario y resetea intentos."""
        ttl = self._ttl(expires_at)
        payload = json.dumps({
            "code_hash":      code_hash,
            "expires_at":     expires_at.isoformat(),
            "transaction_id": str(transaction_id),
        })
        async with redis_manager.unavailable_on_error(f"guardando challenge user={user_id}"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.setex(self.CODE_KEY.format(user_id=user_id), ttl, payload)
            pipe.setex(self.ATTEMPTS_KEY.format(user_id=user_id), ttl, "0")
            await pipe.execute()
        logger.info(f"[OTP] Challenge guardado user={user_id} tx={transaction_id}")

    async def get(self, user_id: uuid.UUID) -> OtpChallenge | None:
        async with redis_manager.unavailable_on_error(f"leyendo challenge user={user_id}"):
            raw_code, raw_attempts = await self.redis.mget(
                self.CODE_KEY.format(user_id=user_id),
                self.ATTEMPTS_KEY.format(user_id=user_id),
            )

        if not raw_code:
            return None

        data = json.loads(raw_code)
        return OtpChallenge(
            user_id        = user_id,
            transaction_id = uuid.UUID(data["transaction_id"]),
            code_hash      = data["code_hash"],
            expires_at     = datetime.fromisoformat(data["expires_at"]),
            attempts       = int(raw_attempts) if raw_attempts else 0,
        )

    async def register_failure(self, user_id: uuid.UUID) -> int:
        """Incrementa el contador de intentos fallidos y retorna el nuevo valor."""
        attempts_key = self.ATTEMPTS_KEY.format(user_id=user_id)
        async with redis_manager.unavailable_on_error(f"registrando intento user={user_id}"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(attempts_key)
            pipe.expire(attempts_key, _TTL_GRACE_SECONDS + settings.OTP_EXPIRE_MINUTES * 60)
            attempts, _ = await pipe.execute()
        return int(attempts)

    async def consume(self, user_id: uuid.UUID) -> bool:
        """
        Elimina el challenge. Retorna True solo para el primer llamador:
        el código no puede reutilizarse.
        """
        async with redis_manager.unavailable_on_error(f"consumiendo challenge user={user_id}"):
            deleted = await self.redis.delete(self.CODE_KEY.format(user_id=user_id))
            await self.redis.delete(self.ATTEMPTS_KEY.format(user_id=user_id))
        return deleted == 1

    async def clear(self, user_id: uuid.UUID) -> None:
        async with redis_manager.unavailable_on_error(f"invalidando challenge user={user_id}"):
            await self.redis.delete(
                self.CODE_KEY.format(user_id=user_id),
                self.ATTEMPTS_KEY.format(user_id=user_id),
            )


# Singletons
otp_issuer = OtpIssuer()
challenge_store = OtpChallengeStore()
