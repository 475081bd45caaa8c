"""
dependencies.py
---------------
Dependencias reutilizables para inyectar en los routers de FastAPI.

get_current_user:
  Lee el JWT del header Authorization, lo valida y retorna el usuario.
  La emisión de tokens vive en el servicio de autenticación; aquí solo
  se verifica la firma (HS256 con SECRET_KEY) y se lee `sub`.

      @router.get("/transactions/{id}")
      async def status(user: CurrentUser = Depends(get_current_user)):
          ...

get_device_context:
  Dispositivo del request para el motor de riesgo:
  X-Device-ID, User-Agent y la IP real (X-Forwarded-For si hay proxy).

get_orchestrator:
  Orquestador de pagos. Las pruebas lo reemplazan con
  app.dependency_overrides para usar simuladores con semilla.
"""

import uuid

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from motor_pagos.core.config import settings
from motor_pagos.core.exceptions import InvalidTokenException
from motor_pagos.domain.schemas import CurrentUser
from motor_pagos.services.payment_orchestrator import (
    DeviceContext,
    PaymentOrchestrator,
    payment_orchestrator,
)

JWT_ALGORITHM = "HS256"


def decode_access_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenException("Token expirado. Inicia sesión nuevamente.")
    except jwt.InvalidTokenError:
        raise InvalidTokenException()

    try:
        user_id = uuid.UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise InvalidTokenException("El token no contiene identificación de usuario.")

    return CurrentUser(
        user_id = user_id,
        email   = payload.get("email"),
        role    = payload.get("role", "user"),
    )


# ── Autenticación JWT ─────────────────────────────────────────────────

# Esquema Bearer para que Swagger muestre el candado en los endpoints
bearer_scheme = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """Lanza HTTP 401 si el token es inválido o expiró."""
    try:
        return decode_access_token(credentials.credentials)
    except InvalidTokenException as e:
        raise HTTPException(
            status_code = status.HTTP_401_UNAUTHORIZED,
            detail      = e.message,
            headers     = {"WWW-Authenticate": "Bearer"},
        )


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """La bandeja del ledger antifraude es solo para administradores."""
    if user.role != "admin":
        raise HTTPException(
            status_code = status.HTTP_403_FORBIDDEN,
            detail      = "Se requiere rol de administrador.",
        )
    return user


# ── Contexto del dispositivo ──────────────────────────────────────────

def get_device_context(request: Request) -> DeviceContext:
    # X-Forwarded-For viene cuando hay un proxy/load balancer delante.
    # La primera IP de la lista es la del cliente original.
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"

    return DeviceContext(
        device_id  = request.headers.get("X-Device-ID", "default_device"),
        user_agent = request.headers.get("User-Agent", "unknown"),
        ip         = ip,
    )


def get_orchestrator() -> PaymentOrchestrator:
    return payment_orchestrator
