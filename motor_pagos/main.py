"""
main.py
-------
Entry point del Motor de Pagos.

Orden de registro de middlewares (importa el orden — se ejecutan al revés):
  1. CORS            → primero en registrarse, último en ejecutarse
  2. SecurityHeaders → headers de seguridad en todas las respuestas
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from motor_pagos.api.middlewares import SecurityHeadersMiddleware, setup_cors
from motor_pagos.api.routers import fraud_logs, payments
from motor_pagos.core.config import settings
from motor_pagos.core.exceptions import InvalidPayloadException, PaymentEngineException
from motor_pagos.infrastructure.cache.redis_client import redis_manager
from motor_pagos.infrastructure.database.session import init_db

logging.basicConfig(
    level  = settings.LOG_LEVEL,
    format = "%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ───────────────────────────────────────────────────────
    await redis_manager.connect()
    if settings.DEBUG:
        await init_db()
    yield
    # ── Shutdown ──────────────────────────────────────────────────────
    await redis_manager.disconnect()


app = FastAPI(
    title    = "Motor de Pagos API",
    version  = "1.0.0",
    docs_url = "/docs"  if settings.DEBUG else None,
    redoc_url= "/redoc" if settings.DEBUG else None,
    lifespan = lifespan,
)

# ── Middlewares (registrar en este orden exacto) ──────────────────────
setup_cors(app, allowed_origins=settings.ALLOWED_ORIGINS)
app.add_middleware(SecurityHeadersMiddleware)

# ── Routers ───────────────────────────────────────────────────────────
app.include_router(payments.router)
app.include_router(fraud_logs.router)


# ── Handlers globales de excepciones ─────────────────────────────────
@app.exception_handler(PaymentEngineException)
async def payment_exception_handler(
    request: Request, exc: PaymentEngineException
) -> JSONResponse:
    return JSONResponse(
        status_code = exc.status_code,
        content     = {"error": exc.message, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Solo campo y mensaje: el input rechazado puede ser un número de tarjeta
    details = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code = InvalidPayloadException.status_code,
        content     = {"error": InvalidPayloadException.message, "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # El detalle va al log, nunca al cliente
    logger.exception(f"[API] Error no controlado en {request.method} {request.url.path}")
    return JSONResponse(
        status_code = 500,
        content     = {"error": "Error interno del servidor."},
    )


# ── Health check ──────────────────────────────────────────────────────
@app.get("/health")
async def health_check():
    redis_ok = await redis_manager.ping()
    return {
        "status":      "ok",
        "environment": settings.ENVIRONMENT,
        "redis":       "ok" if redis_ok else "degraded",
    }
