"""
middlewares.py
--------------
Middlewares del Motor de Pagos.

  1. SecurityHeadersMiddleware → headers de seguridad HTTP
  2. setup_cors()              → CORS para el frontend del checkout

Orden de registro en main.py (importa el orden):
  1. CORS            → primero, para que preflight requests pasen
  2. SecurityHeaders → segundo, aplica a todas las respuestas
"""

from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from motor_pagos.core.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Headers incluidos:
      - X-Content-Type-Options    → evita MIME sniffing
      - X-Frame-Options           → evita clickjacking
      - Strict-Transport-Security → fuerza HTTPS (fuera de development)
      - Content-Security-Policy   → restricción de fuentes de contenido
      - Referrer-Policy           → controla información del referrer
      - Cache-Control             → las respuestas llevan datos de pago
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"

        if settings.ENVIRONMENT != "development":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        response.headers["Content-Security-Policy"] = "default-src 'self'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Nunca cachear: máscaras de tarjeta, tokens de pago, estados
        response.headers["Cache-Control"] = (
            "no-store, no-cache, must-revalidate, private"
        )

        response.headers["Server"] = "Motor-Pagos"
        return response


def setup_cors(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Llamar desde main.py antes de registrar otros middlewares:
        setup_cors(app, settings.ALLOWED_ORIGINS)

    X-Device-ID debe estar permitido: el checkout lo manda para el
    motor de riesgo.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = allowed_origins,
        allow_credentials = True,
        allow_methods     = ["GET", "POST", "OPTIONS"],
        allow_headers     = [
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            "X-Device-ID",
        ],
        max_age           = 600,
    )
