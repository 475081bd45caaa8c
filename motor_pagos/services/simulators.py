"""
simulators.py
-------------
Gateway de pagos y banco emisor simulados.

El orquestador solo conoce los protocolos Authorizer y Settler; los
simuladores son la implementación por defecto mientras no exista una
integración real con la red de tarjetas.

  GatewaySimulator.authorize()  → 300–500 ms, aprueba con prob. 0.95
  BankSimulator.approve()       → 200–500 ms, reglas de límite por monto

Aleatoriedad y latencia son inyectables (rng, latency_scale) para
que las pruebas sean deterministas y no esperen.

Ninguno reintenta: el límite de tiempo lo pone el orquestador con
asyncio.wait_for.
"""

import asyncio
import logging
import random
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Protocol

from motor_pagos.core.config import settings

logger = logging.getLogger(__name__)

GATEWAY_DECLINES = (
    ("INSUFFICIENT_FUNDS", "Insufficient funds"),
    ("CARD_DECLINED",      "Card declined by issuer"),
    ("NETWORK_ERROR",      "Network timeout"),
)

BANK_REASON_GATEWAY_DECLINED = "Gateway declined transaction"
BANK_REASON_OVER_LIMIT       = "Amount exceeds single transaction limit"
BANK_REASON_APPROVED         = "Transaction approved by bank"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ─────────────────────────────────────────────────────────────────────
# Respuestas
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayResponse:
    success:                bool
    response_code:          str
    response_message:       str
    gateway_transaction_id: str | None = None
    auth_code:              str | None = None
    processed_at:           datetime | None = None

    def to_dict(self) -> dict:
        """Forma JSON-serializable para Transaction.gateway_response."""
        data = asdict(self)
        data["processed_at"] = _iso(self.processed_at)
        return data


@dataclass(frozen=True)
class BankResponse:
    approved:            bool
    bank_transaction_id: str | None
    reason:              str
    settlement_date:     datetime | None = None
    processed_at:        datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["settlement_date"] = _iso(self.settlement_date)
        data["processed_at"]    = _iso(self.processed_at)
        return data


# ─────────────────────────────────────────────────────────────────────
# Protocolos
# ─────────────────────────────────────────────────────────────────────

class Authorizer(Protocol):
    async def authorize(
        self,
        amount:         Decimal,
        payment_token:  str,
        payment_method: str,
    ) -> GatewayResponse: ...


class Settler(Protocol):
    async def approve(self, gateway_response: GatewayResponse, amount: Decimal) -> BankResponse: ...


# ─────────────────────────────────────────────────────────────────────
# Simuladores
# ─────────────────────────────────────────────────────────────────────

class _Simulator:

    def __init__(self, rng: random.Random | None = None, latency_scale: float = 1.0):
        self.rng = rng or random.Random()
        self.latency_scale = latency_scale

    async def _latency(self, base_ms: float, jitter_ms: float) -> None:
        delay = (base_ms + self.rng.random() * jitter_ms) / 1000 * self.latency_scale
        if delay > 0:
            await asyncio.sleep(delay)

    def _reference(self, prefix: str) -> str:
        # PREFIX_<epoch ms>_<8 hex>
        return f"{prefix}_{int(time.time() * 1000)}_{self.rng.getrandbits(32):08X}"


class GatewaySimulator(_Simulator):

    def __init__(
        self,
        success_rate:  float | None = None,
        rng:           random.Random | None = None,
        latency_scale: float = 1.0,
    ):
        super().__init__(rng=rng, latency_scale=latency_scale)
        self.success_rate = settings.GATEWAY_SUCCESS_RATE if success_rate is None else success_rate

    async def authorize(
        self,
        amount:         Decimal,
        payment_token:  str,
        payment_method: str = "card",
    ) -> GatewayResponse:
        await self._latency(300, 200)

        if not payment_token or amount is None or Decimal(amount) <= 0:
            logger.info(f"[Gateway] INVALID_REQUEST token={payment_token!r} amount={amount}")
            return GatewayResponse(
                success          = False,
                response_code    = "INVALID_REQUEST",
                response_message = "Invalid payment request parameters",
            )

        now = datetime.now(timezone.utc)
        if self.rng.random() < self.success_rate:
            response = GatewayResponse(
                success                = True,
                response_code          = "00",
                response_message       = "Transaction Approved",
                gateway_transaction_id = self._reference("GW"),
                auth_code              = f"{self.rng.getrandbits(24):06X}",
                processed_at           = now,
            )
        else:
            code, message = self.rng.choice(GATEWAY_DECLINES)
            response = GatewayResponse(
                success                = False,
                response_code          = code,
                response_message       = message,
                gateway_transaction_id = self._reference("GW"),
                processed_at           = now,
            )

        logger.info(
            f"[Gateway] {response.response_code} "
            f"ref={response.gateway_transaction_id} method={payment_method}"
        )
        return response


class BankSimulator(_Simulator):

    def __init__(
        self,
        max_single_transaction: Decimal | None = None,
        daily_limit:            Decimal | None = None,
        rng:                    random.Random | None = None,
        latency_scale:          float = 1.0,
    ):
        super().__init__(rng=rng, latency_scale=latency_scale)
        self.max_single_transaction = max_single_transaction or settings.BANK_MAX_SINGLE_TRANSACTION
        # Expuesto para quien quiera aplicarlo; approve() no lo evalúa
        self.daily_limit = daily_limit or settings.BANK_DAILY_LIMIT

    async def approve(self, gateway_response: GatewayResponse, amount: Decimal) -> BankResponse:
        await self._latency(200, 300)
        now = datetime.now(timezone.utc)

        if not gateway_response.success:
            response = BankResponse(
                approved            = False,
                bank_transaction_id = self._reference("BNK"),
                reason              = BANK_REASON_GATEWAY_DECLINED,
                processed_at        = now,
            )
        elif Decimal(amount) > self.max_single_transaction:
            response = BankResponse(
                approved            = False,
                bank_transaction_id = self._reference("BNK"),
                reason              = BANK_REASON_OVER_LIMIT,
                processed_at        = now,
            )
        else:
            response = BankResponse(
                approved            = True,
                bank_transaction_id = self._reference("BNK"),
                reason              = BANK_REASON_APPROVED,
                settlement_date     = now + timedelta(hours=24),
                processed_at        = now,
            )

        logger.info(
            f"[Bank] approved={response.approved} "
            f"ref={response.bank_transaction_id} reason={response.reason!r}"
        )
        return response
