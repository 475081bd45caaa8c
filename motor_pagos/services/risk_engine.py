"""
risk_engine.py
--------------
Motor de riesgo del checkout.

Cada factor es booleano y suma un peso fijo al score; si está activo
agrega además su flag con nombre:

  Factor                      Peso  Flag
  ─────────────────────────── ────  ────────────────────────
  IP fuera de las conocidas     1   unusual_location
  Monto > umbral alto           0   high_amount   (solo flag, no puntúa)
  Dispositivo nuevo             1   new_device
  ≥ 3 intentos fallidos         2   multiple_failed_attempts
  ≥ 5 tx en los últimos 60 min  1   velocity_check
  Reservado (siempre False)     1   suspicious_pattern

  blocked = score >= threshold   (threshold por defecto 2)

assess() es una función pura de sus entradas: sin I/O, sin estado
global. Pesos y umbrales llegan en un RiskConfig inyectado para poder
ajustarlos por tenant y fijarlos en las pruebas.

log_blocked() es la única operación con efecto secundario: escribe el
snapshot en el FraudLedger.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from motor_pagos.core.config import settings
from motor_pagos.domain.models import FraudLog, User
from motor_pagos.domain.schemas import FraudAction
from motor_pagos.infrastructure.database.fraud_ledger import FraudLedger

logger = logging.getLogger(__name__)

# Orden fijo de evaluación → orden estable de los flags
FACTOR_NAMES = (
    "unusual_location",
    "high_amount",
    "new_device",
    "multiple_failed_attempts",
    "velocity_check",
    "suspicious_pattern",
)

DEFAULT_WEIGHTS = MappingProxyType({
    "unusual_location":         1,
    "high_amount":              0,
    "new_device":               1,
    "multiple_failed_attempts": 2,
    "velocity_check":           1,
    "suspicious_pattern":       1,
})


@dataclass(frozen=True)
class RiskConfig:
    weights:               Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    threshold:             int               = 2
    high_amount_threshold: Decimal           = Decimal("500")
    failed_attempts_limit: int               = 3
    velocity_limit:        int               = 5

    @classmethod
    def from_settings(cls) -> "RiskConfig":
        return cls(
            threshold             = settings.FRAUD_RISK_THRESHOLD,
            high_amount_threshold = settings.HIGH_AMOUNT_THRESHOLD,
            velocity_limit        = settings.VELOCITY_MAX_TRANSACTIONS,
        )


@dataclass(frozen=True)
class UserRiskProfile:
    """Historial de dispositivos e IPs del usuario."""
    device_ids: frozenset[str] = frozenset()
    known_ips:  frozenset[str] = frozenset()

    @classmethod
    def from_user(cls, user: User) -> "UserRiskProfile":
        return cls(
            device_ids = frozenset(d.device_id for d in user.device_fingerprints),
            known_ips  = frozenset(loc.ip for loc in user.known_locations),
        )

    def is_new_device(self, device_id: str) -> bool:
        return device_id not in self.device_ids

    def is_unusual_location(self, ip: str) -> bool:
        # Sin historial no hay contra qué comparar
        if not self.known_ips:
            return False
        return ip not in self.known_ips


@dataclass(frozen=True)
class RiskSignal:
    ip:                       str
    device_id:                str
    amount:                   Decimal
    failed_attempts:          int = 0
    recent_transaction_count: int = 0


@dataclass
class RiskAssessment:
    score:     int
    flags:     list[str]
    threshold: int
    blocked:   bool
    # Factores crudos: solo para uso interno, nunca en una respuesta
    factors:   dict[str, bool] = field(default_factory=dict, repr=False)


def evaluate_factors(
    profile: UserRiskProfile,
    signal:  RiskSignal,
    config:  RiskConfig,
) -> dict[str, bool]:
    return {
        "unusual_location":         profile.is_unusual_location(signal.ip),
        "high_amount":              Decimal(signal.amount) > config.high_amount_threshold,
        "new_device":               profile.is_new_device(signal.device_id),
        "multiple_failed_attempts": signal.failed_attempts >= config.failed_attempts_limit,
        "velocity_check":           signal.recent_transaction_count >= config.velocity_limit,
        "suspicious_pattern":       False,
    }


def score_factors(factors: Mapping[str, bool], config: RiskConfig) -> tuple[int, list[str]]:
    score = 0
    flags: list[str] = []
    for name in FACTOR_NAMES:
        if factors.get(name):
            score += config.weights[name]
            flags.append(name)
    return score, flags


def fraud_action_for(score: int, threshold: int) -> FraudAction:
    """blocked si el score dobla el umbral, flagged en otro caso."""
    if score >= threshold * 2:
        return FraudAction.BLOCKED
    return FraudAction.FLAGGED


class RiskEngine:

    def __init__(self, config: RiskConfig | None = None):
        self.config = config or RiskConfig.from_settings()

    def assess(self, profile: UserRiskProfile, signal: RiskSignal) -> RiskAssessment:
        factors = evaluate_factors(profile, signal, self.config)
        score, flags = score_factors(factors, self.config)
        logger.debug(f"[RiskEngine] score={score} threshold={self.config.threshold} flags={flags}")
        return RiskAssessment(
            score     = score,
            flags     = flags,
            threshold = self.config.threshold,
            blocked   = score >= self.config.threshold,
            factors   = factors,
        )

    async def log_blocked(
        self,
        ledger:              FraudLedger,
        assessment:          RiskAssessment,
        user_id:             uuid.UUID,
        device_info:         dict,
        transaction_details: dict,
        transaction_id:      uuid.UUID | None = None,
        order_id:            uuid.UUID | None = None,
    ) -> FraudLog:
        action = fraud_action_for(assessment.score, assessment.threshold)
        return await ledger.create(
            user_id             = user_id,
            transaction_id      = transaction_id,
            order_id            = order_id,
            risk_score          = assessment.score,
            threshold           = assessment.threshold,
            flags               = assessment.flags,
            action              = action,
            device_info         = device_info,
            transaction_details = transaction_details,
        )
