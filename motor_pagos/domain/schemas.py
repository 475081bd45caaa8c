"""
schemas.py
----------
Enums de estado y schemas Pydantic para requests y responses.
"""

import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, UUID4, field_validator, model_validator


# ─────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    CONFIRMED  = "confirmed"
    SHIPPED    = "shipped"
    DELIVERED  = "delivered"
    CANCELLED  = "cancelled"
    REFUNDED   = "refunded"


class TransactionStatus(str, Enum):
    INITIATED   = "initiated"
    OTP_PENDING = "otp_pending"
    PROCESSING  = "processing"
    APPROVED    = "approved"
    DECLINED    = "declined"
    FAILED      = "failed"
    REFUNDED    = "refunded"


class FraudAction(str, Enum):
    BLOCKED             = "blocked"
    FLAGGED             = "flagged"
    ALLOWED_WITH_REVIEW = "allowed_with_review"


# Sucesores declarados. Progresión lineal: ningún estado se revisita.
# approved → refunded lo dispara el flujo de reembolsos, no este core.
TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.INITIATED:   frozenset({TransactionStatus.OTP_PENDING, TransactionStatus.DECLINED}),
    TransactionStatus.OTP_PENDING: frozenset({TransactionStatus.PROCESSING, TransactionStatus.FAILED}),
    TransactionStatus.PROCESSING:  frozenset({
        TransactionStatus.APPROVED,
        TransactionStatus.DECLINED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.APPROVED:    frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.DECLINED:    frozenset(),
    TransactionStatus.FAILED:      frozenset(),
    TransactionStatus.REFUNDED:    frozenset(),
}

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING:    frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED:  frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED:    frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED:  frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED:  frozenset(),
    OrderStatus.REFUNDED:   frozenset(),
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in TRANSACTION_TRANSITIONS[TransactionStatus(current)]


def can_transition_order(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[OrderStatus(current)]


# ─────────────────────────────────────────────────────────────────────
# PAGOS — REQUESTS
# ─────────────────────────────────────────────────────────────────────

class PaymentInitiateRequest(BaseModel):
    """
    Datos de la tarjeta para una orden pending.
    Nada de esto se persiste en claro: el número se enmascara y se cifra,
    el CVV solo se valida y se descarta.
    """
    order_id:           UUID4
    card_number:        str  = Field(..., min_length=12, max_length=23, repr=False)
    card_holder_name:   str  = Field(..., min_length=1, max_length=100)
    expiry_month:       int  = Field(..., ge=1, le=12)
    expiry_year:        int  = Field(..., ge=2000, le=2100)
    cvv:                str  = Field(..., min_length=3, max_length=4, repr=False)
    biometric_verified: bool = False

    @field_validator("card_number")
    @classmethod
    def card_number_digits(cls, v: str) -> str:
        """Acepta espacios y guiones; el resultado son solo dígitos."""
        cleaned = re.sub(r"[\s-]", "", v)
        if not cleaned.isdigit() or not 12 <= len(cleaned) <= 19:
            raise ValueError("El número de tarjeta debe tener entre 12 y 19 dígitos.")
        return cleaned

    @field_validator("cvv")
    @classmethod
    def cvv_numeric(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("El CVV solo debe contener números.")
        return v

    @field_validator("card_holder_name")
    @classmethod
    def holder_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("El titular de la tarjeta es obligatorio.")
        return v.strip()

    @model_validator(mode="after")
    def card_not_expired(self) -> "PaymentInitiateRequest":
        now = datetime.now(timezone.utc)
        if (self.expiry_year, self.expiry_month) < (now.year, now.month):
            raise ValueError("La tarjeta está vencida.")
        return self

    model_config = ConfigDict(extra="forbid")


class OtpVerifyRequest(BaseModel):
    """OTP ingresado por el usuario para una transacción en otp_pending."""
    transaction_id:     UUID4
    otp_code:           str  = Field(..., min_length=4, max_length=10)
    biometric_verified: bool = False

    @field_validator("otp_code")
    @classmethod
    def otp_numeric(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("El código OTP solo debe contener números.")
        return v

    model_config = ConfigDict(extra="forbid")


# ─────────────────────────────────────────────────────────────────────
# PAGOS — RESPONSES
# ─────────────────────────────────────────────────────────────────────

class PaymentInitiateResponse(BaseModel):
    """Respuesta al iniciar el pago — indica que se emitió el OTP."""
    success:        bool = True
    message:        str  = "Código de verificación enviado a tu correo."
    transaction_id: uuid.UUID
    payment_token:  str
    masked_card:    str
    risk_score:     int
    otp_required:   bool = True
    expires_in:     int
    dev_otp:        Optional[str] = None   # solo en ENVIRONMENT=development


class SettledTransaction(BaseModel):
    id:                     uuid.UUID
    status:                 TransactionStatus
    amount:                 Decimal
    masked_card:            str
    payment_token:          str
    # Solo para correlación con soporte
    gateway_transaction_id: Optional[str] = None
    bank_transaction_id:    Optional[str] = None


class SettledOrder(BaseModel):
    id:     uuid.UUID
    status: OrderStatus


class SettlementResponse(BaseModel):
    success:     bool
    message:     str
    transaction: SettledTransaction
    order:       SettledOrder


class TransactionStatusResponse(BaseModel):
    """Snapshot de solo lectura de una transacción."""
    id:                 uuid.UUID
    order_id:           uuid.UUID
    status:             TransactionStatus
    amount:             Decimal
    currency:           str
    masked_card:        str
    payment_token:      str
    risk_score:         int
    risk_flags:         List[str]
    otp_verified:       bool
    biometric_verified: bool
    requires_refund:    bool
    gateway_transaction_id: Optional[str] = None
    bank_transaction_id:    Optional[str] = None
    created_at:         datetime
    updated_at:         datetime

    @classmethod
    def from_transaction(cls, tx) -> "TransactionStatusResponse":
        gateway = tx.gateway_response or {}
        bank    = tx.bank_response or {}
        return cls(
            id                     = tx.id,
            order_id               = tx.order_id,
            status                 = tx.status,
            amount                 = tx.amount,
            currency               = tx.currency,
            masked_card            = tx.masked_card_number,
            payment_token          = tx.payment_token,
            risk_score             = tx.risk_score,
            risk_flags             = list(tx.risk_flags or []),
            otp_verified           = tx.otp_verified,
            biometric_verified     = tx.biometric_verified,
            requires_refund        = tx.requires_refund,
            gateway_transaction_id = gateway.get("gateway_transaction_id"),
            bank_transaction_id    = bank.get("bank_transaction_id"),
            created_at             = tx.created_at,
            updated_at             = tx.updated_at,
        )


# ─────────────────────────────────────────────────────────────────────
# FRAUD LEDGER
# ─────────────────────────────────────────────────────────────────────

class FraudLogResponse(BaseModel):
    id:                  uuid.UUID
    user_id:             uuid.UUID
    transaction_id:      Optional[uuid.UUID] = None
    order_id:            Optional[uuid.UUID] = None
    risk_score:          int
    threshold:           int
    flags:               List[str]
    device_info:         dict
    transaction_details: dict
    action:              FraudAction
    reviewed:            bool
    reviewed_by:         Optional[uuid.UUID] = None
    review_notes:        Optional[str] = None
    reviewed_at:         Optional[datetime] = None
    created_at:          datetime

    model_config = ConfigDict(from_attributes=True)


class FraudLogPage(BaseModel):
    logs:  List[FraudLogResponse]
    total: int
    page:  int
    pages: int


class FraudLogReviewRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


# ─────────────────────────────────────────────────────────────────────
# AUTENTICACIÓN — USUARIO ACTUAL
# ─────────────────────────────────────────────────────────────────────

class CurrentUser(BaseModel):
    """
    Datos del usuario autenticado extraídos del JWT.
    Se inyecta en los routers via Depends(get_current_user).
    """
    user_id: uuid.UUID
    email:   Optional[str] = None
    role:    str = "user"
