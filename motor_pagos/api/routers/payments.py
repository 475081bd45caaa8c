"""
payments.py — Router del checkout con tarjeta
---------------------------------------------
Expone:
  POST /v1/payments/initiate               → riesgo + emisión de OTP
  POST /v1/payments/verify-otp             → OTP + gateway + banco + liquidación
  GET  /v1/payments/transactions/{id}      → estado de una transacción propia

El router solo traduce: toda la lógica y los errores de dominio salen
del orquestador y los mapea el handler global de main.py.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.api.dependencies import (
    get_current_user,
    get_device_context,
    get_orchestrator,
)
from motor_pagos.core.exceptions import TransactionBlockedException
from motor_pagos.domain.schemas import (
    CurrentUser,
    OtpVerifyRequest,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    SettledOrder,
    SettledTransaction,
    SettlementResponse,
    TransactionStatusResponse,
)
from motor_pagos.infrastructure.database.session import get_db
from motor_pagos.services.payment_orchestrator import DeviceContext, PaymentOrchestrator

router = APIRouter(prefix="/v1/payments", tags=["Payments"])


# ── POST /v1/payments/initiate ────────────────────────────────────────

@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    response_model_exclude_none=True,
    summary="Iniciar el pago de una orden pending",
)
async def initiate_payment(
    body:         PaymentInitiateRequest,
    device:       DeviceContext       = Depends(get_device_context),
    db:           AsyncSession        = Depends(get_db),
    current_user: CurrentUser         = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.initiate(db, current_user.user_id, body, device)

    if result.blocked:
        # El estado (declined / cancelled / fraud log) ya quedó confirmado
        raise TransactionBlockedException(
            risk_score     = result.risk_score,
            flags          = result.flags,
            transaction_id = str(result.transaction_id),
        )

    return PaymentInitiateResponse(
        transaction_id = result.transaction_id,
        payment_token  = result.payment_token,
        masked_card    = result.masked_card,
        risk_score     = result.risk_score,
        otp_required   = result.otp_required,
        expires_in     = result.expires_in,
        dev_otp        = result.dev_otp,
    )


# ── POST /v1/payments/verify-otp ──────────────────────────────────────

@router.post(
    "/verify-otp",
    response_model=SettlementResponse,
    summary="Verificar el OTP y liquidar el pago",
)
async def verify_otp(
    body:         OtpVerifyRequest,
    db:           AsyncSession        = Depends(get_db),
    current_user: CurrentUser         = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.verify_and_settle(
        db,
        user_id            = current_user.user_id,
        transaction_id     = body.transaction_id,
        otp_input          = body.otp_code,
        biometric_verified = body.biometric_verified,
    )
    return SettlementResponse(
        success = result.success,
        message = result.message,
        transaction = SettledTransaction(
            id                     = result.transaction_id,
            status                 = result.transaction_status,
            amount                 = result.amount,
            masked_card            = result.masked_card,
            payment_token          = result.payment_token,
            gateway_transaction_id = result.gateway_transaction_id,
            bank_transaction_id    = result.bank_transaction_id,
        ),
        order = SettledOrder(id=result.order_id, status=result.order_status),
    )


# ── GET /v1/payments/transactions/{transaction_id} ────────────────────

@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionStatusResponse,
    summary="Estado de una transacción",
)
async def transaction_status(
    transaction_id: uuid.UUID,
    db:             AsyncSession        = Depends(get_db),
    current_user:   CurrentUser         = Depends(get_current_user),
    orchestrator:   PaymentOrchestrator = Depends(get_orchestrator),
):
    tx = await orchestrator.status(db, current_user.user_id, transaction_id)
    return TransactionStatusResponse.from_transaction(tx)
