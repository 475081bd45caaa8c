"""
fraud_logs.py — Router del ledger antifraude
--------------------------------------------
Expone (solo rol admin):
  GET  /v1/fraud-logs?reviewed=&page=&limit=   → bandeja de revisión
  POST /v1/fraud-logs/{log_id}/review          → marcar como revisado
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.api.dependencies import require_admin
from motor_pagos.domain.schemas import (
    CurrentUser,
    FraudLogPage,
    FraudLogResponse,
    FraudLogReviewRequest,
)
from motor_pagos.infrastructure.database.fraud_ledger import FraudLedger
from motor_pagos.infrastructure.database.session import get_db

router = APIRouter(prefix="/v1/fraud-logs", tags=["Fraud Ledger"])


@router.get("", response_model=FraudLogPage, summary="Listar intentos bloqueados o marcados")
async def list_fraud_logs(
    reviewed: Optional[bool] = Query(None, description="Filtrar por estado de revisión"),
    page:     int            = Query(1,  ge=1),
    limit:    int            = Query(20, ge=1, le=100),
    db:       AsyncSession   = Depends(get_db),
    _admin:   CurrentUser    = Depends(require_admin),
):
    logs, total, pages = await FraudLedger(db).list_logs(reviewed=reviewed, page=page, limit=limit)
    return FraudLogPage(
        logs  = [FraudLogResponse.model_validate(log) for log in logs],
        total = total,
        page  = page,
        pages = pages,
    )


@router.post("/{log_id}/review", response_model=FraudLogResponse, summary="Revisar un registro")
async def review_fraud_log(
    log_id: uuid.UUID,
    body:   FraudLogReviewRequest,
    db:     AsyncSession = Depends(get_db),
    admin:  CurrentUser  = Depends(require_admin),
):
    record = await FraudLedger(db).review(log_id, reviewer_id=admin.user_id, notes=body.notes)
    return FraudLogResponse.model_validate(record)
