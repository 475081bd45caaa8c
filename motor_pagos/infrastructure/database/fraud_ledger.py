"""
fraud_ledger.py
---------------
Ledger append-only de intentos bloqueados o marcados por el motor de riesgo.

Responsabilidades:
  - create(): un INSERT por decisión adversa. Guarda un snapshot
    (score, umbral vigente, flags, dispositivo, detalle enmascarado de la
    transacción). Nunca el número de tarjeta.
  - list_logs(): bandeja de revisión humana, paginada, filtrable por reviewed.
  - review(): único punto que muta un registro existente — agrega los
    campos reviewed_* desde el flujo de revisión.

A diferencia de un log de auditoría fire-and-forget, create() SÍ
propaga errores: el bloqueo no se confirma si el ledger no se escribió.
"""

import logging
import math
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.core.exceptions import FraudLogNotFoundException
from motor_pagos.domain.models import FraudLog
from motor_pagos.domain.schemas import FraudAction

logger = logging.getLogger(__name__)


class FraudLedger:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self,
        user_id:             uuid.UUID,
        risk_score:          int,
        threshold:           int,
        flags:               list[str],
        action:              FraudAction,
        device_info:         dict,
        transaction_details: dict,
        transaction_id:      uuid.UUID | None = None,
        order_id:            uuid.UUID | None = None,
    ) -> FraudLog:
        record = FraudLog(
            user_id             = user_id,
            transaction_id      = transaction_id,
            order_id            = order_id,
            risk_score          = risk_score,
            threshold           = threshold,
            flags               = list(flags),
            action              = action.value,
            device_info         = dict(device_info),
            transaction_details = dict(transaction_details),
        )
        self.db.add(record)
        await self.db.flush()

        logger.warning(
            f"[FraudLedger] INSERT — log={record.id} user={user_id} "
            f"tx={transaction_id} score={risk_score}/{threshold} "
            f"action={action.value} flags={flags}"
        )
        return record

    async def list_logs(
        self,
        reviewed: bool | None = None,
        page:     int = 1,
        limit:    int = 20,
    ) -> tuple[list[FraudLog], int, int]:
        """Retorna (logs, total, pages), más recientes primero."""
        query = select(FraudLog)
        count = select(func.count()).select_from(FraudLog)
        if reviewed is not None:
            query = query.where(FraudLog.reviewed == reviewed)
            count = count.where(FraudLog.reviewed == reviewed)

        total = int((await self.db.execute(count)).scalar_one())
        result = await self.db.execute(
            query.order_by(FraudLog.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        pages = math.ceil(total / limit) if limit else 0
        return list(result.scalars().all()), total, pages

    async def review(
        self,
        log_id:      uuid.UUID,
        reviewer_id: uuid.UUID,
        notes:       str | None = None,
    ) -> FraudLog:
        record = await self.db.get(FraudLog, log_id)
        if record is None:
            raise FraudLogNotFoundException()

        record.reviewed     = True
        record.reviewed_by  = reviewer_id
        record.review_notes = notes
        record.reviewed_at  = datetime.now(timezone.utc)
        await self.db.commit()

        logger.info(f"[FraudLedger] Revisado log={log_id} por={reviewer_id}")
        return record
