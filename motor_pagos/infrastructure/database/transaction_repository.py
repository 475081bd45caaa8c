"""
transaction_repository.py
-------------------------
Acceso a transacciones de pago.

Progresión estrictamente hacia adelante: transition() rechaza cualquier
par (actual, nuevo) que no esté en TRANSACTION_TRANSITIONS y solo
escribe si el registro sigue en el estado esperado.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.domain.models import Transaction
from motor_pagos.domain.schemas import TransactionStatus, can_transition

logger = logging.getLogger(__name__)


class TransactionRepository:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, **fields) -> Transaction:
        """Inserta la transacción en estado initiated. Hace flush para obtener el id."""
        fields.setdefault("status", TransactionStatus.INITIATED.value)
        tx = Transaction(**fields)
        self.db.add(tx)
        await self.db.flush()
        return tx

    async def get(self, transaction_id: uuid.UUID) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_for_user(
        self,
        transaction_id: uuid.UUID,
        user_id:        uuid.UUID,
    ) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_id_and_status(
        self,
        transaction_id: uuid.UUID,
        user_id:        uuid.UUID,
        status:         TransactionStatus,
    ) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
                Transaction.status == status.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_recent(
        self,
        user_id: uuid.UUID,
        since:   datetime,
        status:  TransactionStatus | None = None,
    ) -> int:
        """Transacciones del usuario creadas desde `since` (regla de velocidad)."""
        query = (
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.user_id == user_id, Transaction.created_at >= since)
        )
        if status is not None:
            query = query.where(Transaction.status == status.value)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def transition(
        self,
        transaction_id: uuid.UUID,
        expected:       TransactionStatus,
        new:            TransactionStatus,
        **fields,
    ) -> bool:
        """
        UPDATE transactions SET status = :new, ... WHERE id = :id AND status = :expected

        Retorna False si otro request ya movió la transacción.
        """
        if not can_transition(expected, new):
            raise ValueError(
                f"Transición no declarada: {expected.value} -> {new.value}"
            )

        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == expected.value)
            .values(status=new.value, **fields)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if not moved:
            logger.warning(
                f"[TransactionRepository] Guard falló tx={transaction_id} "
                f"esperado={expected.value} nuevo={new.value}"
            )
        return moved
