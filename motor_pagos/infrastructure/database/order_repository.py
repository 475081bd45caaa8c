"""
order_repository.py
-------------------
Acceso a órdenes para el flujo de pago.

Las transiciones de estado son un solo UPDATE condicionado al estado
actual: si otro request ya movió la orden, rowcount == 0 y el
orquestador reporta AlreadyProcessed sin repetir efectos secundarios.
Ningún método hace commit — la unidad de trabajo es del orquestador.
"""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.domain.models import Order
from motor_pagos.domain.schemas import OrderStatus, can_transition_order

logger = logging.getLogger(__name__)


class OrderRepository:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, order_id: uuid.UUID) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_eligible_for_payment(
        self,
        order_id: uuid.UUID,
        user_id:  uuid.UUID,
    ) -> Order | None:
        """Orden del usuario que todavía está en pending."""
        result = await self.db.execute(
            select(Order)
            .where(
                Order.id == order_id,
                Order.user_id == user_id,
                Order.status == OrderStatus.PENDING.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        order_id: uuid.UUID,
        expected: OrderStatus,
        new:      OrderStatus,
        **fields,
    ) -> bool:
        """
        pending → processing, processing → confirmed, etc.
        Retorna False si la orden ya no estaba en `expected`.
        """
        if not can_transition_order(expected, new):
            raise ValueError(f"Transición de orden no declarada: {expected.value} -> {new.value}")

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected.value)
            .values(status=new.value, **fields)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if not moved:
            logger.warning(
                f"[OrderRepository] Guard falló order={order_id} "
                f"esperado={expected.value} nuevo={new.value}"
            )
        return moved
