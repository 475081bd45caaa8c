"""
product_repository.py
---------------------
Stock de productos.

atomic_decrement_stock es el único punto con contención real entre
transacciones (dos órdenes del mismo producto liquidando a la vez):
un solo UPDATE "restar si alcanza", nunca leer-y-luego-escribir.
"""

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.domain.models import Product

logger = logging.getLogger(__name__)


class ProductRepository:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_many(self, product_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Product]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {p.id: p for p in result.scalars().all()}

    async def atomic_decrement_stock(self, product_id: uuid.UUID, quantity: int) -> bool:
        """
        UPDATE products SET stock = stock - :q WHERE id = :id AND stock >= :q

        Retorna False (InsufficientStock) si el stock actual no alcanza.
        No hace commit.
        """
        if quantity <= 0:
            raise ValueError("La cantidad a descontar debe ser positiva.")

        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        ok = result.rowcount == 1
        if not ok:
            logger.warning(
                f"[ProductRepository] Stock insuficiente product={product_id} qty={quantity}"
            )
        return ok
