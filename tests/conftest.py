"""
Pytest configuration and fixtures.

Settings se leen al importar motor_pagos, así que las variables de
entorno se fijan antes de cualquier import del paquete.
"""
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-bytes-for-vault")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ["ENVIRONMENT"] = "development"
os.environ["EMAIL_ENABLED"] = "false"

import random
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncGenerator

import fakeredis
import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from motor_pagos.core.config import settings
from motor_pagos.domain.models import (
    Base,
    DeviceFingerprint,
    KnownLocation,
    Order,
    OrderItem,
    Product,
    Transaction,
    User,
)
from motor_pagos.infrastructure.cache.redis_client import redis_manager
from motor_pagos.services.payment_orchestrator import DeviceContext, PaymentOrchestrator
from motor_pagos.services.risk_engine import RiskConfig, RiskEngine
from motor_pagos.services.simulators import BankSimulator, GatewaySimulator

KNOWN_DEVICE = "device-known-001"
KNOWN_IP = "203.0.113.10"
VALID_CARD = "4111 1111 1111 1111"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite en archivo: varias sesiones concurrentes ven los mismos datos."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments_test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, Any]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def fake_redis():
    """Reemplaza el cliente del singleton por un Redis en memoria."""
    client = fakeredis.FakeAsyncRedis()
    previous = redis_manager.client
    redis_manager.client = client
    yield client
    redis_manager.client = previous
    await client.aclose()


@pytest.fixture
def orchestrator(fake_redis) -> PaymentOrchestrator:
    """Gateway que siempre aprueba, sin latencia y con semilla fija."""
    return PaymentOrchestrator(
        risk_engine = RiskEngine(RiskConfig()),
        authorizer  = GatewaySimulator(success_rate=1.0, rng=random.Random(7), latency_scale=0),
        settler     = BankSimulator(rng=random.Random(7), latency_scale=0),
    )


@pytest.fixture
def known_device() -> DeviceContext:
    return DeviceContext(device_id=KNOWN_DEVICE, user_agent="pytest", ip=KNOWN_IP)


@dataclass
class Checkout:
    user_id:    uuid.UUID
    order_id:   uuid.UUID
    product_id: uuid.UUID
    quantity:   int


@pytest.fixture
def seed_checkout(session_factory):
    """
    Crea usuario (con dispositivo e IP conocidos), producto y una orden
    pending. Retorna una función para poder sembrar varias órdenes;
    con product_id la orden reutiliza un producto ya sembrado.
    """
    async def _seed(
        total:               Decimal = Decimal("50.00"),
        stock:               int = 10,
        quantity:            int = 2,
        user_id:             uuid.UUID | None = None,
        recent_transactions: int = 0,
        product_id:          uuid.UUID | None = None,
    ) -> Checkout:
        async with session_factory() as session:
            if user_id is None:
                user = User(email=f"{uuid.uuid4().hex[:8]}@example.com", name="Cliente")
                user.device_fingerprints.append(DeviceFingerprint(device_id=KNOWN_DEVICE, ip=KNOWN_IP))
                user.known_locations.append(KnownLocation(ip=KNOWN_IP))
                session.add(user)
                await session.flush()
                user_id = user.id

            if product_id is None:
                product = Product(name="Audífonos", price=Decimal("25.00"), stock=stock)
                session.add(product)
                await session.flush()
            else:
                product = await session.get(Product, product_id)

            order = Order(
                user_id         = user_id,
                subtotal        = total,
                tax_amount      = Decimal("0"),
                shipping_amount = Decimal("0"),
                total_amount    = total,
            )
            order.items.append(
                OrderItem(product_id=product.id, name=product.name, price=product.price, quantity=quantity)
            )
            session.add(order)
            await session.flush()

            for i in range(recent_transactions):
                session.add(Transaction(
                    order_id              = order.id,
                    user_id               = user_id,
                    payment_token         = f"TOK_SEED{i}{uuid.uuid4().hex[:8].upper()}",
                    masked_card_number    = "**** **** **** 0000",
                    encrypted_card_number = "seed",
                    card_holder_name      = "Cliente",
                    amount                = Decimal("10.00"),
                    status                = "approved",
                ))

            await session.commit()
            return Checkout(user_id=user_id, order_id=order.id, product_id=product.id, quantity=quantity)

    return _seed


def make_token(user_id: uuid.UUID, role: str = "user") -> str:
    return jwt.encode(
        {"sub": str(user_id), "email": "cliente@example.com", "role": role},
        settings.SECRET_KEY,
        algorithm="HS256",
    )
