"""
models.py
---------
Modelos SQLAlchemy para el Motor de Pagos.

Tablas:
  - User               → subconjunto del usuario relevante para riesgo
  - DeviceFingerprint  → dispositivos vistos por usuario
  - KnownLocation      → IPs conocidas por usuario
  - Product            → subconjunto de stock del catálogo
  - Order / OrderItem  → orden creada en el checkout (fuera de este core)
  - Transaction        → intento de pago, nunca se borra (auditoría)
  - FraudLog           → ledger append-only de intentos bloqueados/marcados

Principios de diseño:
  - La tarjeta solo se guarda enmascarada + cifrada con el vault
    (AES-256-GCM). El CVV nunca se persiste.
  - Todos los IDs son UUID v4 → no secuenciales, no predecibles
  - Tipos portables (Uuid, JSON con variante JSONB) → los mismos modelos
    corren en PostgreSQL y en SQLite para las pruebas
  - created_at siempre con timezone=True
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB en PostgreSQL, JSON genérico en el resto
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────────────────────────────
# USUARIOS
# Solo lo que el motor de riesgo necesita. Registro y perfil viven
# en otro servicio.
# ─────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    device_fingerprints: Mapped[list["DeviceFingerprint"]] = relationship(
        back_populates="user", lazy="selectin", cascade="all, delete-orphan"
    )
    known_locations: Mapped[list["KnownLocation"]] = relationship(
        back_populates="user", lazy="selectin", cascade="all, delete-orphan"
    )


class DeviceFingerprint(Base):
    __tablename__ = "device_fingerprints"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped[User] = relationship(back_populates="device_fingerprints")

    __table_args__ = (
        Index("idx_device_fingerprints_user", "user_id", "device_id"),
    )


class KnownLocation(Base):
    __tablename__ = "known_locations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user: Mapped[User] = relationship(back_populates="known_locations")

    __table_args__ = (
        Index("idx_known_locations_user", "user_id", "ip"),
    )


# ─────────────────────────────────────────────────────────────────────
# PRODUCTOS
# El stock nunca baja de cero: lo garantiza el CHECK y el UPDATE
# condicional de ProductRepository.atomic_decrement_stock.
# ─────────────────────────────────────────────────────────────────────
class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )


# ─────────────────────────────────────────────────────────────────────
# ÓRDENES
# Se crean en el checkout (fuera de este core). El orquestador solo
# las muta desde pending/processing en adelante.
# ─────────────────────────────────────────────────────────────────────
class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)

    # {"street", "city", "state", "zip", "country"}
    shipping_address: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="card")

    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # pending | processing | confirmed | shipped | delivered | cancelled | refunded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Transacción que liquidó la orden (solo al aprobarse)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    otp_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_orders_user_created", "user_id", "created_at"),
        Index("idx_orders_status", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("products.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Snapshot del precio al momento del checkout
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )


# ─────────────────────────────────────────────────────────────────────
# TRANSACCIONES
# Registro de cada intento de pago. Nunca se borra.
# Solo el orquestador escribe, una vez por transición de estado.
# ─────────────────────────────────────────────────────────────────────
class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)

    # Referencia externa compartible — nunca el número de tarjeta
    payment_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    masked_card_number: Mapped[str] = mapped_column(String(32), nullable=False)
    # Blob del vault: base64(iv || tag || ciphertext)
    encrypted_card_number: Mapped[str] = mapped_column(Text, nullable=False)
    card_holder_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="card")

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # initiated | otp_pending | processing | approved | declined | failed | refunded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="initiated")

    # Evaluación de riesgo embebida
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_flags: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    risk_assessed: Mapped[bool] = mapped_column(Boolean, default=False)

    # {"device_id", "user_agent", "ip", "is_new_device"}
    device_info: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # Respuestas externas embebidas (timestamps en ISO 8601)
    gateway_response: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    bank_response: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    otp_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    biometric_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Autorizada pero sin poder liquidar → reembolso manual pendiente
    requires_refund: Mapped[bool] = mapped_column(Boolean, default=False)
    refund_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_transactions_user_created", "user_id", "created_at"),
        Index("idx_transactions_status", "status"),
    )


# ─────────────────────────────────────────────────────────────────────
# FRAUD LOG
# Snapshot de cada intento bloqueado o marcado. Solo INSERT desde el
# orquestador; el flujo de revisión humana agrega los campos reviewed_*.
# ─────────────────────────────────────────────────────────────────────
class FraudLog(Base):
    __tablename__ = "fraud_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    flags: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    device_info: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    # {"amount", "payment_method", "masked_card"}
    transaction_details: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # blocked | flagged | allowed_with_review
    action: Mapped[str] = mapped_column(String(30), nullable=False, default="blocked")

    reviewed: Mapped[bool] = mapped_column(Boolean, default=False)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_fraud_logs_user_created", "user_id", "created_at"),
        Index("idx_fraud_logs_risk_score", "risk_score"),
        Index("idx_fraud_logs_reviewed", "reviewed"),
    )
