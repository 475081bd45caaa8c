"""
payment_orchestrator.py
-----------------------
Orquestador del pago con tarjeta — máquina de estados de la transacción.

No contiene lógica de detección ni de autorización propia: delega en el
motor de riesgo, el emisor de OTP y los simuladores de gateway y banco,
y se encarga de que Transaction, Order y stock nunca queden en una
combinación inconsistente.

  initiated   ──(riesgo bloquea)──────────────→ declined    [order → cancelled]
  initiated   ──(riesgo permite)──────────────→ otp_pending [OTP emitido]
  otp_pending ──(OTP inválido, intentos < 3)──→ otp_pending [intentos++]
  otp_pending ──(intentos agotados)───────────→ failed
  otp_pending ──(OTP válido)──────────────────→ processing  [order → processing]
  processing  ──(gateway declina)─────────────→ declined    [order → cancelled]
  processing  ──(gateway ok, banco declina)───→ declined    [order → cancelled]
  processing  ──(gateway ok, banco ok)────────→ approved    [order → confirmed, stock--]
  processing  ──(sin stock al liquidar)───────→ failed      [order → cancelled, requires_refund]

Reglas de concurrencia:
  - Cada transición es un UPDATE condicionado al estado esperado. Si otro
    request ya movió el registro se reporta AlreadyProcessed y no se
    repite ningún efecto secundario.
  - Ningún lock se mantiene mientras se espera al gateway o al banco.
  - El stock se descuenta con un UPDATE "restar si alcanza" en la misma
    unidad de trabajo que marca la transacción approved y la orden
    confirmed: o se confirman las tres cosas o ninguna.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.core.config import settings
from motor_pagos.core.exceptions import (
    AlreadyProcessedException,
    BankTimeoutException,
    GatewayTimeoutException,
    InsufficientStockAtSettlementException,
    InsufficientStockException,
    NoActiveChallengeException,
    OrderNotEligibleException,
    OtpExpiredException,
    OtpInvalidException,
    OtpMaxAttemptsException,
    TransactionNotEligibleException,
    UpstreamUnavailableException,
)
from motor_pagos.core.vault import encrypt, generate_token, mask_card_number
from motor_pagos.domain.models import Order, Transaction
from motor_pagos.domain.schemas import (
    OrderStatus,
    PaymentInitiateRequest,
    TransactionStatus,
)
from motor_pagos.infrastructure.database.fraud_ledger import FraudLedger
from motor_pagos.infrastructure.database.order_repository import OrderRepository
from motor_pagos.infrastructure.database.product_repository import ProductRepository
from motor_pagos.infrastructure.database.transaction_repository import TransactionRepository
from motor_pagos.infrastructure.database.user_repository import UserRepository
from motor_pagos.infrastructure.messaging.email_service import EmailService, email_service
from motor_pagos.services.otp_service import (
    OTP_EXPIRED,
    OtpChallengeStore,
    OtpIssuer,
    challenge_store,
    otp_issuer,
)
from motor_pagos.services.risk_engine import RiskEngine, RiskSignal
from motor_pagos.services.simulators import (
    Authorizer,
    BankResponse,
    BankSimulator,
    GatewayResponse,
    GatewaySimulator,
    Settler,
)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Contexto y resultados
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DeviceContext:
    """Dispositivo desde el que se inicia el pago (headers del request)."""
    device_id:  str = "default_device"
    user_agent: str = "unknown"
    ip:         str = "unknown"

    def to_dict(self, is_new_device: bool) -> dict:
        return {
            "device_id":     self.device_id,
            "user_agent":    self.user_agent,
            "ip":            self.ip,
            "is_new_device": is_new_device,
        }


@dataclass
class InitiatePaymentResult:
    transaction_id: uuid.UUID
    payment_token:  str
    masked_card:    str
    risk_score:     int
    flags:          list[str] = field(default_factory=list)
    blocked:        bool = False
    otp_required:   bool = False
    expires_in:     int = 0
    # Solo en ENVIRONMENT=development
    dev_otp:        str | None = field(default=None, repr=False)


@dataclass
class SettlementResult:
    success:                bool
    message:                str
    transaction_id:         uuid.UUID
    transaction_status:     TransactionStatus
    amount:                 Decimal
    masked_card:            str
    payment_token:          str
    order_id:               uuid.UUID
    order_status:           OrderStatus
    gateway_transaction_id: str | None = None
    bank_transaction_id:    str | None = None


def _line_quantities(order: Order) -> dict[uuid.UUID, int]:
    """Cantidad total por producto (una orden puede repetir un producto)."""
    quantities: dict[uuid.UUID, int] = defaultdict(int)
    for item in order.items:
        quantities[item.product_id] += item.quantity
    return dict(quantities)


class PaymentOrchestrator:

    def __init__(
        self,
        risk_engine:     RiskEngine | None = None,
        issuer:          OtpIssuer | None = None,
        challenges:      OtpChallengeStore | None = None,
        authorizer:      Authorizer | None = None,
        settler:         Settler | None = None,
        notifier:        EmailService | None = None,
    ):
        self.risk_engine = risk_engine or RiskEngine()
        self.issuer      = issuer or otp_issuer
        self.challenges  = challenges or challenge_store
        self.authorizer  = authorizer or GatewaySimulator()
        self.settler     = settler or BankSimulator()
        self.notifier    = notifier or email_service

    # ------------------------------------------------------------------ #
    #  initiate                                                          #
    # ------------------------------------------------------------------ #

    async def initiate(
        self,
        db:      AsyncSession,
        user_id: uuid.UUID,
        request: PaymentInitiateRequest,
        device:  DeviceContext,
    ) -> InitiatePaymentResult:
        """
        Evalúa el riesgo de pagar una orden pending y, si se permite,
        emite el OTP. Un bloqueo NO es una excepción aquí: el resultado
        viene con blocked=True y el estado ya confirmado.
        """
        orders       = OrderRepository(db)
        transactions = TransactionRepository(db)
        users        = UserRepository(db)

        order = await orders.find_eligible_for_payment(request.order_id, user_id)
        if order is None:
            raise OrderNotEligibleException()

        await self._check_stock(db, order)

        # ── Señales de riesgo ────────────────────────────────────────
        since = datetime.now(timezone.utc) - timedelta(minutes=settings.VELOCITY_WINDOW_MINUTES)
        recent = await transactions.count_recent(user_id, since)
        failed = await transactions.count_recent(user_id, since, TransactionStatus.FAILED)
        profile = await users.get_risk_profile(user_id)

        assessment = self.risk_engine.assess(
            profile,
            RiskSignal(
                ip                       = device.ip,
                device_id                = device.device_id,
                amount                   = order.total_amount,
                failed_attempts          = failed,
                recent_transaction_count = recent,
            ),
        )

        # ── Transacción initiated (la tarjeta nunca en claro) ────────
        masked_card = mask_card_number(request.card_number)
        device_info = device.to_dict(is_new_device=profile.is_new_device(device.device_id))
        tx = await transactions.create(
            order_id              = order.id,
            user_id               = user_id,
            payment_token         = generate_token(),
            masked_card_number    = masked_card,
            encrypted_card_number = encrypt(request.card_number),
            card_holder_name      = request.card_holder_name,
            payment_method        = order.payment_method,
            amount                = order.total_amount,
            currency              = settings.DEFAULT_CURRENCY,
            risk_score            = assessment.score,
            risk_flags            = assessment.flags,
            risk_assessed         = True,
            device_info           = device_info,
            biometric_verified    = request.biometric_verified,
        )

        if assessment.blocked:
            await self.risk_engine.log_blocked(
                FraudLedger(db),
                assessment,
                user_id             = user_id,
                device_info         = device_info,
                transaction_details = {
                    "amount":         str(order.total_amount),
                    "payment_method": order.payment_method,
                    "masked_card":    masked_card,
                },
                transaction_id      = tx.id,
                order_id            = order.id,
            )
            await transactions.transition(tx.id, TransactionStatus.INITIATED, TransactionStatus.DECLINED)
            if not await orders.transition(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED):
                await db.rollback()
                raise AlreadyProcessedException()
            await db.commit()

            logger.warning(
                f"[Orchestrator] BLOQUEADA tx={tx.id} order={order.id} "
                f"score={assessment.score} flags={assessment.flags}"
            )
            user = await users.get(user_id)
            if user is not None:
                await self.notifier.send_rejection(to=user.email)

            return InitiatePaymentResult(
                transaction_id = tx.id,
                payment_token  = tx.payment_token,
                masked_card    = masked_card,
                risk_score     = assessment.score,
                flags          = assessment.flags,
                blocked        = True,
            )

        # ── OTP ──────────────────────────────────────────────────────
        issued = self.issuer.issue()
        await transactions.transition(tx.id, TransactionStatus.INITIATED, TransactionStatus.OTP_PENDING)
        # Si Redis falla aquí, el request hace rollback y no queda nada a medias
        await self.challenges.save(
            user_id        = user_id,
            transaction_id = tx.id,
            code_hash      = self.issuer.digest(issued.code),
            expires_at     = issued.expires_at,
        )
        await db.commit()

        expires_in = self.issuer.expire_minutes * 60
        logger.info(
            f"[Orchestrator] OTP emitido tx={tx.id} order={order.id} "
            f"score={assessment.score} card={masked_card}"
        )

        user = await users.get(user_id)
        if user is not None:
            await self.notifier.send_otp(to=user.email, otp_code=issued.code, expires_in=expires_in)

        return InitiatePaymentResult(
            transaction_id = tx.id,
            payment_token  = tx.payment_token,
            masked_card    = masked_card,
            risk_score     = assessment.score,
            flags          = assessment.flags,
            otp_required   = True,
            expires_in     = expires_in,
            dev_otp        = issued.code if settings.ENVIRONMENT == "development" else None,
        )

    async def _check_stock(self, db: AsyncSession, order: Order) -> None:
        """Verificación previa, sin reservar: el descuento real ocurre al liquidar."""
        quantities = _line_quantities(order)
        products = await ProductRepository(db).find_many(quantities.keys())
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None or not product.is_active or product.stock < quantity:
                raise InsufficientStockException(product_id=str(product_id))

    # ------------------------------------------------------------------ #
    #  verify_and_settle                                                 #
    # ------------------------------------------------------------------ #

    async def verify_and_settle(
        self,
        db:                 AsyncSession,
        user_id:            uuid.UUID,
        transaction_id:     uuid.UUID,
        otp_input:          str,
        biometric_verified: bool = False,
    ) -> SettlementResult:
        orders       = OrderRepository(db)
        transactions = TransactionRepository(db)

        tx = await transactions.find_by_id_and_status(
            transaction_id, user_id, TransactionStatus.OTP_PENDING
        )
        if tx is None:
            existing = await transactions.find_for_user(transaction_id, user_id)
            if existing is None:
                raise TransactionNotEligibleException()
            raise AlreadyProcessedException(status=existing.status)
        tx_id, order_id = tx.id, tx.order_id

        # ── Challenge ────────────────────────────────────────────────
        challenge = await self.challenges.get(user_id)
        if challenge is None or challenge.transaction_id != tx_id:
            await self._force_failed(db, tx_id, "sin challenge activo")
            raise NoActiveChallengeException()

        if challenge.attempts >= settings.OTP_MAX_ATTEMPTS:
            await self.challenges.clear(user_id)
            await self._force_failed(db, tx_id, "intentos de OTP agotados")
            raise OtpMaxAttemptsException()

        validation = self.issuer.validate(otp_input, challenge.code_hash, challenge.expires_at)
        if not validation.valid:
            attempts = await self.challenges.register_failure(user_id)
            remaining = max(settings.OTP_MAX_ATTEMPTS - attempts, 0)
            logger.info(
                f"[Orchestrator] OTP {validation.reason} tx={tx_id} "
                f"intentos={attempts}/{settings.OTP_MAX_ATTEMPTS}"
            )
            if validation.reason == OTP_EXPIRED:
                raise OtpExpiredException(attempts_remaining=remaining)
            raise OtpInvalidException(attempts_remaining=remaining)

        # ── otp_pending → processing (transacción y orden juntas) ────
        moved = await transactions.transition(
            tx_id,
            TransactionStatus.OTP_PENDING,
            TransactionStatus.PROCESSING,
            otp_verified       = True,
            biometric_verified = tx.biometric_verified or biometric_verified,
        )
        if not moved:
            await db.rollback()
            raise AlreadyProcessedException()

        if not await orders.transition(
            order_id, OrderStatus.PENDING, OrderStatus.PROCESSING, otp_verified=True
        ):
            await db.rollback()
            await self.challenges.consume(user_id)
            await self._force_failed(db, tx_id, "la orden ya no está pending")
            raise AlreadyProcessedException()

        await db.commit()
        # El guard de la base ya decidió quién gana; esto solo limpia el código
        await self.challenges.consume(user_id)

        order = await orders.get(order_id)
        return await self._settle(db, tx, order, user_id)

    async def _force_failed(self, db: AsyncSession, transaction_id: uuid.UUID, reason: str) -> None:
        transactions = TransactionRepository(db)
        if not await transactions.transition(
            transaction_id, TransactionStatus.OTP_PENDING, TransactionStatus.FAILED
        ):
            await db.rollback()
            raise AlreadyProcessedException()
        await db.commit()
        logger.warning(f"[Orchestrator] tx={transaction_id} → failed ({reason})")

    # ------------------------------------------------------------------ #
    #  Llamadas externas                                                  #
    # ------------------------------------------------------------------ #

    async def _authorize(self, tx: Transaction) -> GatewayResponse:
        try:
            return await asyncio.wait_for(
                self.authorizer.authorize(
                    amount         = tx.amount,
                    payment_token  = tx.payment_token,
                    payment_method = tx.payment_method,
                ),
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise GatewayTimeoutException()
        except Exception as e:
            logger.error(f"[Orchestrator] Gateway falló tx={tx.id}: {e!r}")
            raise UpstreamUnavailableException(
                "El gateway de pagos no está disponible."
            ) from e

    async def _approve(self, gateway: GatewayResponse, amount: Decimal) -> BankResponse:
        try:
            return await asyncio.wait_for(
                self.settler.approve(gateway, amount),
                timeout=settings.BANK_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise BankTimeoutException()
        except Exception as e:
            logger.error(
                f"[Orchestrator] Banco falló gateway_ref={gateway.gateway_transaction_id}: {e!r}"
            )
            raise UpstreamUnavailableException("El banco no está disponible.") from e

    async def _call_upstream(self, tx: Transaction) -> tuple[GatewayResponse, BankResponse | None]:
        """
        Gateway y, solo si aprueba, banco. Un timeout o un error del
        upstream se liquida como declinación definitiva (sin reintentos).
        """
        try:
            gateway = await self._authorize(tx)
        except UpstreamUnavailableException as e:
            logger.error(f"[Orchestrator] {e.message} tx={tx.id}")
            return GatewayResponse(
                success          = False,
                response_code    = (
                    "GATEWAY_TIMEOUT" if isinstance(e, GatewayTimeoutException)
                    else "GATEWAY_UNAVAILABLE"
                ),
                response_message = e.message,
                processed_at     = datetime.now(timezone.utc),
            ), None

        if not gateway.success:
            return gateway, None

        try:
            bank = await self._approve(gateway, tx.amount)
        except UpstreamUnavailableException as e:
            logger.error(f"[Orchestrator] {e.message} tx={tx.id}")
            bank = BankResponse(
                approved            = False,
                bank_transaction_id = None,
                reason              = e.message,
                processed_at        = datetime.now(timezone.utc),
            )
        return gateway, bank

    # ------------------------------------------------------------------ #
    #  Liquidación                                                        #
    #  Tras un rollback las instancias ORM quedan expiradas: los commits  #
    #  de abajo trabajan solo con ids.                                    #
    # ------------------------------------------------------------------ #

    async def _settle(
        self,
        db:      AsyncSession,
        tx:      Transaction,
        order:   Order,
        user_id: uuid.UUID,
    ) -> SettlementResult:
        tx_id, order_id = tx.id, order.id
        quantities = _line_quantities(order)

        gateway, bank = await self._call_upstream(tx)
        responses = {
            "gateway_response": gateway.to_dict(),
            "bank_response":    bank.to_dict() if bank else None,
        }

        if bank is not None and bank.approved:
            await self._commit_approved(
                db, tx_id, order_id, user_id, quantities, responses, tx.device_info
            )
            logger.info(
                f"[Orchestrator] APROBADA tx={tx_id} order={order_id} "
                f"gw={gateway.gateway_transaction_id} bank={bank.bank_transaction_id}"
            )
            transaction_status = TransactionStatus.APPROVED
            order_status       = OrderStatus.CONFIRMED
            message            = "Pago aprobado."
        else:
            await self._commit_declined(db, tx_id, order_id, responses)
            logger.info(
                f"[Orchestrator] DECLINADA tx={tx_id} order={order_id} "
                f"gw={gateway.response_code} bank={bank.reason if bank else None}"
            )
            transaction_status = TransactionStatus.DECLINED
            order_status       = OrderStatus.CANCELLED
            message = (
                "Pago declinado por el banco."
                if bank is not None
                else "Pago declinado por el gateway."
            )

        user = await UserRepository(db).get(user_id)
        if user is not None:
            if transaction_status == TransactionStatus.APPROVED:
                await self.notifier.send_confirmation(
                    to             = user.email,
                    amount         = str(tx.amount),
                    currency       = tx.currency,
                    transaction_id = str(tx_id),
                    masked_card    = tx.masked_card_number,
                )
            else:
                await self.notifier.send_rejection(to=user.email)

        return SettlementResult(
            success                = transaction_status == TransactionStatus.APPROVED,
            message                = message,
            transaction_id         = tx_id,
            transaction_status     = transaction_status,
            amount                 = tx.amount,
            masked_card            = tx.masked_card_number,
            payment_token          = tx.payment_token,
            order_id               = order_id,
            order_status           = order_status,
            gateway_transaction_id = gateway.gateway_transaction_id,
            bank_transaction_id    = bank.bank_transaction_id if bank else None,
        )

    async def _commit_approved(
        self,
        db:          AsyncSession,
        tx_id:       uuid.UUID,
        order_id:    uuid.UUID,
        user_id:     uuid.UUID,
        quantities:  dict[uuid.UUID, int],
        responses:   dict,
        device_info: dict | None,
    ) -> None:
        """Stock, transacción approved y orden confirmed en un solo commit."""
        products     = ProductRepository(db)
        transactions = TransactionRepository(db)
        orders       = OrderRepository(db)

        if not await transactions.transition(
            tx_id, TransactionStatus.PROCESSING, TransactionStatus.APPROVED, **responses
        ):
            await db.rollback()
            raise AlreadyProcessedException()

        # Orden fijo de productos para que dos liquidaciones no se bloqueen mutuamente
        for product_id in sorted(quantities, key=str):
            if not await products.atomic_decrement_stock(product_id, quantities[product_id]):
                await db.rollback()
                await self._commit_stock_shortage(db, tx_id, order_id, responses, product_id)

        if not await orders.transition(
            order_id, OrderStatus.PROCESSING, OrderStatus.CONFIRMED, transaction_id=tx_id
        ):
            await db.rollback()
            raise AlreadyProcessedException()

        device = device_info or {}
        await UserRepository(db).record_device(
            user_id    = user_id,
            device_id  = device.get("device_id", "default_device"),
            user_agent = device.get("user_agent"),
            ip         = device.get("ip", "unknown"),
        )
        await db.commit()

    async def _commit_stock_shortage(
        self,
        db:         AsyncSession,
        tx_id:      uuid.UUID,
        order_id:   uuid.UUID,
        responses:  dict,
        product_id: uuid.UUID,
    ) -> None:
        """
        Autorizada pero sin stock: la transacción queda failed con
        requires_refund y la orden cancelada. Siempre lanza.
        """
        transactions = TransactionRepository(db)
        orders       = OrderRepository(db)

        moved = await transactions.transition(
            tx_id,
            TransactionStatus.PROCESSING,
            TransactionStatus.FAILED,
            requires_refund = True,
            refund_reason   = "insufficient_stock_at_settlement",
            **responses,
        )
        if not moved:
            await db.rollback()
            raise AlreadyProcessedException()
        if not await orders.transition(
            order_id,
            OrderStatus.PROCESSING,
            OrderStatus.CANCELLED,
            notes = f"Stock agotado al liquidar (producto {product_id}). Reembolso pendiente.",
        ):
            await db.rollback()
            raise AlreadyProcessedException()
        await db.commit()

        logger.error(
            f"[Orchestrator] STOCK AGOTADO al liquidar tx={tx_id} order={order_id} "
            f"product={product_id} — reembolso manual pendiente"
        )
        raise InsufficientStockAtSettlementException(
            transaction_id  = str(tx_id),
            order_id        = str(order_id),
            requires_refund = True,
        )

    async def _commit_declined(
        self,
        db:        AsyncSession,
        tx_id:     uuid.UUID,
        order_id:  uuid.UUID,
        responses: dict,
    ) -> None:
        transactions = TransactionRepository(db)
        orders       = OrderRepository(db)

        if not await transactions.transition(
            tx_id, TransactionStatus.PROCESSING, TransactionStatus.DECLINED, **responses
        ):
            await db.rollback()
            raise AlreadyProcessedException()
        if not await orders.transition(order_id, OrderStatus.PROCESSING, OrderStatus.CANCELLED):
            await db.rollback()
            raise AlreadyProcessedException()
        await db.commit()

    # ------------------------------------------------------------------ #
    #  status                                                             #
    # ------------------------------------------------------------------ #

    async def status(
        self,
        db:             AsyncSession,
        user_id:        uuid.UUID,
        transaction_id: uuid.UUID,
    ) -> Transaction:
        """Snapshot de solo lectura."""
        tx = await TransactionRepository(db).find_for_user(transaction_id, user_id)
        if tx is None:
            raise TransactionNotEligibleException()
        return tx


# Singleton
payment_orchestrator = PaymentOrchestrator()
