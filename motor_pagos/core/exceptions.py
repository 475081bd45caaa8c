"""
exceptions.py
-------------
Excepciones personalizadas del Motor de Pagos.

Todas heredan de PaymentEngineException para poder capturarlas
en un solo handler global en main.py:

    @app.exception_handler(PaymentEngineException)
    async def payment_exception_handler(request: Request, exc: PaymentEngineException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, **exc.extra},
        )

`extra` solo lleva campos seguros para el cliente (score, flags,
intentos restantes, ids de transacción). Nunca datos de tarjeta,
códigos OTP ni los factores internos del motor de riesgo.
"""


class PaymentEngineException(Exception):
    """Base de todas las excepciones del motor."""
    status_code: int = 500
    message: str = "Error interno del motor de pagos."

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.__class__.message
        self.extra   = extra
        super().__init__(self.message)


# ─────────────────────────────────────────────────────────────────────
# Errores de validación y payload
# ─────────────────────────────────────────────────────────────────────

class InvalidPayloadException(PaymentEngineException):
    """Campos faltantes o mal formados en el request."""
    status_code = 422
    message = "Datos de pago inválidos."


# ─────────────────────────────────────────────────────────────────────
# Precondiciones de orden y transacción
# ─────────────────────────────────────────────────────────────────────

class OrderNotEligibleException(PaymentEngineException):
    """La orden no existe, no pertenece al usuario o no está en pending."""
    status_code = 404
    message = "Orden no encontrada o ya procesada."


class InsufficientStockException(PaymentEngineException):
    """Algún producto de la orden no tiene stock suficiente antes de cobrar."""
    status_code = 409
    message = "Stock insuficiente para uno o más productos de la orden."


class TransactionNotEligibleException(PaymentEngineException):
    """La transacción no existe para el usuario o no está en el estado esperado."""
    status_code = 404
    message = "Transacción no encontrada o ya procesada."


class AlreadyProcessedException(TransactionNotEligibleException):
    """
    El registro ya avanzó a otro estado (request duplicado o reintento).
    No se re-ejecuta ningún efecto secundario.
    """
    status_code = 409
    message = "La transacción ya fue procesada."


# ─────────────────────────────────────────────────────────────────────
# Errores de OTP
# ─────────────────────────────────────────────────────────────────────

class NoActiveChallengeException(PaymentEngineException):
    """El usuario no tiene un OTP activo para esta transacción."""
    status_code = 400
    message = "No hay un código de verificación activo. Reinicia el pago."


class OtpExpiredException(PaymentEngineException):
    """El OTP ingresado ya expiró."""
    status_code = 400
    message = "El código de verificación ha expirado."


class OtpInvalidException(PaymentEngineException):
    """El OTP ingresado no coincide con el emitido."""
    status_code = 400
    message = "Código de verificación incorrecto."


class OtpMaxAttemptsException(PaymentEngineException):
    """Se agotaron los intentos permitidos; la transacción pasa a failed."""
    status_code = 429
    message = "Demasiados intentos fallidos. Transacción cancelada."


# ─────────────────────────────────────────────────────────────────────
# Errores de riesgo y liquidación
# ─────────────────────────────────────────────────────────────────────

class TransactionBlockedException(PaymentEngineException):
    """El motor de riesgo vetó la transacción."""
    status_code = 403
    message = "Transacción bloqueada por actividad sospechosa."


class InsufficientStockAtSettlementException(PaymentEngineException):
    """
    El stock se agotó entre la autorización y la liquidación.
    La orden se cancela y la transacción queda marcada para reembolso manual.
    """
    status_code = 409
    message = "El producto se agotó durante el pago. Se procesará el reembolso."


class UpstreamUnavailableException(PaymentEngineException):
    """El gateway o el banco fallaron sin respuesta definitiva."""
    status_code = 502
    message = "No se pudo completar la autorización externa."


class GatewayTimeoutException(UpstreamUnavailableException):
    """El gateway no respondió dentro del tiempo límite."""
    message = "El gateway de pagos no respondió a tiempo."


class BankTimeoutException(UpstreamUnavailableException):
    """El banco no respondió dentro del tiempo límite."""
    message = "El banco no respondió a tiempo."


# ─────────────────────────────────────────────────────────────────────
# Errores de infraestructura y cifrado
# ─────────────────────────────────────────────────────────────────────

class RedisUnavailableException(PaymentEngineException):
    """Redis no está disponible."""
    status_code = 503
    message = "Servicio temporalmente no disponible. Intenta en unos momentos."


class VaultIntegrityException(PaymentEngineException):
    """El blob cifrado está corrupto o su tag de autenticación no verifica."""
    status_code = 500
    message = "Error al procesar datos sensibles."


class InvalidTokenException(PaymentEngineException):
    """JWT ausente, manipulado o expirado."""
    status_code = 401
    message = "Token inválido o expirado."


class FraudLogNotFoundException(PaymentEngineException):
    """El registro del ledger antifraude no existe."""
    status_code = 404
    message = "Registro de fraude no encontrado."
