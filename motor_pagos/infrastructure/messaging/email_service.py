"""
email_service.py
----------------
Envío de emails transaccionales del checkout via SMTP.

Usa aiosmtplib para envío asíncrono sin bloquear el event loop.
Con EMAIL_ENABLED=False (desarrollo, pruebas) no se conecta a ningún
servidor: solo registra que el envío ocurrió, nunca el código OTP.

Un email fallido no revierte el pago: los métodos retornan bool y el
orquestador solo lo registra.

Uso:
    from motor_pagos.infrastructure.messaging.email_service import email_service
    await email_service.send_otp(to="usuario@correo.com", otp_code="847291", expires_in=300)
"""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from motor_pagos.core.config import settings

logger = logging.getLogger(__name__)

_LAYOUT = """
<!DOCTYPE html>
<html lang="es">
<head><meta charset="UTF-8"></head>
<body style="margin:0; padding:0; background-color:#f4f4f4; font-family:Arial,sans-serif;">
    <table width="100%" cellpadding="0" cellspacing="0">
        <tr>
            <td align="center" style="padding:40px 0;">
                <table width="480" cellpadding="0" cellspacing="0"
                       style="background:#ffffff; border-radius:8px;">
                    <tr>
                        <td style="background:#1a1a2e; border-radius:8px 8px 0 0; padding:24px 32px;">
                            <h1 style="color:#ffffff; margin:0; font-size:22px;">Motor de Pagos</h1>
                        </td>
                    </tr>
                    <tr>
                        <td style="padding:32px;">{body}</td>
                    </tr>
                    <tr>
                        <td style="background:#f9f9f9; border-radius:0 0 8px 8px;
                                   padding:16px 32px; border-top:1px solid #eeeeee;">
                            <p style="color:#aaaaaa; font-size:11px; margin:0; text-align:center;">
                                Este es un mensaje automático.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""


class EmailService:
    """
    Métodos disponibles:
      - send_otp()          → código de verificación del pago
      - send_confirmation() → pago aprobado
      - send_rejection()    → pago no procesado (mensaje genérico)
    """

    async def _send(self, to: str, subject: str, html: str) -> bool:
        """Retorna True si se envió correctamente, False si hubo error o está deshabilitado."""
        if not settings.EMAIL_ENABLED:
            logger.info(f"[Email] Envío deshabilitado — asunto: {subject!r} para {to}")
            return False

        message = MIMEMultipart("alternative")
        message["From"]    = settings.EMAIL_FROM
        message["To"]      = to
        message["Subject"] = subject
        message.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname  = settings.SMTP_HOST,
                port      = settings.SMTP_PORT,
                username  = settings.SMTP_USER,
                password  = settings.SMTP_PASSWORD,
                start_tls = True,
            )
            logger.info(f"[Email] Enviado correctamente a {to} — asunto: {subject}")
            return True

        except aiosmtplib.SMTPException as e:
            logger.error(f"[Email] Error SMTP enviando a {to}: {e}")
        except OSError as e:
            logger.error(f"[Email] Error de conexión enviando a {to}: {e}")

        return False

    async def send_otp(self, to: str, otp_code: str, expires_in: int) -> bool:
        subject = "Tu código de verificación de pago"
        body = f"""
            <p style="color:#666666; font-size:14px; margin:0 0 24px;">
                Ingresa este código para confirmar tu pago.
                Válido por <strong>{expires_in // 60} minutos</strong>.
            </p>
            <div style="background:#f0f4ff; border:2px solid #4361ee; border-radius:8px;
                        padding:20px; text-align:center; margin:0 0 24px;">
                <span style="font-size:36px; font-weight:700; color:#4361ee; letter-spacing:10px;">
                    {otp_code}
                </span>
            </div>
            <p style="color:#999999; font-size:12px; margin:0;">
                Si no solicitaste este código, ignora este mensaje.
            </p>
        """
        return await self._send(to=to, subject=subject, html=_LAYOUT.format(body=body))

    async def send_confirmation(
        self,
        to:             str,
        amount:         str,
        currency:       str,
        transaction_id: str,
        masked_card:    str,
    ) -> bool:
        subject = "Pago confirmado"
        body = f"""
            <h2 style="color:#333333; text-align:center; margin:0 0 8px;">Pago aprobado</h2>
            <p style="color:#666666; font-size:14px;">Monto: <strong>{amount} {currency}</strong></p>
            <p style="color:#666666; font-size:14px;">Tarjeta: {masked_card}</p>
            <p style="color:#aaaaaa; font-size:11px;">ID: {transaction_id}</p>
        """
        return await self._send(to=to, subject=subject, html=_LAYOUT.format(body=body))

    async def send_rejection(self, to: str) -> bool:
        """
        El mensaje es genérico a propósito: no revela la razón del rechazo.
        """
        subject = "Pago no procesado"
        body = """
            <h2 style="color:#333333; margin:0 0 8px;">Pago no procesado</h2>
            <p style="color:#666666; font-size:14px; margin:0;">
                No pudimos procesar tu pago. Si crees que esto es un error,
                contacta a soporte.
            </p>
        """
        return await self._send(to=to, subject=subject, html=_LAYOUT.format(body=body))


# Singleton
email_service = EmailService()
