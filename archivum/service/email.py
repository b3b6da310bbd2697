from __future__ import annotations

import base64
import html
import smtplib
import ssl
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from archivum.logging import get_logger
from archivum.service.errors import EmailDeliveryError

logger = get_logger(__name__)

_QR_CONTENT_ID = "qr-code"
_DATA_URL_PREFIX = "data:image/png;base64,"
_FOOTER = "Sistema de Archivos de Testimonios del Bicentenario"


class EmailService:
    """Transactional email for the archive.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Two-factor setup emails with the QR code embedded inline
    - Password reset emails
    - Fallback to logging when not configured (dev mode)

    Sends raise :class:`EmailDeliveryError` on failure; callers decide whether
    to retry.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = _FOOTER,
        frontend_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:5173").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        inline_png: Optional[bytes] = None,
    ) -> MIMEMultipart:
        alternative = MIMEMultipart("alternative")
        alternative.attach(MIMEText(text_body, "plain", "utf-8"))
        alternative.attach(MIMEText(html_body, "html", "utf-8"))
        if inline_png is None:
            msg = alternative
        else:
            msg = MIMEMultipart("related")
            msg.attach(alternative)
            image = MIMEImage(inline_png, "png")
            image.add_header("Content-ID", f"<{_QR_CONTENT_ID}>")
            image.add_header("Content-Disposition", "inline", filename="qr.png")
            msg.attach(image)
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        return msg

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        inline_png: Optional[bytes] = None,
    ) -> None:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return

        msg = self._build_message(to_email, subject, html_body, text_body, inline_png)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("email delivery failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            raise EmailDeliveryError("email delivery failed") from e
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("email delivery failed") from e

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)

    @staticmethod
    def _png_from_data_url(qr_code: str) -> Optional[bytes]:
        if not qr_code.startswith(_DATA_URL_PREFIX):
            return None
        return base64.b64decode(qr_code[len(_DATA_URL_PREFIX):])

    def send_two_factor_setup_email(self, to_email: str, secret: str, qr_code: str) -> None:
        """Send authenticator setup instructions with the QR code inline."""
        subject = "Configuración de Autenticación de Dos Factores"
        png = self._png_from_data_url(qr_code)
        qr_src = f"cid:{_QR_CONTENT_ID}" if png else html.escape(qr_code)
        safe_secret = html.escape(secret)

        html_body = f"""
<!DOCTYPE html>
<html lang="es">
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #212121; }}
        .container {{ max-width: 640px; margin: 0 auto; padding: 30px; }}
        .qr-image {{ display: block; width: 200px; height: 200px; margin: 20px auto; }}
        .secret-code {{ background: #edf2f7; padding: 15px; font-family: 'Courier New', monospace; font-size: 18px; letter-spacing: 2px; text-align: center; word-break: break-all; }}
        .footer {{ margin-top: 40px; font-size: 13px; color: #757575; text-align: center; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Protege tu cuenta</h1>
        <p>Hemos activado la autenticación en dos pasos para tu cuenta.</p>
        <ol>
            <li>Descarga una aplicación de autenticación como Google Authenticator, Authy o Microsoft Authenticator.</li>
            <li>Abre la aplicación y agrega una nueva cuenta.</li>
            <li>Escanea el código QR o ingresa manualmente el código secreto.</li>
            <li>Ingresa el código de 6 dígitos que genera la aplicación al iniciar sesión.</li>
        </ol>
        <img src="{qr_src}" alt="Código QR para configuración 2FA" class="qr-image">
        <p>Si no puedes escanear el código QR, ingresa este código manualmente:</p>
        <div class="secret-code">{safe_secret}</div>
        <p><strong>¡IMPORTANTE!</strong> Guarda este código en un lugar seguro.</p>
        <div class="footer">
            <p>{_FOOTER}</p>
            <p>Este es un mensaje automático, por favor no respondas a este correo.</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Protege tu cuenta

Hemos activado la autenticación en dos pasos para tu cuenta.
Agrega una nueva cuenta en tu aplicación de autenticación con este código secreto:

{secret}

Guarda este código en un lugar seguro.

---
{_FOOTER}
"""

        self._send_email(to_email, subject, html_body, text_body, inline_png=png)

    def send_password_reset_email(self, to_email: str, token: str) -> None:
        """Send password reset email with reset link."""
        reset_url = f"{self.frontend_url}/reset-password?token={quote(token)}"
        subject = "Recuperación de Contraseña"

        html_body = f"""
<!DOCTYPE html>
<html lang="es">
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333333; }}
        .container {{ max-width: 640px; margin: 0 auto; padding: 30px; }}
        .button {{ display: inline-block; background: #40964e; color: white; padding: 14px 28px; border-radius: 30px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 13px; color: #4a5568; text-align: center; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Recuperación de contraseña</h1>
        <p>Hemos recibido una solicitud para restablecer la contraseña de tu cuenta.</p>
        <p style="margin: 30px 0; text-align: center;">
            <a href="{reset_url}" class="button">Restablecer mi contraseña</a>
        </p>
        <p>Este enlace expirará en 1 hora.</p>
        <p>Si no solicitaste este cambio, por favor ignora este mensaje.</p>
        <div class="footer">
            <p>{_FOOTER}</p>
            <p>Si el botón no funciona, copia y pega este enlace en tu navegador: {reset_url}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Recuperación de contraseña

Hemos recibido una solicitud para restablecer la contraseña de tu cuenta.
Visita el siguiente enlace para elegir una nueva contraseña:

{reset_url}

Este enlace expirará en 1 hora.

Si no solicitaste este cambio, por favor ignora este mensaje.

---
{_FOOTER}
"""

        self._send_email(to_email, subject, html_body, text_body)
