from __future__ import annotations

import html
import logging
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
DEFAULT_SMTP_TIMEOUT_SECONDS = 60.0
# ValueError covers hosts the IDNA codec rejects (UnicodeError) and bad ports.
SMTP_FAILURES = (smtplib.SMTPException, OSError, ValueError)


class MailTransportError(RuntimeError):
    """SMTP failure; ``response`` carries the server reply when there was one."""

    def __init__(self, message: str, response: Optional[str] = None) -> None:
        super().__init__(message)
        self.response = response


class SmtpConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    host: Optional[str] = None
    port: Optional[int] = None
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, alias="pass")
    from_address: Optional[str] = Field(default=None, alias="from")


@dataclass(frozen=True)
class OutgoingMail:
    sender: str
    to: str
    subject: str
    html: str


class MailTransport(Protocol):
    def verify(self) -> None:
        ...

    def send_mail(self, mail: OutgoingMail) -> str:
        ...


def _server_response(exc: Exception) -> Optional[str]:
    if isinstance(exc, smtplib.SMTPResponseException):
        detail = exc.smtp_error
        if isinstance(detail, bytes):
            detail = detail.decode("utf-8", "replace")
        return f"{exc.smtp_code} {detail}"
    return None


class SmtpTransport:
    def __init__(self, config: SmtpConfig, timeout_seconds: float = DEFAULT_SMTP_TIMEOUT_SECONDS) -> None:
        if not config.host:
            raise ValueError("SMTP host is required")
        self.config = config
        self.timeout_seconds = timeout_seconds

    def _tls_context(self) -> ssl.SSLContext:
        # Small-business relays often present self-signed certificates.
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    def _open(self) -> Union[smtplib.SMTP, smtplib.SMTP_SSL]:
        port = self.config.port or DEFAULT_SMTP_PORT
        if self.config.secure:
            server: Union[smtplib.SMTP, smtplib.SMTP_SSL] = smtplib.SMTP_SSL(
                self.config.host,
                port,
                timeout=self.timeout_seconds,
                context=self._tls_context(),
            )
        else:
            server = smtplib.SMTP(self.config.host, port, timeout=self.timeout_seconds)
        try:
            server.ehlo()
            if not self.config.secure and server.has_extn("starttls"):
                server.starttls(context=self._tls_context())
                server.ehlo()
            if self.config.user:
                server.login(self.config.user, self.config.password or "")
        except BaseException:
            server.close()
            raise
        return server

    def verify(self) -> None:
        try:
            with self._open() as server:
                server.noop()
        except SMTP_FAILURES as exc:
            raise MailTransportError(str(exc) or exc.__class__.__name__, _server_response(exc)) from exc

    def send_mail(self, mail: OutgoingMail) -> str:
        message = EmailMessage()
        message["From"] = mail.sender
        message["To"] = mail.to
        message["Subject"] = mail.subject
        message.set_content(mail.html, subtype="html")
        return self.send_message(message)

    def send_message(self, message: EmailMessage) -> str:
        if not message.get("Message-ID"):
            message["Message-ID"] = make_msgid()
        try:
            with self._open() as server:
                server.send_message(message)
        except SMTP_FAILURES as exc:
            raise MailTransportError(str(exc) or exc.__class__.__name__, _server_response(exc)) from exc
        return str(message["Message-ID"])


class SimulatedTransport:
    """Used when no SMTP relay is configured: nothing leaves the process."""

    def verify(self) -> None:
        return None

    def send_mail(self, mail: OutgoingMail) -> str:
        logger.info("[SIMULATION] Email to %s: Subject: %s", mail.to, mail.subject)
        return f"simulated-{int(time.time() * 1000)}"


def build_transport(
    config: Optional[SmtpConfig],
    timeout_seconds: float = DEFAULT_SMTP_TIMEOUT_SECONDS,
) -> Union[SmtpTransport, SimulatedTransport]:
    if config is not None and config.host:
        return SmtpTransport(config, timeout_seconds=timeout_seconds)
    logger.info("No SMTP config provided. Simulating emails.")
    return SimulatedTransport()


def render_campaign_html(subject: str, open_url: str, link_url: str) -> str:
    safe_subject = html.escape(subject)
    safe_link = html.escape(link_url, quote=True)
    safe_open = html.escape(open_url, quote=True)
    return f"""
      <div style="font-family: sans-serif; padding: 20px; border: 1px solid #eee; border-radius: 8px;">
        <h2>{safe_subject}</h2>
        <p>Hola,</p>
        <p>Adjunto encontrarás nuestra lista de precios actualizada.</p>
        <div style="background-color: #f3f4f6; padding: 10px; border-radius: 6px; font-size: 11px; color: #555; margin: 15px 0;">
            <strong>Nota:</strong> Si ves una pantalla de seguridad de "ngrok", presiona <strong>"Visit Site"</strong>.
        </div>
        <p style="margin: 20px 0;">
          <a href="{safe_link}" style="background: #4f46e5; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; font-weight: bold;">
            Descargar Lista de Precios
          </a>
        </p>
        <p style="font-size: 12px; color: #666; margin-top: 15px;">O copia este enlace: <br>{safe_link}</p>
        <img src="{safe_open}" width="1" height="1" alt="" />
      </div>
    """
