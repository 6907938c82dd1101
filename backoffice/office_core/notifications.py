from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

import httpx

from backoffice.office_core.appointments import STATUS_ACCEPTED, STATUS_REJECTED
from backoffice.office_core.config import Settings
from backoffice.office_core.mailer import SmtpConfig, SmtpTransport

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
TELEGRAM_TIMEOUT_SECONDS = 10.0
SMTPS_PORT = 465

ACCEPT_COMMAND = re.compile(r"^/aceptar\s+(\d+)", re.IGNORECASE)
REJECT_COMMAND = re.compile(r"^/rechazar\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class AdminCommand:
    status: str
    appointment_id: int


def parse_command(text: Optional[str]) -> Optional[AdminCommand]:
    stripped = str(text or "").strip()
    match = ACCEPT_COMMAND.match(stripped)
    if match:
        return AdminCommand(status=STATUS_ACCEPTED, appointment_id=int(match.group(1)))
    match = REJECT_COMMAND.match(stripped)
    if match:
        return AdminCommand(status=STATUS_REJECTED, appointment_id=int(match.group(1)))
    return None


def format_local_datetime(value: str) -> str:
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return moment.astimezone().strftime("%d/%m/%Y, %H:%M:%S")


def send_confirmation(settings: Settings, *, to: str, name: str, slot: str, service: str) -> bool:
    """Mail the client that the request arrived. Skipped unless SMTP_* is fully set."""
    if not (settings.smtp_host and settings.smtp_port and settings.smtp_user and settings.smtp_pass):
        return False
    transport = SmtpTransport(
        SmtpConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            secure=settings.smtp_port == SMTPS_PORT,
            user=settings.smtp_user,
            password=settings.smtp_pass,
        ),
        timeout_seconds=settings.smtp_timeout_seconds,
    )
    message = EmailMessage()
    message["From"] = settings.smtp_user
    message["To"] = to
    message["Subject"] = "Confirmación de solicitud"
    message.set_content(
        f"Hola {name}, tu solicitud para {service} ha sido recibida. "
        f"Fecha y hora: {format_local_datetime(slot)}. Pronto confirmaremos tu cita."
    )
    transport.send_message(message)
    return True


async def send_telegram_text(settings: Settings, chat_id: str, text: str) -> bool:
    if not settings.telegram_bot_token or not chat_id:
        return False
    url = f"{TELEGRAM_API_URL}/bot{settings.telegram_bot_token}/sendMessage"
    async with httpx.AsyncClient(timeout=TELEGRAM_TIMEOUT_SECONDS) as client:
        response = await client.post(url, json={"chat_id": chat_id, "text": text})
        response.raise_for_status()
    return True


async def notify_admin_new_request(
    settings: Settings,
    *,
    name: str,
    email: str,
    phone: str,
    service: str,
    slot: str,
    appointment_id: int,
) -> bool:
    text = "\n".join(
        [
            "Nueva solicitud:",
            f"Cliente: {name}",
            f"Email: {email}",
            f"Teléfono: {phone}",
            f"Servicio: {service}",
            f"Fecha/Hora: {format_local_datetime(slot)}",
            f"ID cita: {appointment_id}",
            "Acciones: /aceptar ID o /rechazar ID",
        ]
    )
    return await send_telegram_text(settings, settings.telegram_chat_id, text)
