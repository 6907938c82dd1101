import asyncio
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from backoffice.office_core.config import Settings
from backoffice.office_core.notifications import (
    notify_admin_new_request,
    parse_command,
    send_confirmation,
    send_telegram_text,
)


def _settings(**overrides):
    values = {
        "data_dir": Path("/tmp/backoffice-test-data"),
        "public_dir": Path("/tmp/backoffice-test-public"),
        "admin_user": "admin",
        "admin_pass": "secret",
    }
    values.update(overrides)
    return Settings(**values)


class ParseCommandTests(unittest.TestCase):
    def test_accept_and_reject(self) -> None:
        accept = parse_command("/aceptar 12")
        reject = parse_command("  /RECHAZAR 7 gracias")

        self.assertEqual((accept.status, accept.appointment_id), ("accepted", 12))
        self.assertEqual((reject.status, reject.appointment_id), ("rejected", 7))

    def test_other_text_is_ignored(self) -> None:
        self.assertIsNone(parse_command("hola"))
        self.assertIsNone(parse_command("/aceptar"))
        self.assertIsNone(parse_command(None))


class ConfirmationMailTests(unittest.TestCase):
    def test_skipped_without_smtp_settings(self) -> None:
        self.assertFalse(
            send_confirmation(_settings(smtp_host="smtp.example.com"), to="a@b.c", name="Ana", slot="x", service="s")
        )

    def test_sends_through_smtp_transport(self) -> None:
        settings = _settings(smtp_host="smtp.example.com", smtp_port=465, smtp_user="bot@example.com", smtp_pass="pw")
        with patch("backoffice.office_core.notifications.SmtpTransport") as transport_cls:
            sent = send_confirmation(
                settings,
                to="ana@example.com",
                name="Ana",
                slot="2030-05-10T13:00:00.000Z",
                service="Asesoría",
            )

        self.assertTrue(sent)
        config = transport_cls.call_args.args[0]
        self.assertTrue(config.secure)
        message = transport_cls.return_value.send_message.call_args.args[0]
        self.assertEqual(message["To"], "ana@example.com")
        self.assertEqual(message["Subject"], "Confirmación de solicitud")
        self.assertIn("Asesoría", message.get_content())


class TelegramTests(unittest.TestCase):
    def test_send_skipped_without_token(self) -> None:
        self.assertFalse(asyncio.run(send_telegram_text(_settings(), "-100", "hola")))

    def test_admin_notification_lists_commands(self) -> None:
        settings = _settings(telegram_bot_token="token", telegram_chat_id="-100")
        with patch(
            "backoffice.office_core.notifications.send_telegram_text",
            new=AsyncMock(return_value=True),
        ) as send_mock:
            result = asyncio.run(
                notify_admin_new_request(
                    settings,
                    name="Ana",
                    email="ana@example.com",
                    phone="099123",
                    service="Asesoría",
                    slot="2030-05-10T13:00:00.000Z",
                    appointment_id=7,
                )
            )

        self.assertTrue(result)
        _, chat_id, text = send_mock.call_args.args
        self.assertEqual(chat_id, "-100")
        self.assertIn("ID cita: 7", text)
        self.assertIn("/aceptar ID o /rechazar ID", text)


if __name__ == "__main__":
    unittest.main()
