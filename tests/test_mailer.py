import smtplib
import unittest
from unittest.mock import patch

from backoffice.office_core.mailer import (
    MailTransportError,
    OutgoingMail,
    SimulatedTransport,
    SmtpConfig,
    SmtpTransport,
    build_transport,
    render_campaign_html,
)


class SmtpConfigTests(unittest.TestCase):
    def test_accepts_wire_aliases(self) -> None:
        config = SmtpConfig.model_validate(
            {"host": "smtp.example.com", "port": "465", "secure": True, "user": "u", "pass": "p", "from": "a@b.c"}
        )

        self.assertEqual(config.port, 465)
        self.assertEqual(config.password, "p")
        self.assertEqual(config.from_address, "a@b.c")


class BuildTransportTests(unittest.TestCase):
    def test_without_host_simulates(self) -> None:
        self.assertIsInstance(build_transport(None), SimulatedTransport)
        self.assertIsInstance(build_transport(SmtpConfig(port=25)), SimulatedTransport)

    def test_with_host_uses_smtp(self) -> None:
        transport = build_transport(SmtpConfig(host="smtp.example.com"), timeout_seconds=5)
        self.assertIsInstance(transport, SmtpTransport)
        self.assertEqual(transport.timeout_seconds, 5)

    def test_simulated_send_logs(self) -> None:
        mail = OutgoingMail(sender="a@b.c", to="ana@example.com", subject="Lista", html="<p>x</p>")
        with self.assertLogs("backoffice.office_core.mailer", level="INFO") as captured:
            SimulatedTransport().send_mail(mail)
        self.assertIn("[SIMULATION]", captured.output[0])


class SmtpTransportTests(unittest.TestCase):
    def test_verify_wraps_connection_errors(self) -> None:
        transport = SmtpTransport(SmtpConfig(host="smtp.invalid", port=587))
        with patch("backoffice.office_core.mailer.smtplib.SMTP", side_effect=OSError("Connection refused")):
            with self.assertRaises(MailTransportError) as ctx:
                transport.verify()

        self.assertIn("Connection refused", str(ctx.exception))
        self.assertIsNone(ctx.exception.response)

    def test_verify_wraps_rejected_host_names(self) -> None:
        transport = SmtpTransport(SmtpConfig(host="smtp..example.com", port=587))
        with patch(
            "backoffice.office_core.mailer.smtplib.SMTP",
            side_effect=UnicodeError("label empty or too long"),
        ):
            with self.assertRaises(MailTransportError) as ctx:
                transport.verify()

        self.assertIn("label empty or too long", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, UnicodeError)

    def test_verify_reports_server_reply(self) -> None:
        transport = SmtpTransport(SmtpConfig(host="smtp.example.com", user="bot", password="bad"))
        with patch("backoffice.office_core.mailer.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"5.7.8 bad credentials")
            with self.assertRaises(MailTransportError) as ctx:
                transport.verify()

        self.assertEqual(ctx.exception.response, "535 5.7.8 bad credentials")
        server.close.assert_called_once()

    def test_secure_config_uses_implicit_tls(self) -> None:
        transport = SmtpTransport(SmtpConfig(host="smtp.example.com", port=465, secure=True))
        with patch("backoffice.office_core.mailer.smtplib.SMTP_SSL") as ssl_cls:
            server = ssl_cls.return_value
            server.__enter__.return_value = server
            transport.verify()

        self.assertEqual(ssl_cls.call_args.args, ("smtp.example.com", 465))
        server.starttls.assert_not_called()
        server.noop.assert_called_once()

    def test_send_mail_builds_html_message(self) -> None:
        transport = SmtpTransport(SmtpConfig(host="smtp.example.com"))
        mail = OutgoingMail(sender="Tienda <v@example.com>", to="ana@example.com", subject="Lista", html="<p>hola</p>")
        with patch("backoffice.office_core.mailer.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            server.__enter__.return_value = server
            message_id = transport.send_mail(mail)

        message = server.send_message.call_args.args[0]
        self.assertEqual(message["To"], "ana@example.com")
        self.assertEqual(message["From"], "Tienda <v@example.com>")
        self.assertEqual(message.get_content_type(), "text/html")
        self.assertEqual(message["Message-ID"], message_id)
        self.assertEqual(smtp_cls.call_args.args, ("smtp.example.com", 587))

    def test_requires_host(self) -> None:
        with self.assertRaises(ValueError):
            SmtpTransport(SmtpConfig())


class RenderCampaignHtmlTests(unittest.TestCase):
    def test_contains_tracking_urls_and_escaped_subject(self) -> None:
        body = render_campaign_html(
            "Precios <abril> & mayo",
            "http://shop.local/api/track/open/1/a%40b.c",
            "http://shop.local/api/track/link/1/a%40b.c",
        )

        self.assertIn("Precios &lt;abril&gt; &amp; mayo", body)
        self.assertIn('src="http://shop.local/api/track/open/1/a%40b.c"', body)
        self.assertIn('href="http://shop.local/api/track/link/1/a%40b.c"', body)
        self.assertIn("Descargar Lista de Precios", body)


if __name__ == "__main__":
    unittest.main()
