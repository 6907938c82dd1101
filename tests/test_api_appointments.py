import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

try:
    from fastapi.testclient import TestClient

    from backoffice.office_api.main import create_app
    from backoffice.office_core import appointments
    from backoffice.office_core.config import Settings

    HAS_API_DEPS = True
except ModuleNotFoundError:
    HAS_API_DEPS = False

ADMIN = ("admin", "secret")
SLOT = "2030-05-10T13:00:00.000Z"


@unittest.skipUnless(HAS_API_DEPS, "fastapi dependencies are not installed")
class AppointmentsApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        root = Path(self.tmpdir.name)
        self.settings = Settings(
            data_dir=root / "data",
            public_dir=root / "public",
            admin_user="admin",
            admin_pass="secret",
            appointments_enabled=True,
            appointments_db_path=root / "data" / "app.db",
            telegram_webhook_secret="wh-secret",
        )
        self.client = TestClient(create_app(self.settings))

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _book(self, **overrides):
        payload = {
            "name": "Ana",
            "email": "ana@example.com",
            "phone": "099123",
            "service": "Asesoría",
            "datetime": SLOT,
            "materials": ["Tarifas"],
        }
        payload.update(overrides)
        return self.client.post("/api/appointments", json=payload)

    def test_disabled_deployment_hides_routes(self) -> None:
        settings = Settings(
            data_dir=self.settings.data_dir,
            public_dir=self.settings.public_dir,
            admin_user="admin",
            admin_pass="secret",
        )
        client = TestClient(create_app(settings))

        response = client.get("/api/availability", params={"date": "2030-05-10"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(client.post("/api/appointments", json={}).status_code, 404)

    def test_booking_notifies_and_blocks_slot(self) -> None:
        with patch("backoffice.office_api.main.notify_admin_new_request", new=AsyncMock(return_value=True)) as notify:
            created = self._book()

        self.assertEqual(created.status_code, 200)
        body = created.json()
        self.assertTrue(body["ok"])
        self.assertEqual(notify.await_args.kwargs["appointment_id"], body["appointmentId"])
        self.assertEqual(notify.await_args.kwargs["slot"], SLOT)

        conflict = self._book(name="Luis", datetime="2030-05-10T10:00:00-03:00")
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json(), {"error": "slot_taken"})

    def test_booking_validation(self) -> None:
        missing = self._book(phone="")
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json(), {"error": "missing_fields"})

        garbage = self._book(datetime="mañana")
        self.assertEqual(garbage.status_code, 400)
        self.assertEqual(garbage.json(), {"error": "invalid_datetime"})

    def test_availability(self) -> None:
        slot = appointments.slot_iso("2030-05-10", "11:30")
        self._book(datetime=slot)

        response = self.client.get("/api/availability", params={"date": "2030-05-10"})

        self.assertEqual(response.status_code, 200)
        slots = {item["time"]: item["available"] for item in response.json()["slots"]}
        self.assertFalse(slots["11:30"])
        self.assertTrue(slots["12:00"])

        invalid = self.client.get("/api/availability", params={"date": "10/05/2030"})
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.json(), {"error": "invalid_date"})

    def test_admin_status_update_and_export(self) -> None:
        appointment_id = self._book().json()["appointmentId"]

        self.assertEqual(self.client.get("/api/requests").status_code, 401)
        self.assertEqual(self.client.get("/api/requests", auth=ADMIN).json()[0]["status"], "pending")

        bad = self.client.post(f"/api/requests/{appointment_id}/status", json={"status": "maybe"}, auth=ADMIN)
        self.assertEqual(bad.status_code, 400)
        missing = self.client.post("/api/requests/999/status", json={"status": "accepted"}, auth=ADMIN)
        self.assertEqual(missing.status_code, 404)

        ok = self.client.post(f"/api/requests/{appointment_id}/status", json={"status": "accepted"}, auth=ADMIN)
        self.assertEqual(ok.json(), {"ok": True})

        export = self.client.get("/api/requests/export.csv", auth=ADMIN)
        self.assertEqual(export.status_code, 200)
        self.assertTrue(export.headers["content-type"].startswith("text/csv"))
        self.assertIn('filename="clientes.csv"', export.headers["content-disposition"])
        lines = export.text.split("\n")
        self.assertEqual(lines[1], f"Ana,ana@example.com,099123,Asesoría,{SLOT},accepted,0,1,0")

    def test_telegram_webhook_requires_secret(self) -> None:
        response = self.client.post("/api/telegram/webhook", json={})
        self.assertEqual(response.status_code, 403)

    def test_telegram_command_updates_status(self) -> None:
        appointment_id = self._book().json()["appointmentId"]
        headers = {"X-Telegram-Bot-Api-Secret-Token": "wh-secret"}
        update = {"message": {"chat": {"id": 4242}, "text": f"/rechazar {appointment_id}"}}

        with patch("backoffice.office_api.main.send_telegram_text", new=AsyncMock(return_value=True)) as send:
            response = self.client.post("/api/telegram/webhook", json=update, headers=headers)

        self.assertEqual(response.json(), {"ok": True, "updated": True})
        _, chat_id, text = send.await_args.args
        self.assertEqual(chat_id, "4242")
        self.assertIn(f"Cita {appointment_id}", text)
        requests = self.client.get("/api/requests", auth=ADMIN).json()
        self.assertEqual(requests[0]["status"], "rejected")

    def test_telegram_non_command_is_ignored(self) -> None:
        headers = {"X-Telegram-Bot-Api-Secret-Token": "wh-secret"}
        with patch("backoffice.office_api.main.send_telegram_text", new=AsyncMock(return_value=True)) as send:
            response = self.client.post(
                "/api/telegram/webhook",
                json={"message": {"chat": {"id": 1}, "text": "hola"}},
                headers=headers,
            )

        self.assertEqual(response.json(), {"ok": True})
        send.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
