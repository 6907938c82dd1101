import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from backoffice.office_core.config import Settings
from scripts import start_api


def _settings(**overrides):
    values = {
        "data_dir": Path("/tmp/backoffice-data"),
        "public_dir": Path("/tmp/backoffice-public"),
        "admin_user": "admin",
        "admin_pass": "secret",
        "external_api_key": "ext-key",
        "port": 3000,
    }
    values.update(overrides)
    return Settings(**values)


class StartApiScriptTests(unittest.TestCase):
    def test_main_runs_uvicorn_factory(self) -> None:
        with patch.object(start_api, "get_settings", return_value=_settings()), patch.object(
            start_api.uvicorn, "run"
        ) as mock_run, patch("sys.stdout", new_callable=StringIO) as stdout:
            result = start_api.main(["--host", "127.0.0.1", "--port", "8010", "--log-level", "warning"])

        self.assertEqual(result, 0)
        mock_run.assert_called_once()
        self.assertEqual(mock_run.call_args.args, ("backoffice.office_api.main:create_app",))
        kwargs = mock_run.call_args.kwargs
        self.assertTrue(kwargs["factory"])
        self.assertEqual(kwargs["host"], "127.0.0.1")
        self.assertEqual(kwargs["port"], 8010)
        self.assertEqual(kwargs["log_level"], "warning")
        self.assertIn("port=8010", stdout.getvalue())

    def test_main_defaults_to_configured_port_and_warns_without_api_key(self) -> None:
        settings = _settings(external_api_key="", port=3100)
        with patch.object(start_api, "get_settings", return_value=settings), patch.object(
            start_api.uvicorn, "run"
        ) as mock_run, patch("sys.stdout", new_callable=StringIO) as stdout:
            start_api.main([])

        self.assertEqual(mock_run.call_args.kwargs["port"], 3100)
        self.assertIn("EXTERNAL_API_KEY is not set", stdout.getvalue())


if __name__ == "__main__":
    unittest.main()
