import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from a local .env if present.
load_dotenv()

TRUTHY_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    data_dir: Path
    public_dir: Path
    admin_user: str
    admin_pass: str
    external_api_key: str = ""
    public_base_url: str = ""
    port: int = 3000
    mail_from: str = '"Catálogo" <no-reply@example.com>'
    smtp_timeout_seconds: float = 60.0
    rate_limit_window_seconds: int = 60
    rate_limit_requests: int = 60
    appointments_enabled: bool = False
    appointments_db_path: Path = Path()
    smtp_host: str = ""
    smtp_port: int = 0
    smtp_user: str = ""
    smtp_pass: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_webhook_secret: str = ""


def project_root() -> Path:
    # /project_root/backoffice/office_core/config.py -> project_root
    return Path(__file__).resolve().parent.parent.parent


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    root = project_root()
    data_dir_env = os.getenv("DATA_DIR", "").strip()
    data_dir = Path(data_dir_env) if data_dir_env else root / "data"
    public_dir_env = os.getenv("PUBLIC_DIR", "").strip()
    public_dir = Path(public_dir_env) if public_dir_env else root / "public"
    appointments_db_env = os.getenv("APPOINTMENTS_DB_PATH", "").strip()
    appointments_db_path = Path(appointments_db_env) if appointments_db_env else data_dir / "app.db"
    appointments_enabled = os.getenv("APPOINTMENTS_ENABLED", "").strip().lower() in TRUTHY_VALUES

    return Settings(
        data_dir=data_dir,
        public_dir=public_dir,
        admin_user=os.getenv("ADMIN_USER", "admin").strip() or "admin",
        admin_pass=os.getenv("ADMIN_PASS", "admin").strip() or "admin",
        external_api_key=os.getenv("EXTERNAL_API_KEY", "").strip(),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/"),
        port=_int_env("PORT", 3000),
        mail_from=os.getenv("MAIL_FROM", "").strip() or '"Catálogo" <no-reply@example.com>',
        smtp_timeout_seconds=_float_env("SMTP_TIMEOUT_SECONDS", 60.0),
        rate_limit_window_seconds=_int_env("RATE_LIMIT_WINDOW_SECONDS", 60),
        rate_limit_requests=_int_env("RATE_LIMIT_REQUESTS", 60),
        appointments_enabled=appointments_enabled,
        appointments_db_path=appointments_db_path,
        smtp_host=os.getenv("SMTP_HOST", "").strip(),
        smtp_port=_int_env("SMTP_PORT", 0),
        smtp_user=os.getenv("SMTP_USER", "").strip(),
        smtp_pass=os.getenv("SMTP_PASS", "").strip(),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
        telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", "").strip(),
        telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip(),
    )
