from __future__ import annotations

import asyncio
import base64
import logging
import re
import secrets
import shutil
import socket
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from backoffice.office_bot.responder import reply as build_chat_reply
from backoffice.office_core import appointments
from backoffice.office_core.campaigns import CampaignLedger, download_redirect_url, public_link
from backoffice.office_core.catalog import load_products
from backoffice.office_core.catalog_files import delete_catalog_file, upsert_catalog_file
from backoffice.office_core.clients import (
    PortalLoginError,
    portal_login,
    register_portal_client,
    upsert_campaign_lead,
    upsert_checkout_client,
)
from backoffice.office_core.config import Settings, get_settings
from backoffice.office_core.delivery import deliver_campaign
from backoffice.office_core.mailer import MailTransport, MailTransportError, SmtpConfig, build_transport
from backoffice.office_core.notifications import (
    notify_admin_new_request,
    parse_command,
    send_confirmation,
    send_telegram_text,
)
from backoffice.office_core.rate_limit import ClientRateLimiter
from backoffice.office_core.store import CATALOGS, CLIENTS, CONFIG, PRODUCTS, CollectionStore


security = HTTPBasic(auto_error=False)
logger = logging.getLogger(__name__)

TRACKING_PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
RATE_LIMIT_MAX_TRACKED_CLIENTS = 10_000
TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
UPLOAD_NAME_PATTERN = re.compile(r"\W+", re.ASCII)


class ApiError(Exception):
    """Error rendered as ``{"error": code, **extra}`` with the given status."""

    def __init__(
        self,
        status_code: int,
        error: str,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.extra = extra or {}
        self.headers = headers


class CampaignSendPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = None
    pdf_url: Optional[str] = Field(default=None, alias="pdfUrl")
    emails: Optional[List[str]] = None
    smtp_config: Optional[SmtpConfig] = Field(default=None, alias="smtpConfig")
    public_url: Optional[str] = Field(default=None, alias="publicUrl")


class PublicCampaignPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = None
    pdf_url: Optional[str] = Field(default=None, alias="pdfUrl")
    public_url: Optional[str] = Field(default=None, alias="publicUrl")


class SmtpTestPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    smtp_config: Optional[SmtpConfig] = Field(default=None, alias="smtpConfig")


class ExternalChatPayload(BaseModel):
    mensaje: Any = None
    telefono: Any = None


class CampaignLeadPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    email: Optional[str] = None
    nombre: Optional[str] = None
    apellido: Optional[str] = None
    celular: Optional[str] = None
    zona: Optional[str] = None
    tipo: Optional[str] = None
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")


class PortalRegisterPayload(BaseModel):
    email: Optional[str] = None
    nombre: Optional[str] = None
    apellido: Optional[str] = None
    celular: Optional[str] = None
    zona: Optional[str] = None
    tipo: Optional[str] = None


class PortalLoginPayload(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class CatalogFilePayload(BaseModel):
    id: Any = None
    title: Optional[str] = None
    url: Optional[str] = None


class AppointmentPayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    service: Optional[str] = None
    datetime: Optional[str] = None
    materials: List[str] = Field(default_factory=list)


class AppointmentStatusPayload(BaseModel):
    status: str


def get_local_ip() -> str:
    try:
        _, _, addresses = socket.gethostbyname_ex(socket.gethostname())
    except OSError:
        return "localhost"
    for address in addresses:
        if not address.startswith("127."):
            return address
    return "localhost"


def resolve_base_url(cfg: Settings, public_url: Optional[str]) -> str:
    if public_url:
        return public_url.rstrip("/")
    if cfg.public_base_url:
        return cfg.public_base_url
    return f"http://{get_local_ip()}:{cfg.port}"


def _request_client_key(request: Request) -> str:
    client = request.client
    return f"ip:{client.host}" if client and client.host else "ip:unknown"


def _safe_upload_name(filename: Optional[str]) -> str:
    original = Path(filename or "file")
    extension = original.suffix
    stem = UPLOAD_NAME_PATTERN.sub("_", original.stem or "file")
    return f"{stem}_{int(time.time() * 1000)}{extension}"


def create_app(settings: Settings | None = None) -> FastAPI:
    cfg = settings or get_settings()
    store = CollectionStore(cfg.data_dir)
    ledger = CampaignLedger(store)
    limiter = ClientRateLimiter(
        window_seconds=cfg.rate_limit_window_seconds,
        max_requests=cfg.rate_limit_requests,
    )
    public_dir = Path(cfg.public_dir)
    upload_dir = public_dir / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    Path(cfg.data_dir).mkdir(parents=True, exist_ok=True)
    if cfg.appointments_enabled:
        appointments.init_db(cfg.appointments_db_path)

    async def enforce_rate_limit(request: Request) -> None:
        if limiter.tracked_clients > RATE_LIMIT_MAX_TRACKED_CLIENTS:
            limiter.forget_idle()
        decision = limiter.hit(_request_client_key(request))
        if not decision.allowed:
            raise ApiError(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "rate_limited",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )

    app = FastAPI(title="backoffice", dependencies=[Depends(enforce_rate_limit)])
    app.state.ledger = ledger
    app.state.store = store

    @app.exception_handler(ApiError)
    async def api_error_handler(_: Request, exc: ApiError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error, **exc.extra},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "validation_error", "details": jsonable_encoder(exc.errors())},
        )

    def admin_credentials_ok(credentials: Optional[HTTPBasicCredentials]) -> bool:
        if credentials is None:
            return False
        user_ok = secrets.compare_digest(credentials.username.encode("utf-8"), cfg.admin_user.encode("utf-8"))
        pass_ok = secrets.compare_digest(credentials.password.encode("utf-8"), cfg.admin_pass.encode("utf-8"))
        return user_ok and pass_ok

    def require_admin(
        request: Request,
        credentials: Optional[HTTPBasicCredentials] = Depends(security),
    ) -> str:
        if admin_credentials_ok(credentials):
            return credentials.username
        if request.url.path.startswith("/api/"):
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": 'Basic realm="Admin"'},
        )

    def require_external_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
        if not cfg.external_api_key:
            raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "api_key_not_configured")
        provided = (x_api_key or "").encode("utf-8")
        if not provided or not secrets.compare_digest(provided, cfg.external_api_key.encode("utf-8")):
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized")

    def require_appointments() -> None:
        if not cfg.appointments_enabled:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found")

    def public_file(name: str) -> FileResponse:
        path = public_dir / name
        if not path.is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
        return FileResponse(path)

    def smtp_error_response(exc: MailTransportError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "smtp_error", "details": str(exc), "response": exc.response},
        )

    async def run_delivery_in_background(
        transport: MailTransport,
        *,
        campaign_id: str,
        subject: str,
        emails: List[str],
        base_url: str,
        mail_from: str,
    ) -> None:
        try:
            await deliver_campaign(
                ledger,
                transport,
                campaign_id=campaign_id,
                subject=subject,
                emails=emails,
                base_url=base_url,
                mail_from=mail_from,
            )
        except Exception:
            logger.exception("Campaign %s delivery aborted", campaign_id)

    # Pages

    @app.get("/")
    async def landing_page():
        return public_file("landing.html")

    @app.get("/app")
    async def storefront_page():
        return public_file("index.html")

    @app.get("/admin")
    async def admin_page(_: str = Depends(require_admin)):
        return public_file("admin.html")

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "backoffice"}

    @app.post("/api/upload")
    async def upload_file(
        file: Optional[UploadFile] = File(default=None),
        _: str = Depends(require_admin),
    ):
        if file is None or not file.filename:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "file_required")
        stored_name = _safe_upload_name(file.filename)
        with (upload_dir / stored_name).open("wb") as fh:
            shutil.copyfileobj(file.file, fh)
        logger.info("Stored upload %s", stored_name)
        return {"ok": True, "url": f"/uploads/{stored_name}"}

    # Products and site config

    @app.get("/api/products")
    async def list_products():
        return store.read(PRODUCTS)

    @app.post("/api/products")
    async def replace_products(payload: Any = Body(default=None), _: str = Depends(require_admin)):
        if not isinstance(payload, list):
            raise ApiError(status.HTTP_400_BAD_REQUEST, "array_required")
        store.write(PRODUCTS, payload)
        logger.info("Product catalog replaced (%s items)", len(payload))
        return {"ok": True}

    @app.get("/api/config")
    async def read_site_config():
        data = store.read(CONFIG)
        if not data.get("logoUrl"):
            data["logoUrl"] = ""
        return data

    @app.post("/api/config")
    async def update_site_config(payload: Any = Body(default=None), _: str = Depends(require_admin)):
        if not isinstance(payload, dict):
            raise ApiError(status.HTTP_400_BAD_REQUEST, "object_required")
        current = store.read(CONFIG)
        current.update(payload)
        store.write(CONFIG, current)
        return {"ok": True}

    # Campaigns

    @app.get("/api/campaigns")
    async def list_campaigns(_: str = Depends(require_admin)):
        return ledger.list_records()

    @app.post("/api/campaign/send")
    async def send_campaign(
        payload: CampaignSendPayload,
        background_tasks: BackgroundTasks,
        _: str = Depends(require_admin),
    ):
        if not payload.subject or not payload.pdf_url or not payload.emails:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")

        campaign = ledger.create_bulk(
            subject=payload.subject,
            pdf_url=payload.pdf_url,
            total=len(payload.emails),
        )

        transport = build_transport(payload.smtp_config, timeout_seconds=cfg.smtp_timeout_seconds)
        if payload.smtp_config is not None and payload.smtp_config.host:
            try:
                await asyncio.to_thread(transport.verify)
            except MailTransportError as exc:
                logger.error("SMTP verify failed for campaign %s: %s", campaign.id, exc)
                ledger.remove(campaign.id)
                return smtp_error_response(exc)
            except Exception:
                ledger.remove(campaign.id)
                raise

        mail_from = (payload.smtp_config.from_address if payload.smtp_config else None) or cfg.mail_from
        background_tasks.add_task(
            run_delivery_in_background,
            transport,
            campaign_id=campaign.id,
            subject=payload.subject,
            emails=list(payload.emails),
            base_url=resolve_base_url(cfg, payload.public_url),
            mail_from=mail_from,
        )
        return {"ok": True, "id": campaign.id, "status": "sending_started"}

    @app.post("/api/campaign/public")
    async def create_public_campaign(payload: PublicCampaignPayload, _: str = Depends(require_admin)):
        if not payload.subject or not payload.pdf_url:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        campaign = ledger.create_public(subject=payload.subject, pdf_url=payload.pdf_url)
        base_url = resolve_base_url(cfg, payload.public_url)
        return {"ok": True, "id": campaign.id, "link": public_link(base_url, campaign.id)}

    @app.get("/api/track/open/{campaign_id}/{email:path}")
    async def track_open(campaign_id: str, email: str):
        ledger.record_open(campaign_id, email)
        return Response(content=TRACKING_PIXEL_GIF, media_type="image/gif")

    @app.get("/api/track/link/{campaign_id}/{email:path}")
    async def track_link(campaign_id: str, email: str):
        campaign = ledger.record_click(campaign_id, email)
        if campaign is None:
            return PlainTextResponse("Campaign not found", status_code=status.HTTP_404_NOT_FOUND)
        return RedirectResponse(download_redirect_url(campaign, email=email), status_code=status.HTTP_302_FOUND)

    @app.get("/api/public/go/{campaign_id}")
    async def public_campaign_redirect(campaign_id: str):
        campaign = ledger.get(campaign_id)
        if campaign is None:
            return PlainTextResponse("Link not found", status_code=status.HTTP_404_NOT_FOUND)
        return RedirectResponse(download_redirect_url(campaign), status_code=status.HTTP_302_FOUND)

    @app.post("/api/smtp/test")
    async def smtp_test(payload: SmtpTestPayload, _: str = Depends(require_admin)):
        if payload.smtp_config is None or not payload.smtp_config.host:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_config")
        transport = build_transport(payload.smtp_config, timeout_seconds=cfg.smtp_timeout_seconds)
        try:
            await asyncio.to_thread(transport.verify)
        except MailTransportError as exc:
            logger.error("SMTP test failed: %s", exc)
            return smtp_error_response(exc)
        return {"ok": True}

    # Clients

    @app.post("/api/public/client")
    async def save_campaign_lead(payload: CampaignLeadPayload):
        if not payload.email or not payload.nombre:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        clients = store.read(CLIENTS)
        upsert_campaign_lead(clients, payload.model_dump(by_alias=True))
        store.write(CLIENTS, clients)
        return {"ok": True}

    @app.post("/api/portal/register")
    async def portal_register(payload: PortalRegisterPayload):
        if not payload.email or not payload.nombre or not payload.celular:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        clients = store.read(CLIENTS)
        register_portal_client(clients, payload.model_dump())
        store.write(CLIENTS, clients)
        return {"ok": True}

    @app.post("/api/portal/login")
    async def portal_sign_in(payload: PortalLoginPayload):
        if not payload.email or not payload.password:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        clients = store.read(CLIENTS)
        try:
            summary = portal_login(clients, payload.email, payload.password)
        except PortalLoginError as exc:
            code = status.HTTP_404_NOT_FOUND if exc.code == "not_found" else status.HTTP_401_UNAUTHORIZED
            raise ApiError(code, exc.code) from exc
        store.write(CLIENTS, clients)
        return {"ok": True, "client": summary}

    @app.get("/api/clients")
    async def list_clients(_: str = Depends(require_admin)):
        return store.read(CLIENTS)

    @app.post("/api/clients")
    async def save_clients(
        request: Request,
        payload: Any = Body(default=None),
        credentials: Optional[HTTPBasicCredentials] = Depends(security),
    ):
        if "basic" in request.headers.get("Authorization", "").lower():
            if not admin_credentials_ok(credentials):
                raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized")
            if not isinstance(payload, list):
                raise ApiError(status.HTTP_400_BAD_REQUEST, "array_required")
            store.write(CLIENTS, payload)
            return {"ok": True}

        if not isinstance(payload, dict) or not payload.get("celular"):
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_client")
        clients = store.read(CLIENTS)
        client = upsert_checkout_client(clients, payload)
        store.write(CLIENTS, clients)
        return {"ok": True, "id": client["id"]}

    # Downloadable catalogs

    @app.get("/api/catalogs")
    async def list_catalog_files(_: str = Depends(require_admin)):
        return store.read(CATALOGS)

    @app.post("/api/catalogs")
    async def save_catalog_file(payload: CatalogFilePayload, _: str = Depends(require_admin)):
        if not payload.title or not payload.url:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        items = store.read(CATALOGS)
        item = upsert_catalog_file(items, title=payload.title, url=payload.url, item_id=payload.id)
        store.write(CATALOGS, items)
        return {"ok": True, "item": item}

    @app.delete("/api/catalogs/{item_id}")
    async def remove_catalog_file(item_id: str, _: str = Depends(require_admin)):
        store.write(CATALOGS, delete_catalog_file(store.read(CATALOGS), item_id))
        return {"ok": True}

    @app.get("/api/public/catalogs")
    async def list_public_catalog_files():
        return store.read(CATALOGS)

    # External chat

    @app.post("/api/external/chat")
    async def external_chat(payload: ExternalChatPayload, _: None = Depends(require_external_api_key)):
        if not payload.mensaje:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_mensaje")
        logger.info("External chat message from %s", payload.telefono or "unknown")
        products = load_products(store)
        return {"respuesta_ia": build_chat_reply(payload.mensaje, products)}

    # Appointments (alternate deployment)

    async def notify_new_request(request_data: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(
                send_confirmation,
                cfg,
                to=request_data["email"],
                name=request_data["name"],
                slot=request_data["slot"],
                service=request_data["service"],
            )
        except Exception:
            logger.exception("Confirmation mail failed for appointment %s", request_data["appointment_id"])
        try:
            await notify_admin_new_request(
                cfg,
                name=request_data["name"],
                email=request_data["email"],
                phone=request_data["phone"],
                service=request_data["service"],
                slot=request_data["slot"],
                appointment_id=request_data["appointment_id"],
            )
        except Exception:
            logger.exception("Telegram notification failed for appointment %s", request_data["appointment_id"])

    def open_appointments_db() -> sqlite3.Connection:
        return appointments.get_connection(cfg.appointments_db_path)

    @app.get("/api/availability")
    async def appointment_availability(date: str, _: None = Depends(require_appointments)):
        conn = open_appointments_db()
        try:
            slots = appointments.get_availability(conn, date)
        except ValueError as exc:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_date") from exc
        finally:
            conn.close()
        return {"date": date, "slots": slots}

    @app.post("/api/appointments")
    async def create_appointment(
        payload: AppointmentPayload,
        background_tasks: BackgroundTasks,
        _: None = Depends(require_appointments),
    ):
        if not all((payload.name, payload.email, payload.phone, payload.service, payload.datetime)):
            raise ApiError(status.HTTP_400_BAD_REQUEST, "missing_fields")
        try:
            slot = appointments.normalize_slot(payload.datetime)
        except ValueError as exc:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_datetime") from exc

        conn = open_appointments_db()
        try:
            if appointments.is_slot_taken(conn, slot):
                raise ApiError(status.HTTP_409_CONFLICT, "slot_taken")
            ids = appointments.insert_lead(
                conn,
                name=payload.name,
                email=payload.email,
                phone=payload.phone,
                service=payload.service,
                slot=slot,
                materials=payload.materials,
            )
        finally:
            conn.close()

        background_tasks.add_task(
            notify_new_request,
            {
                "name": payload.name,
                "email": payload.email,
                "phone": payload.phone,
                "service": payload.service,
                "slot": slot,
                "appointment_id": ids["appointmentId"],
            },
        )
        return {"ok": True, **ids}

    @app.get("/api/requests")
    async def list_appointment_requests(_: str = Depends(require_admin), __: None = Depends(require_appointments)):
        conn = open_appointments_db()
        try:
            return appointments.list_requests(conn)
        finally:
            conn.close()

    @app.post("/api/requests/{appointment_id}/status")
    async def set_appointment_status(
        appointment_id: int,
        payload: AppointmentStatusPayload,
        _: str = Depends(require_admin),
        __: None = Depends(require_appointments),
    ):
        if payload.status not in appointments.APPOINTMENT_STATUSES:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_status")
        conn = open_appointments_db()
        try:
            updated = appointments.update_appointment_status(conn, appointment_id, payload.status)
        finally:
            conn.close()
        if not updated:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found")
        return {"ok": True}

    @app.get("/api/requests/export.csv")
    async def export_appointment_requests(_: str = Depends(require_admin), __: None = Depends(require_appointments)):
        conn = open_appointments_db()
        try:
            content = appointments.generate_requests_csv(conn)
        finally:
            conn.close()
        return Response(
            content=content,
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": 'attachment; filename="clientes.csv"'},
        )

    @app.post("/api/telegram/webhook")
    async def telegram_webhook(request: Request, _: None = Depends(require_appointments)):
        if cfg.telegram_webhook_secret:
            provided = request.headers.get(TELEGRAM_SECRET_HEADER, "")
            if not secrets.compare_digest(provided.encode("utf-8"), cfg.telegram_webhook_secret.encode("utf-8")):
                raise ApiError(status.HTTP_403_FORBIDDEN, "forbidden")

        try:
            update = await request.json()
        except ValueError as exc:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_json") from exc
        message = update.get("message") if isinstance(update, dict) else None
        if not isinstance(message, dict):
            return {"ok": True}
        chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
        chat_id = str(chat.get("id") or "")
        command = parse_command(message.get("text"))
        if command is None:
            return {"ok": True}

        conn = open_appointments_db()
        try:
            updated = appointments.update_appointment_status(conn, command.appointment_id, command.status)
        finally:
            conn.close()
        answer = (
            f"Cita {command.appointment_id} marcada como {command.status}."
            if updated
            else f"No encontré la cita {command.appointment_id}."
        )
        try:
            await send_telegram_text(cfg, chat_id, answer)
        except Exception:
            logger.exception("Could not answer Telegram command for appointment %s", command.appointment_id)
        return {"ok": True, "updated": updated}

    app.mount("/", StaticFiles(directory=str(public_dir), check_dir=False), name="public")
    return app


app = create_app()
