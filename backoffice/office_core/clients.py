from __future__ import annotations

import hashlib
import time
from typing import Any, Dict, List, Optional

from backoffice.office_core.campaigns import now_iso

CHECKOUT_TEXT_FIELDS = ("nombre", "apellido", "cedula", "email", "direccion", "celular", "tipo")


class PortalLoginError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


def hash_password(password: Any) -> str:
    return hashlib.sha256(str(password or "").encode("utf-8")).hexdigest()


def _next_id(clients: List[Dict[str, Any]]) -> int:
    ids = []
    for item in clients:
        try:
            ids.append(int(item.get("id") or 0))
        except (TypeError, ValueError):
            ids.append(0)
    return max(ids) + 1 if ids else 1


def _find_by_email(clients: List[Dict[str, Any]], email: str) -> Optional[Dict[str, Any]]:
    wanted = str(email).lower()
    for item in clients:
        current = item.get("email")
        if current and str(current).lower() == wanted:
            return item
    return None


def upsert_campaign_lead(clients: List[Dict[str, Any]], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Store a lead left on the download page; matched by exact email."""
    email = payload.get("email")
    campaign_id = payload.get("campaignId")
    client = next((item for item in clients if item.get("email") == email), None)
    now = now_iso()
    if client is not None:
        for key in ("nombre", "apellido", "celular", "zona", "tipo"):
            client[key] = payload.get(key)
        client["updated_at"] = now
        if campaign_id:
            history = client.setdefault("campaigns", [])
            if campaign_id not in history:
                history.append(campaign_id)
        return client

    client = {
        "id": int(time.time() * 1000),
        "email": email,
        "nombre": payload.get("nombre"),
        "apellido": payload.get("apellido"),
        "celular": payload.get("celular"),
        "zona": payload.get("zona"),
        "tipo": payload.get("tipo"),
        "created_at": now,
        "campaigns": [campaign_id] if campaign_id else [],
    }
    clients.append(client)
    return client


def register_portal_client(clients: List[Dict[str, Any]], payload: Dict[str, Any]) -> Dict[str, Any]:
    client = _find_by_email(clients, payload["email"])
    if client is None:
        client = {"id": _next_id(clients)}
        clients.append(client)

    client["email"] = payload["email"]
    client["nombre"] = payload["nombre"]
    client["apellido"] = payload.get("apellido") or client.get("apellido") or ""
    client["celular"] = payload["celular"]
    client["zona"] = payload.get("zona") or client.get("zona") or ""
    client["tipo"] = payload.get("tipo") or client.get("tipo") or ""
    client["portalRequestedAt"] = client.get("portalRequestedAt") or now_iso()
    if not isinstance(client.get("portalApproved"), bool):
        client["portalApproved"] = False
    return client


def portal_login(clients: List[Dict[str, Any]], email: str, password: str) -> Dict[str, Any]:
    client = _find_by_email(clients, email)
    if client is None or not client.get("portalPasswordHash"):
        raise PortalLoginError("not_found")
    if client["portalPasswordHash"] != hash_password(password):
        raise PortalLoginError("invalid_credentials")

    client["portalLastLoginAt"] = now_iso()
    count = client.get("portalLoginCount")
    is_number = isinstance(count, (int, float)) and not isinstance(count, bool)
    client["portalLoginCount"] = count + 1 if is_number else 1
    return {
        "id": client.get("id"),
        "email": client.get("email"),
        "nombre": client.get("nombre"),
        "apellido": client.get("apellido"),
        "celular": client.get("celular"),
        "zona": client.get("zona") or "",
        "tipo": client.get("tipo") or "",
    }


def upsert_checkout_client(clients: List[Dict[str, Any]], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a checkout contact: cedula match wins, otherwise first celular match."""
    cedula = str(payload.get("cedula") or "").strip()
    celular = str(payload.get("celular") or "").strip()

    found: Optional[Dict[str, Any]] = None
    for item in clients:
        if cedula and item.get("cedula") == cedula:
            found = item
            break
        if found is None and celular and item.get("celular") == celular:
            found = item

    if found is None:
        found = {"id": _next_id(clients)}
        clients.append(found)

    for key in CHECKOUT_TEXT_FIELDS:
        if payload.get(key):
            found[key] = payload[key]
    if payload.get("interesado"):
        found["interesado"] = True
    if payload.get("pedidos"):
        previous = found.get("pedidos")
        is_number = isinstance(previous, (int, float)) and not isinstance(previous, bool)
        found["pedidos"] = (previous if is_number else 0) + 1
        found["interesado"] = True
    return found
