"""Campaign ledger.

One record per outbound campaign, kept newest-first in the ``campaigns``
collection. Every operation is a full read-modify-write of the collection,
so tracking hits and the delivery driver interleave as last-writer-wins.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backoffice.office_core.store import CAMPAIGNS, CollectionStore

logger = logging.getLogger(__name__)

PUBLIC_CAMPAIGN_PREFIX = "qr-"
PUBLIC_CAMPAIGN_TYPE = "qr"
DOWNLOAD_PAGE_PATH = "/download.html"
EVENT_OPENS = "opens"
EVENT_CLICKS = "clicks"
# encodeURIComponent leaves these unescaped as well.
URI_COMPONENT_SAFE = "!~*'()"


class Campaign(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    date: str
    subject: str
    pdf_url: str = Field(alias="pdfUrl")
    total: int = 0
    sent: int = 0
    opens: Optional[Dict[str, str]] = Field(default_factory=dict)
    clicks: Optional[Dict[str, str]] = Field(default_factory=dict)
    type: Optional[str] = None

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode_uri_component(value: str) -> str:
    return quote(value, safe=URI_COMPONENT_SAFE)


def tracking_urls(base_url: str, campaign_id: str, email: str) -> Tuple[str, str]:
    """Return (open pixel URL, click link URL) for one recipient."""
    base = base_url.rstrip("/")
    encoded = encode_uri_component(email)
    open_url = f"{base}/api/track/open/{campaign_id}/{encoded}"
    link_url = f"{base}/api/track/link/{campaign_id}/{encoded}"
    return open_url, link_url


def public_link(base_url: str, campaign_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/public/go/{campaign_id}"


def download_redirect_url(campaign: Campaign, email: Optional[str] = None) -> str:
    params: List[Tuple[str, str]] = []
    if email is not None:
        params.append(("email", email))
    params.append(("cid", campaign.id))
    params.append(("pdf", campaign.pdf_url))
    query = urlencode(params, quote_via=quote, safe=URI_COMPONENT_SAFE)
    return f"{DOWNLOAD_PAGE_PATH}?{query}"


class CampaignLedger:
    """Read-modify-write over the raw ``campaigns`` documents.

    Records are edited in place and written back as stored, so an entry
    that does not fit ``Campaign`` still survives every write.
    """

    def __init__(self, store: CollectionStore) -> None:
        self.store = store

    def _load(self) -> List[Any]:
        return self.store.read(CAMPAIGNS)

    def _save(self, records: List[Any]) -> None:
        self.store.write(CAMPAIGNS, records)

    @staticmethod
    def _find(records: List[Any], campaign_id: str) -> Optional[Dict[str, Any]]:
        for item in records:
            if isinstance(item, dict) and item.get("id") == campaign_id:
                return item
        return None

    @staticmethod
    def _view(record: Dict[str, Any]) -> Optional[Campaign]:
        try:
            return Campaign.model_validate(record)
        except ValidationError as exc:
            logger.warning("Campaign %s does not match the expected shape: %s", record.get("id"), exc)
            return None

    def list(self) -> List[Campaign]:
        views = (self._view(item) for item in self._load() if isinstance(item, dict))
        return [view for view in views if view is not None]

    def list_records(self) -> List[Any]:
        return self._load()

    def get(self, campaign_id: str) -> Optional[Campaign]:
        record = self._find(self._load(), campaign_id)
        return self._view(record) if record is not None else None

    def _new_id(self, records: List[Any], prefix: str = "") -> str:
        taken = {str(item.get("id")) for item in records if isinstance(item, dict)}
        stamp = int(time.time() * 1000)
        while f"{prefix}{stamp}" in taken:
            stamp += 1
        return f"{prefix}{stamp}"

    def _insert(self, *, subject: str, pdf_url: str, total: int, prefix: str, campaign_type: Optional[str]) -> Campaign:
        records = self._load()
        campaign = Campaign(
            id=self._new_id(records, prefix),
            date=now_iso(),
            subject=subject,
            pdf_url=pdf_url,
            total=total,
            sent=0,
            opens={},
            clicks={},
            type=campaign_type,
        )
        records.insert(0, campaign.to_record())
        self._save(records)
        logger.info("Campaign %s created (total=%s)", campaign.id, total)
        return campaign

    def create_bulk(self, *, subject: str, pdf_url: str, total: int) -> Campaign:
        return self._insert(subject=subject, pdf_url=pdf_url, total=total, prefix="", campaign_type=None)

    def create_public(self, *, subject: str, pdf_url: str) -> Campaign:
        return self._insert(
            subject=subject,
            pdf_url=pdf_url,
            total=0,
            prefix=PUBLIC_CAMPAIGN_PREFIX,
            campaign_type=PUBLIC_CAMPAIGN_TYPE,
        )

    def remove(self, campaign_id: str) -> bool:
        records = self._load()
        remaining = [item for item in records if not (isinstance(item, dict) and item.get("id") == campaign_id)]
        if len(remaining) == len(records):
            return False
        self._save(remaining)
        logger.info("Campaign %s removed", campaign_id)
        return True

    def _record_event(self, event: str, campaign_id: str, email: str) -> Optional[Campaign]:
        records = self._load()
        record = self._find(records, campaign_id)
        if record is None:
            return None
        events = record.get(event)
        if not isinstance(events, dict):
            events = {}
            record[event] = events
        if not events.get(email):
            events[email] = now_iso()
            self._save(records)
        return self._view(record)

    def record_open(self, campaign_id: str, email: str) -> Optional[Campaign]:
        return self._record_event(EVENT_OPENS, campaign_id, email)

    def record_click(self, campaign_id: str, email: str) -> Optional[Campaign]:
        return self._record_event(EVENT_CLICKS, campaign_id, email)

    def set_sent_count(self, campaign_id: str, sent: int) -> bool:
        # Re-read so event writes made while the send loop ran are kept.
        records = self._load()
        record = self._find(records, campaign_id)
        if record is None:
            logger.warning("Campaign %s vanished before its sent count could be stored", campaign_id)
            return False
        record["sent"] = sent
        self._save(records)
        return True
