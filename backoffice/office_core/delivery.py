from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from backoffice.office_core.campaigns import CampaignLedger, tracking_urls
from backoffice.office_core.mailer import MailTransport, OutgoingMail, render_campaign_html

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    campaign_id: str
    sent: int = 0
    failed: List[str] = field(default_factory=list)
    stored: bool = False


async def deliver_campaign(
    ledger: CampaignLedger,
    transport: MailTransport,
    *,
    campaign_id: str,
    subject: str,
    emails: Sequence[str],
    base_url: str,
    mail_from: str,
) -> DeliveryReport:
    """Send the campaign mail to each recipient in order, then store the sent count.

    Recipients are handled one at a time. A failed send is logged and skipped.
    The final count is written against a fresh read of the ledger; tracking
    events persisted after that read are still lost to this write.
    """
    report = DeliveryReport(campaign_id=campaign_id)
    for email in emails:
        open_url, link_url = tracking_urls(base_url, campaign_id, email)
        mail = OutgoingMail(
            sender=mail_from,
            to=email,
            subject=subject,
            html=render_campaign_html(subject, open_url, link_url),
        )
        try:
            await asyncio.to_thread(transport.send_mail, mail)
        except Exception:
            logger.exception("Error sending campaign %s to %s", campaign_id, email)
            report.failed.append(email)
            continue
        report.sent += 1

    report.stored = ledger.set_sent_count(campaign_id, report.sent)
    logger.info(
        "Campaign %s delivery finished: sent=%s failed=%s",
        campaign_id,
        report.sent,
        len(report.failed),
    )
    return report
