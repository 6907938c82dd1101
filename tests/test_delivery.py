import asyncio
import tempfile
import unittest
from pathlib import Path

from backoffice.office_core.campaigns import CampaignLedger
from backoffice.office_core.delivery import deliver_campaign
from backoffice.office_core.mailer import MailTransportError
from backoffice.office_core.store import CAMPAIGNS, CollectionStore


class RecordingTransport:
    def __init__(self, fail_for=(), on_send=None):
        self.fail_for = set(fail_for)
        self.on_send = on_send
        self.sent = []

    def verify(self) -> None:
        return None

    def send_mail(self, mail):
        if self.on_send is not None:
            self.on_send(mail)
        if mail.to in self.fail_for:
            raise MailTransportError("mailbox unavailable", "550 mailbox unavailable")
        self.sent.append(mail)
        return f"msg-{len(self.sent)}"


class RacingStore(CollectionStore):
    """Persists an open right after the next campaigns read, before the caller writes back."""

    def __init__(self, data_dir: Path) -> None:
        super().__init__(data_dir)
        self.pending_open = None

    def read(self, name):
        data = super().read(name)
        if name == CAMPAIGNS and self.pending_open is not None:
            campaign_id, email = self.pending_open
            self.pending_open = None
            CampaignLedger(CollectionStore(self.data_dir)).record_open(campaign_id, email)
        return data


class DeliverCampaignTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = CollectionStore(Path(self.tmpdir.name))
        self.ledger = CampaignLedger(self.store)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _deliver(self, ledger, transport, campaign, emails):
        return asyncio.run(
            deliver_campaign(
                ledger,
                transport,
                campaign_id=campaign.id,
                subject=campaign.subject,
                emails=emails,
                base_url="http://shop.local:3000",
                mail_from="Tienda <ventas@example.com>",
            )
        )

    def test_failed_recipient_is_skipped(self) -> None:
        emails = ["a@example.com", "b@example.com", "c@example.com"]
        campaign = self.ledger.create_bulk(subject="Lista", pdf_url="/p.pdf", total=len(emails))
        transport = RecordingTransport(fail_for={"b@example.com"})

        with self.assertLogs("backoffice.office_core.delivery", level="ERROR"):
            report = self._deliver(self.ledger, transport, campaign, emails)

        self.assertEqual(report.sent, 2)
        self.assertEqual(report.failed, ["b@example.com"])
        self.assertTrue(report.stored)
        self.assertEqual([mail.to for mail in transport.sent], ["a@example.com", "c@example.com"])
        self.assertEqual(self.ledger.get(campaign.id).sent, 2)

    def test_mail_carries_tracking_urls(self) -> None:
        campaign = self.ledger.create_bulk(subject="Lista <abril>", pdf_url="/p.pdf", total=1)
        transport = RecordingTransport()

        self._deliver(self.ledger, transport, campaign, ["ana@example.com"])

        mail = transport.sent[0]
        self.assertEqual(mail.sender, "Tienda <ventas@example.com>")
        self.assertEqual(mail.subject, "Lista <abril>")
        self.assertIn(f"http://shop.local:3000/api/track/open/{campaign.id}/ana%40example.com", mail.html)
        self.assertIn(f"http://shop.local:3000/api/track/link/{campaign.id}/ana%40example.com", mail.html)
        self.assertIn("Lista &lt;abril&gt;", mail.html)

    def test_opens_recorded_during_the_loop_survive(self) -> None:
        campaign = self.ledger.create_bulk(subject="Lista", pdf_url="/p.pdf", total=2)

        def open_mid_loop(mail):
            if mail.to == "a@example.com":
                self.ledger.record_open(campaign.id, mail.to)

        transport = RecordingTransport(on_send=open_mid_loop)
        self._deliver(self.ledger, transport, campaign, ["a@example.com", "b@example.com"])

        stored = self.ledger.get(campaign.id)
        self.assertEqual(stored.sent, 2)
        self.assertIn("a@example.com", stored.opens)

    def test_open_written_after_final_read_is_lost(self) -> None:
        store = RacingStore(Path(self.tmpdir.name))
        ledger = CampaignLedger(store)
        campaign = ledger.create_bulk(subject="Lista", pdf_url="/p.pdf", total=1)

        def arm_race(mail):
            store.pending_open = (campaign.id, "late@example.com")

        transport = RecordingTransport(on_send=arm_race)
        self._deliver(ledger, transport, campaign, ["a@example.com"])

        stored = CampaignLedger(CollectionStore(Path(self.tmpdir.name))).get(campaign.id)
        self.assertEqual(stored.sent, 1)
        self.assertNotIn("late@example.com", stored.opens)

    def test_campaign_removed_mid_delivery(self) -> None:
        campaign = self.ledger.create_bulk(subject="Lista", pdf_url="/p.pdf", total=1)
        transport = RecordingTransport(on_send=lambda mail: self.ledger.remove(campaign.id))

        report = self._deliver(self.ledger, transport, campaign, ["a@example.com"])

        self.assertEqual(report.sent, 1)
        self.assertFalse(report.stored)
        self.assertEqual(self.store.read(CAMPAIGNS), [])


if __name__ == "__main__":
    unittest.main()
