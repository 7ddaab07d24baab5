from decimal import Decimal
from unittest.mock import patch

from asgiref.sync import sync_to_async
from django.test import SimpleTestCase, TransactionTestCase

from invoices import store
from invoices.chain import SolanaVerifier
from invoices.events import set_event_bus
from invoices.exceptions import InvalidState, NotFound
from invoices.expiry import compute_extension, extend_invoice, is_lapsed, resolve_lapsed
from invoices.models import Invoice
from invoices.payment_request import USDC_MINT
from invoices.testing import FakeLedger, RecordingEventBus, new_key, parsed_transfer_tx

NOW = 1_700_000_000


class ComputeExtensionTests(SimpleTestCase):
    def test_extends_from_current_expiry_while_time_is_left(self):
        self.assertEqual(compute_extension(NOW + 30, NOW, 120), NOW + 150)

    def test_extends_from_now_once_lapsed(self):
        self.assertEqual(compute_extension(NOW - 45, NOW, 120), NOW + 120)

    def test_exactly_at_expiry(self):
        self.assertEqual(compute_extension(NOW, NOW, 120), NOW + 120)


class ExtendInvoiceTests(TransactionTestCase):
    def setUp(self) -> None:
        self.bus = RecordingEventBus()
        set_event_bus(self.bus)
        self.addCleanup(set_event_bus, None)
        self.invoice = store.create_invoice(new_key(), amount_usd='10.00', now=NOW, ttl_seconds=60)

    def test_extension_keeps_remaining_time(self):
        # 30 seconds left: the window grows from the current expiry, never shrinks.
        extension = extend_invoice(self.invoice.id, now=NOW + 30, window=120)

        self.assertEqual(extension.previous_expires_at_sec, NOW + 60)
        self.assertEqual(extension.expires_at_sec, NOW + 180)
        self.assertFalse(extension.lapsed)
        self.assertEqual(store.get_invoice(self.invoice.id).expires_at_sec, NOW + 180)

    def test_extending_lapsed_pending_invoice_starts_from_now(self):
        extension = extend_invoice(self.invoice.id, now=NOW + 100, window=120)

        self.assertTrue(extension.lapsed)
        self.assertEqual(extension.expires_at_sec, NOW + 220)
        self.assertEqual(extension.invoice.status, Invoice.Status.PENDING)

    def test_uses_configured_window(self):
        with self.settings(INVOICE_EXTENSION_SECONDS=300):
            extension = extend_invoice(self.invoice.id, now=NOW)

        self.assertEqual(extension.expires_at_sec, NOW + 360)

    def test_extension_does_not_notify(self):
        extend_invoice(self.invoice.id, now=NOW + 10, window=120)
        self.assertEqual(self.bus.published, [])

    def test_terminal_invoice_cannot_be_extended(self):
        for action in (store.mark_declined, store.mark_paid):
            invoice = store.create_invoice(new_key(), amount_usd='1', now=NOW, ttl_seconds=60)
            if action is store.mark_paid:
                action(invoice.id, signature='sig', payer=new_key(), now=NOW + 1)
            else:
                action(invoice.id, now=NOW + 1)

            with self.subTest(status=store.get_invoice(invoice.id).status):
                with self.assertRaises(InvalidState):
                    extend_invoice(invoice.id, now=NOW + 2, window=120)
                self.assertEqual(store.get_invoice(invoice.id).expires_at_sec, NOW + 60)

    def test_unknown_invoice(self):
        with self.assertRaises(NotFound):
            extend_invoice('missing', now=NOW)

    def test_is_lapsed(self):
        self.assertFalse(is_lapsed(self.invoice, now=NOW + 60))
        self.assertTrue(is_lapsed(self.invoice, now=NOW + 61))


@patch('invoices.verification.BACKOFF_BASE_SECONDS', 0)
class ResolveLapsedTests(TransactionTestCase):
    def setUp(self) -> None:
        self.bus = RecordingEventBus()
        set_event_bus(self.bus)
        self.addCleanup(set_event_bus, None)
        self.ledger = FakeLedger()
        self.verifier = SolanaVerifier({}, ledger=self.ledger)
        self.invoice = store.create_invoice(new_key(), amount_usd='10.00', now=NOW, ttl_seconds=60)

    def pay(self, signature, block_time):
        tx = parsed_transfer_tx(
            reference=self.invoice.reference,
            payer=new_key(),
            destination=self.invoice.recipient_token_account,
            mint=USDC_MINT,
            amount=Decimal('10.00'),
            block_time=block_time,
        )
        self.ledger.add(self.invoice.reference, signature, tx)

    async def test_open_window_is_left_alone(self):
        invoice = await resolve_lapsed(self.invoice.id, self.verifier, now=NOW + 30)

        self.assertEqual(invoice.status, Invoice.Status.PENDING)
        self.assertEqual(self.ledger.signature_calls, 0)

    async def test_unpaid_lapsed_invoice_expires_then_cannot_extend(self):
        invoice = await resolve_lapsed(self.invoice.id, self.verifier, now=NOW + 61)

        self.assertEqual(invoice.status, Invoice.Status.EXPIRED)
        self.assertEqual(self.bus.events_for(self.invoice.id), ['expired'])
        with self.assertRaises(InvalidState):
            await sync_to_async(extend_invoice)(self.invoice.id, now=NOW + 62)

    async def test_on_time_payment_wins_over_expiry(self):
        self.pay('sig-on-time', NOW + 59)

        invoice = await resolve_lapsed(self.invoice.id, self.verifier, now=NOW + 90)

        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.paid_tx_sig, 'sig-on-time')
        self.assertEqual(self.bus.events_for(self.invoice.id), ['paid'])

    async def test_late_payment_expires_for_review(self):
        self.pay('sig-late', NOW + 75)

        invoice = await resolve_lapsed(self.invoice.id, self.verifier, now=NOW + 90)

        self.assertEqual(invoice.status, Invoice.Status.EXPIRED)
        self.assertEqual(invoice.matched_tx_sig, 'sig-late')
        self.assertTrue(invoice.needs_review)

    async def test_unreachable_ledger_leaves_invoice_pending(self):
        self.ledger.failures = 10

        with self.settings(INVOICE_VERIFY_MAX_ATTEMPTS=2):
            invoice = await resolve_lapsed(self.invoice.id, self.verifier, now=NOW + 61)

        self.assertEqual(invoice.status, Invoice.Status.PENDING)
        self.assertEqual(self.bus.published, [])
