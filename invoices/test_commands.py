from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TransactionTestCase

from invoices import store
from invoices.chain import SolanaVerifier
from invoices.events import set_event_bus
from invoices.models import Invoice
from invoices.payment_request import USDC_MINT
from invoices.testing import FakeLedger, RecordingEventBus, new_key, parsed_transfer_tx


class ExpireInvoicesCommandTests(TransactionTestCase):
    def setUp(self) -> None:
        self.bus = RecordingEventBus()
        set_event_bus(self.bus)
        self.addCleanup(set_event_bus, None)
        self.now = store.now_sec()
        self.ledger = FakeLedger()
        patcher = patch('invoices.management.commands.expire_invoices.get_verifier',
                        return_value=SolanaVerifier({}, ledger=self.ledger))
        patcher.start()
        self.addCleanup(patcher.stop)

        self.open = store.create_invoice(new_key(), amount_usd='5.00', now=self.now, ttl_seconds=600)
        self.unpaid = store.create_invoice(new_key(), amount_usd='5.00', now=self.now - 700, ttl_seconds=600)
        self.paid_on_time = store.create_invoice(new_key(), amount_usd='5.00', now=self.now - 700, ttl_seconds=600)
        tx = parsed_transfer_tx(
            reference=self.paid_on_time.reference,
            payer=new_key(),
            destination=self.paid_on_time.recipient_token_account,
            mint=USDC_MINT,
            amount=Decimal('5.00'),
            block_time=self.now - 200,
        )
        self.ledger.add(self.paid_on_time.reference, 'sig-on-time', tx)

    def test_sweep_settles_lapsed_invoices(self):
        out = StringIO()

        call_command('expire_invoices', stdout=out)

        self.assertEqual(store.get_invoice(self.open.id).status, Invoice.Status.PENDING)
        self.assertEqual(store.get_invoice(self.unpaid.id).status, Invoice.Status.EXPIRED)
        self.assertEqual(store.get_invoice(self.paid_on_time.id).status, Invoice.Status.PAID)
        self.assertIn('expired=1', out.getvalue())
        self.assertIn('paid=1', out.getvalue())
        self.assertTrue(self.ledger.closed)

    def test_dry_run_changes_nothing(self):
        out = StringIO()

        call_command('expire_invoices', '--dry-run', stdout=out)

        self.assertIn('2 lapsed pending invoice(s)', out.getvalue())
        self.assertEqual(store.get_invoice(self.unpaid.id).status, Invoice.Status.PENDING)
        self.assertEqual(self.ledger.signature_calls, 0)
        self.assertEqual(self.bus.published, [])
