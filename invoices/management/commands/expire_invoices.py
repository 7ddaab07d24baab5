from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand
from loguru import logger

from invoices import store
from invoices.chain import get_verifier
from invoices.exceptions import NotFound
from invoices.expiry import resolve_lapsed


class Command(BaseCommand):
    help = 'Settle pending invoices whose window has closed: paid if the ledger shows a match, expired otherwise.'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=100, help='Maximum invoices to settle in one run.')
        parser.add_argument('--dry-run', action='store_true', help='List lapsed invoices without touching them.')

    def handle(self, *args, **options):
        now = store.now_sec()
        lapsed = store.list_pending(now=now, lapsed_only=True)[:options['limit']]
        self.stdout.write(f'{len(lapsed)} lapsed pending invoice(s)')

        if options['dry_run']:
            for invoice in lapsed:
                self.stdout.write(f'{invoice.id} expired {now - invoice.expires_at_sec}s ago')
            return

        counts = async_to_sync(self._sweep)([invoice.id for invoice in lapsed], now)
        summary = ', '.join(f'{status}={count}' for status, count in sorted(counts.items())) or 'nothing to do'
        logger.info('expire_invoices: {}', summary)
        self.stdout.write(self.style.SUCCESS(summary))

    async def _sweep(self, invoice_ids, now):
        counts = {}
        verifier = get_verifier()
        try:
            for invoice_id in invoice_ids:
                try:
                    invoice = await resolve_lapsed(invoice_id, verifier, now=now)
                except NotFound:
                    logger.warning('invoice {} disappeared during the sweep', invoice_id)
                    continue
                counts[str(invoice.status)] = counts.get(str(invoice.status), 0) + 1
        finally:
            await verifier.close()
        return counts
