"""
Invoice validity windows.
"""
from dataclasses import dataclass
from typing import Optional

from asgiref.sync import sync_to_async
from django.conf import settings
from loguru import logger

from invoices import store
from invoices.chain import ChainVerifier
from invoices.exceptions import InvalidState
from invoices.models import Invoice
from invoices.verification import record_verification, verify_with_deadline


@dataclass
class Extension:
    invoice: Invoice
    expires_at_sec: int
    previous_expires_at_sec: int
    lapsed: bool


def compute_extension(current_expiry: int, now: int, window: int) -> int:
    # Never shortens a window that still has more than one extension left.
    return max(current_expiry, now) + window


def is_lapsed(invoice: Invoice, now: Optional[int] = None) -> bool:
    now = now if now is not None else store.now_sec()
    return invoice.status == Invoice.Status.PENDING and now > invoice.expires_at_sec


def extend_invoice(invoice_id: str, now: Optional[int] = None, window: Optional[int] = None) -> Extension:
    """
    Push a pending invoice's expiry out by one extension window.

    Raises:
        NotFound: unknown invoice id.
        InvalidState: the invoice is no longer pending.
    """
    now = now if now is not None else store.now_sec()
    window = window if window is not None else settings.INVOICE_EXTENSION_SECONDS
    seen = {}

    def extend(invoice: Invoice) -> dict:
        if invoice.status != Invoice.Status.PENDING:
            raise InvalidState(f'Cannot extend invoice with status: {invoice.status}')
        seen['expires_at_sec'] = invoice.expires_at_sec
        return {'expires_at_sec': compute_extension(invoice.expires_at_sec, now, window)}

    outcome = store.update_invoice(invoice_id, extend, now=now)
    previous = seen['expires_at_sec']
    lapsed = now > previous
    if lapsed:
        logger.warning('invoice {} extended {}s after its window closed', invoice_id, now - previous)

    logger.info('invoice {} extended: {} -> {}', invoice_id, previous, outcome.invoice.expires_at_sec)
    return Extension(
        invoice=outcome.invoice,
        expires_at_sec=outcome.invoice.expires_at_sec,
        previous_expires_at_sec=previous,
        lapsed=lapsed,
    )


async def resolve_lapsed(invoice_id: str, verifier: ChainVerifier, now: Optional[int] = None) -> Invoice:
    """
    Settle a pending invoice whose window has closed.

    The ledger is checked first: a match makes it paid, a clean miss makes it
    expired, and a check that cannot finish leaves it pending.
    """
    invoice = await store.aget_invoice(invoice_id)
    now = now if now is not None else store.now_sec()
    if not is_lapsed(invoice, now):
        return invoice

    result = await verify_with_deadline(verifier, invoice)
    if result.paid:
        outcome = await sync_to_async(record_verification)(invoice, result, now=now)
        return outcome.invoice

    if result.timed_out:
        logger.info('invoice {} lapsed but the ledger check did not finish; left pending', invoice_id)
        return invoice

    outcome = await sync_to_async(store.mark_expired)(invoice_id, now=now)
    return outcome.invoice
