"""
Polling-path verification: time-boxed, retried, never fatal.
"""
import asyncio
from typing import Optional

from asgiref.sync import sync_to_async
from django.conf import settings
from loguru import logger

from invoices import store
from invoices.chain import ChainVerifier, VerificationResult
from invoices.exceptions import UpstreamUnavailable, VerificationTimeout
from invoices.models import Invoice

BACKOFF_BASE_SECONDS = 0.5


async def _verify_with_retries(verifier: ChainVerifier, invoice: Invoice, dev_mode: bool,
                               max_attempts: int) -> VerificationResult:
    attempt = 1
    while True:
        try:
            return await verifier.verify(invoice, dev_mode=dev_mode)
        except UpstreamUnavailable as exc:
            if attempt >= max_attempts:
                raise
            delay = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
            logger.warning('ledger unavailable verifying invoice {} (attempt {}/{}), retrying in {}s: {}',
                           invoice.id, attempt, max_attempts, delay, exc.message)
            await asyncio.sleep(delay)
            attempt += 1


async def run_with_deadline(awaitable, deadline_seconds: float):
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline_seconds)
    except asyncio.TimeoutError:
        raise VerificationTimeout(f'Verification exceeded {deadline_seconds}s') from None


async def verify_with_deadline(
    verifier: ChainVerifier,
    invoice: Invoice,
    dev_mode: bool = False,
    deadline_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> VerificationResult:
    """
    Run one verification inside a fixed overall deadline.

    A timeout or an unreachable ledger yields ``paid=False`` with
    ``timed_out=True``: the invoice simply stays pending.
    """
    deadline = deadline_seconds if deadline_seconds is not None else settings.INVOICE_VERIFY_DEADLINE_SECONDS
    attempts = max_attempts if max_attempts is not None else settings.INVOICE_VERIFY_MAX_ATTEMPTS

    try:
        return await run_with_deadline(
            _verify_with_retries(verifier, invoice, dev_mode, attempts),
            deadline,
        )
    except VerificationTimeout as exc:
        logger.warning('verification of invoice {} timed out: {}', invoice.id, exc.message)
    except UpstreamUnavailable as exc:
        logger.error('verification of invoice {} gave up: {}', invoice.id, exc.message)
    return VerificationResult(paid=False, timed_out=True)


def record_verification(invoice: Invoice, result: VerificationResult,
                        now: Optional[int] = None) -> store.UpdateOutcome:
    """Apply a positive verification result through the store."""
    if not result.paid:
        raise ValueError('Only a positive match can be recorded')
    return store.mark_paid(
        invoice.id,
        signature=result.signature,
        payer=result.payer,
        block_time=result.block_time,
        amount=result.matched_amount,
        needs_review=result.needs_review,
        now=now,
    )


async def verify_invoice(verifier: ChainVerifier, invoice_id: str, dev_mode: bool = False):
    """
    Fallback verification for one invoice.

    Returns ``(invoice, result)`` with the invoice re-read after any update.
    """
    invoice = await store.aget_invoice(invoice_id)
    # Expired invoices are still checked: an on-time payment may surface late.
    if invoice.status in (Invoice.Status.PAID, Invoice.Status.DECLINED):
        return invoice, VerificationResult(paid=invoice.status == Invoice.Status.PAID,
                                           signature=invoice.paid_tx_sig, payer=invoice.payer)

    result = await verify_with_deadline(verifier, invoice, dev_mode=dev_mode)
    if result.paid:
        outcome = await sync_to_async(record_verification)(invoice, result)
        invoice = outcome.invoice
    return invoice, result
