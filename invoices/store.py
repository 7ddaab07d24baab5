"""
Invoice store.

The database row is the only source of truth for an invoice. Every mutation
goes through ``update_invoice``: one locked read-modify-write per invoice id
that enforces the status state machine, keeps the paid fields write-once and
publishes a notification once the new state is visible to other readers.

Notifications are registered with ``transaction.on_commit``: when a caller
wraps store mutations in its own transaction they go out only once that
transaction commits, and never if it rolls back.
"""
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Callable, Iterable, List, Optional, Union

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from invoices.chain.factory import get_chain_config
from invoices.events import InvoiceEvent, get_event_bus
from invoices.exceptions import ConcurrentUpdate, InvalidParameters, InvalidState, NotFound, UpstreamUnavailable
from invoices.models import Invoice
from invoices.payment_request import USDC_DECIMALS, is_valid_public_key

Status = Invoice.Status

MAX_UPDATE_ATTEMPTS = 3

AMOUNT_QUANTUM = Decimal(1).scaleb(-USDC_DECIMALS)

# Set once, on the transition to paid, and never again.
PAID_FIELDS = ('paid_at_sec', 'payer', 'paid_tx_sig', 'paid_amount_usd')
DIAGNOSTIC_FIELDS = ('matched_tx_sig', 'needs_review')
UPDATABLE_FIELDS = frozenset(('status', 'expires_at_sec', 'block_time') + PAID_FIELDS + DIAGNOSTIC_FIELDS)

Changes = Union[dict, Callable[[Invoice], dict]]


def now_sec() -> int:
    return int(time.time())


@dataclass
class UpdateOutcome:
    invoice: Invoice
    changed: bool
    previous_status: str

    @property
    def status_changed(self) -> bool:
        return self.invoice.status != self.previous_status


def normalize_amount(value) -> Optional[Decimal]:
    """Parse a USD(C) amount; None stays None (custom amount)."""
    if value is None or value == '':
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidParameters(f'Invalid amount: {value}') from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidParameters(f'Amount must be positive: {value}')
    if amount.quantize(AMOUNT_QUANTUM) != amount:
        raise InvalidParameters(f'Amount has more than {USDC_DECIMALS} decimals: {value}')
    return amount


def create_invoice(
    recipient: str,
    amount_usd=None,
    reference: Optional[str] = None,
    label: str = '',
    message: str = '',
    spl_token: Optional[str] = None,
    now: Optional[int] = None,
    ttl_seconds: Optional[int] = None,
) -> Invoice:
    """
    Create a pending invoice.

    A fresh one-time reference key is generated unless the caller supplies
    one; references are unique across all invoices ever created.
    """
    if not is_valid_public_key(recipient):
        raise InvalidParameters('Invalid recipient address')

    if reference is None:
        reference = str(Keypair().pubkey())
    elif not is_valid_public_key(reference):
        raise InvalidParameters('Invalid reference public key')

    mint = spl_token or get_chain_config()['spl_token']
    if not is_valid_public_key(mint):
        raise InvalidParameters('Invalid SPL token mint')

    amount = normalize_amount(amount_usd)
    now = now if now is not None else now_sec()
    ttl = ttl_seconds if ttl_seconds is not None else settings.INVOICE_TTL_SECONDS

    token_account = get_associated_token_address(
        Pubkey.from_string(recipient),
        Pubkey.from_string(mint),
    )

    invoice = Invoice(
        recipient=recipient,
        recipient_token_account=str(token_account),
        reference=reference,
        spl_token=mint,
        amount_usd=amount,
        label=label or '',
        message=message or '',
        status=Status.PENDING,
        created_at_sec=now,
        expires_at_sec=now + ttl,
    )
    try:
        with transaction.atomic():
            invoice.save(force_insert=True)
    except IntegrityError as exc:
        raise InvalidParameters('Reference already used by another invoice') from exc

    logger.info('invoice {} created: recipient={} amount={} reference={} expires={}',
                invoice.id, recipient, amount if amount is not None else 'custom',
                reference, invoice.expires_at_sec)
    return invoice


def get_invoice(invoice_id: str) -> Invoice:
    try:
        return Invoice.objects.get(pk=invoice_id)
    except Invoice.DoesNotExist:
        raise NotFound(f'Invoice {invoice_id} not found') from None


async def aget_invoice(invoice_id: str) -> Invoice:
    try:
        return await Invoice.objects.aget(pk=invoice_id)
    except Invoice.DoesNotExist:
        raise NotFound(f'Invoice {invoice_id} not found') from None


def find_by_references(accounts: Iterable[str]) -> Optional[Invoice]:
    """Resolve the invoice whose reference key is among ``accounts``."""
    candidates = {account for account in accounts if account}
    if not candidates:
        return None
    matches = list(Invoice.objects.filter(reference__in=candidates)[:2])
    if len(matches) > 1:
        logger.warning('transaction references several invoices: {}', [m.id for m in matches])
    return matches[0] if matches else None


def list_pending(now: Optional[int] = None, lapsed_only: bool = False) -> List[Invoice]:
    queryset = Invoice.objects.filter(status=Status.PENDING)
    if lapsed_only:
        now = now if now is not None else now_sec()
        queryset = queryset.filter(expires_at_sec__lt=now)
    return list(queryset.order_by('expires_at_sec'))


def _resolve_status(invoice: Invoice, target: str, block_time: Optional[int], now: int) -> Optional[str]:
    """
    Status the invoice moves to when ``target`` is requested, or None when
    the request is not a legal transition (a no-op for the caller).
    """
    current = invoice.status
    if target == current:
        return None

    if target == Status.PAID:
        paid_at = block_time if block_time is not None else now
        if current == Status.PENDING:
            # Payment and expiry observed together: the ledger timestamp decides.
            if now > invoice.expires_at_sec and paid_at > invoice.expires_at_sec:
                return Status.EXPIRED
            return Status.PAID
        if current == Status.EXPIRED and paid_at <= invoice.expires_at_sec:
            # The expiry check ran before an on-time payment became visible.
            return Status.PAID
        return None

    if target == Status.EXPIRED:
        if current == Status.PENDING and now > invoice.expires_at_sec:
            return Status.EXPIRED
        return None

    if target == Status.DECLINED:
        return Status.DECLINED if current == Status.PENDING else None

    return None


def _apply_changes(invoice: Invoice, requested: dict, now: int) -> dict:
    unknown = set(requested) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f'Fields cannot be updated: {sorted(unknown)}')

    fields = {}
    block_time = requested.get('block_time')

    if 'expires_at_sec' in requested and requested['expires_at_sec'] != invoice.expires_at_sec:
        if invoice.status != Status.PENDING:
            raise InvalidState(f'Cannot change expiry of invoice with status: {invoice.status}')
        fields['expires_at_sec'] = int(requested['expires_at_sec'])

    target = requested.get('status')
    if target is not None:
        new_status = _resolve_status(invoice, target, block_time, now)
        if new_status == Status.PAID:
            fields['status'] = Status.PAID.value
            fields['paid_at_sec'] = block_time if block_time is not None else now
            for name in ('payer', 'paid_tx_sig', 'paid_amount_usd'):
                if requested.get(name) is not None and getattr(invoice, name) is None:
                    fields[name] = requested[name]
        elif new_status is not None:
            fields['status'] = Status(new_status).value
            if target == Status.PAID and requested.get('paid_tx_sig'):
                # Paid after the window closed: keep the evidence for an operator.
                fields['matched_tx_sig'] = requested['paid_tx_sig']
                fields['needs_review'] = True
                logger.warning('invoice {} paid after expiry by {}; marked expired for review',
                               invoice.id, requested['paid_tx_sig'])
    else:
        ignored = [name for name in PAID_FIELDS if requested.get(name) is not None]
        if ignored:
            logger.debug('invoice {}: ignoring write-once fields outside a paid transition: {}',
                         invoice.id, ignored)

    for name in DIAGNOSTIC_FIELDS:
        if name in requested and name not in fields and requested[name] != getattr(invoice, name):
            fields[name] = requested[name]

    return fields


def update_invoice(invoice_id: str, changes: Changes, now: Optional[int] = None) -> UpdateOutcome:
    """
    Atomically apply ``changes`` to one invoice.

    ``changes`` is a dict of fields or a callable that receives the locked
    invoice and returns one. Illegal status transitions leave the invoice
    untouched and are reported through ``UpdateOutcome.changed``.

    Raises:
        NotFound: unknown invoice id.
        InvalidState: expiry change requested on a non-pending invoice, or
            raised by the ``changes`` callable.
        ConcurrentUpdate: the compare-and-set lost every attempt.
    """
    now = now if now is not None else now_sec()

    for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
        with transaction.atomic():
            try:
                invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            except Invoice.DoesNotExist:
                raise NotFound(f'Invoice {invoice_id} not found') from None

            previous_status = invoice.status
            requested = changes(invoice) if callable(changes) else dict(changes)
            fields = _apply_changes(invoice, requested, now)
            if not fields:
                return UpdateOutcome(invoice=invoice, changed=False, previous_status=previous_status)

            fields['version'] = invoice.version + 1
            fields['updated_at'] = timezone.now()
            # Compare-and-set on version covers backends without row locks.
            written = Invoice.objects.filter(pk=invoice_id, version=invoice.version).update(**fields)
            if written:
                for name, value in fields.items():
                    setattr(invoice, name, value)
                break

        logger.warning('invoice {} changed concurrently, retrying ({}/{})',
                       invoice_id, attempt, MAX_UPDATE_ATTEMPTS)
    else:
        raise ConcurrentUpdate(f'Invoice {invoice_id} is being updated concurrently')

    outcome = UpdateOutcome(invoice=invoice, changed=True, previous_status=previous_status)
    if outcome.status_changed:
        logger.info('invoice {} status {} -> {}', invoice.id, previous_status, invoice.status)
        event = InvoiceEvent(invoice_id=invoice.id, event=str(invoice.status))
        transaction.on_commit(partial(_publish, event))
    return outcome


def _publish(event: InvoiceEvent) -> None:
    try:
        get_event_bus().publish(event)
    except UpstreamUnavailable as exc:
        # The new state is committed; streams still see it on their next read.
        logger.error('failed to publish {} for invoice {}: {}', event.event, event.invoice_id, exc.message)


def mark_paid(
    invoice_id: str,
    signature: str,
    payer: Optional[str],
    block_time: Optional[int] = None,
    amount: Optional[Decimal] = None,
    needs_review: bool = False,
    now: Optional[int] = None,
) -> UpdateOutcome:
    changes = {
        'status': Status.PAID,
        'paid_tx_sig': signature,
        'payer': payer,
        'paid_amount_usd': amount,
        'block_time': block_time,
    }
    if needs_review:
        changes['needs_review'] = True
        changes['matched_tx_sig'] = signature
    return update_invoice(invoice_id, changes, now=now)


def mark_expired(invoice_id: str, now: Optional[int] = None) -> UpdateOutcome:
    return update_invoice(invoice_id, {'status': Status.EXPIRED}, now=now)


def mark_declined(invoice_id: str, now: Optional[int] = None) -> UpdateOutcome:
    return update_invoice(invoice_id, {'status': Status.DECLINED}, now=now)


def flag_for_review(invoice_id: str, signature: str, now: Optional[int] = None) -> UpdateOutcome:
    """Record a transaction an operator has to look at; never changes status."""
    outcome = update_invoice(
        invoice_id,
        {'needs_review': True, 'matched_tx_sig': signature},
        now=now,
    )
    if outcome.changed:
        logger.warning('invoice {} flagged for review: tx {}', invoice_id, signature)
    return outcome
