import uuid

from django.db import models

from invoices.payment_request import USDC_MINT, format_amount


def gen_id():
    return str(uuid.uuid4())


def _amount(value):
    return format_amount(value) if value is not None else None


class Invoice(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        DECLINED = 'declined', 'Declined'
        EXPIRED = 'expired', 'Expired'

    TERMINAL_STATUSES = frozenset({Status.PAID.value, Status.DECLINED.value, Status.EXPIRED.value})

    id = models.CharField(primary_key=True, max_length=36, default=gen_id, editable=False)
    # Solana addresses are base58 (~44 chars); signatures are base58 (~88 chars).
    recipient = models.CharField(max_length=64)
    recipient_token_account = models.CharField(max_length=64)
    reference = models.CharField(max_length=64, unique=True)
    spl_token = models.CharField(max_length=64, default=USDC_MINT)
    amount_usd = models.DecimalField(max_digits=20, decimal_places=6, blank=True, null=True)
    label = models.CharField(max_length=128, blank=True, default='')
    message = models.CharField(max_length=256, blank=True, default='')
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    created_at_sec = models.BigIntegerField()
    expires_at_sec = models.BigIntegerField()
    paid_at_sec = models.BigIntegerField(blank=True, null=True)
    payer = models.CharField(max_length=64, blank=True, null=True)
    paid_tx_sig = models.CharField(max_length=128, blank=True, null=True)
    paid_amount_usd = models.DecimalField(max_digits=20, decimal_places=6, blank=True, null=True)
    matched_tx_sig = models.CharField(max_length=128, blank=True, null=True)
    needs_review = models.BooleanField(default=False)
    version = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at_sec']
        indexes = [
            models.Index(fields=['status', 'expires_at_sec'], name='invoice_status_expiry_idx'),
        ]

    def __str__(self):
        return f'Invoice {self.id} ({self.status})'

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def snapshot(self) -> dict:
        """JSON shape shared by status responses and stream frames."""
        return {
            'invoiceId': self.id,
            'status': self.status,
            'recipient': self.recipient,
            'reference': self.reference,
            'amountUsd': _amount(self.amount_usd),
            'createdAtSec': self.created_at_sec,
            'expiresAtSec': self.expires_at_sec,
            'paidAtSec': self.paid_at_sec,
            'payer': self.payer,
            'paidTxSig': self.paid_tx_sig,
            'paidAmountUsd': _amount(self.paid_amount_usd),
            'matchedTxSig': self.matched_tx_sig,
            'needsReview': self.needs_review,
        }
