"""
Helius enhanced-transaction webhook ingestion.

The provider retries on its own, so nothing here is retried: a transaction
that cannot be processed is logged and dropped. Every decision is idempotent
on the transaction signature.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from django.conf import settings
from django.db import DatabaseError
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from invoices import store
from invoices.exceptions import InvoiceError
from invoices.models import Invoice

PAID = 'paid'
DUPLICATE = 'duplicate'
REVIEW = 'review'
IGNORED = 'ignored'
DROPPED = 'dropped'


class _HeliusModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class TokenTransfer(_HeliusModel):
    mint: str = ''
    token_amount: Decimal = Field(Decimal(0), alias='tokenAmount')
    from_user_account: Optional[str] = Field(None, alias='fromUserAccount')
    to_user_account: Optional[str] = Field(None, alias='toUserAccount')
    from_token_account: Optional[str] = Field(None, alias='fromTokenAccount')
    to_token_account: Optional[str] = Field(None, alias='toTokenAccount')


class InnerInstruction(_HeliusModel):
    accounts: List[str] = Field(default_factory=list)
    program_id: Optional[str] = Field(None, alias='programId')


class Instruction(InnerInstruction):
    inner_instructions: List[InnerInstruction] = Field(default_factory=list, alias='innerInstructions')


class AccountData(_HeliusModel):
    account: str


class HeliusTransaction(_HeliusModel):
    signature: str
    timestamp: Optional[int] = None
    fee_payer: Optional[str] = Field(None, alias='feePayer')
    transaction_error: Optional[Any] = Field(None, alias='transactionError')
    token_transfers: List[TokenTransfer] = Field(default_factory=list, alias='tokenTransfers')
    account_data: List[AccountData] = Field(default_factory=list, alias='accountData')
    instructions: List[Instruction] = Field(default_factory=list)

    def accounts(self) -> List[str]:
        """Every account the transaction touches; the reference key is one of them."""
        seen = [data.account for data in self.account_data]
        for instruction in self.instructions:
            seen.extend(instruction.accounts)
            for inner in instruction.inner_instructions:
                seen.extend(inner.accounts)
        return list(dict.fromkeys(seen))


@dataclass(frozen=True)
class IngestResult:
    action: str
    invoice_id: Optional[str] = None
    reason: Optional[str] = None
    signature: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'action': self.action,
            'invoiceId': self.invoice_id,
            'reason': self.reason,
            'signature': self.signature,
        }


class WebhookIngestor:
    """Match provider transaction notifications to pending invoices."""

    def __init__(self, tolerance: Optional[Decimal] = None):
        self.tolerance = Decimal(str(tolerance if tolerance is not None else settings.INVOICE_AMOUNT_TOLERANCE))

    def handle_batch(self, payload) -> List[IngestResult]:
        """Process an enhanced-webhook delivery (a list, or a single transaction)."""
        events = payload if isinstance(payload, list) else [payload]
        logger.info('webhook delivery with {} transaction(s)', len(events))

        results = []
        for event in events:
            try:
                results.append(self.handle(event))
            except (InvoiceError, DatabaseError) as exc:
                signature = event.get('signature') if isinstance(event, dict) else None
                logger.exception('failed to process webhook transaction {}: {}', signature, exc)
                results.append(IngestResult(DROPPED, reason=type(exc).__name__, signature=signature))
        return results

    def handle(self, event) -> IngestResult:
        try:
            tx = HeliusTransaction.model_validate(event)
        except PydanticValidationError as exc:
            logger.warning('ignoring malformed webhook transaction: {}', exc)
            return IngestResult(IGNORED, reason='malformed')

        if tx.transaction_error is not None:
            logger.debug('tx {} failed on-chain, skipping', tx.signature)
            return IngestResult(IGNORED, reason='tx_failed', signature=tx.signature)

        invoice = store.find_by_references(tx.accounts())
        if invoice is None:
            logger.debug('tx {} references no invoice', tx.signature)
            return IngestResult(IGNORED, reason='no_invoice', signature=tx.signature)

        return self._apply(tx, invoice)

    def _apply(self, tx: HeliusTransaction, invoice: Invoice) -> IngestResult:
        def result(action: str, reason: Optional[str] = None) -> IngestResult:
            return IngestResult(action, invoice_id=invoice.id, reason=reason, signature=tx.signature)

        if invoice.status == Invoice.Status.PAID:
            return self._already_paid(tx, invoice, result)

        if invoice.status == Invoice.Status.DECLINED:
            logger.info('tx {} arrived for declined invoice {}', tx.signature, invoice.id)
            self._review(invoice, tx, 'payment for declined invoice')
            return result(REVIEW, 'declined')

        transfer = self._find_transfer(tx, invoice)
        if transfer is None:
            logger.info('tx {} references invoice {} but moves no {} to the recipient',
                        tx.signature, invoice.id, invoice.spl_token)
            return result(IGNORED, 'no_matching_transfer')

        amount = transfer.token_amount
        if invoice.amount_usd is not None:
            if abs(amount - invoice.amount_usd) > self.tolerance:
                logger.warning('amount mismatch on invoice {}: expected {} got {} in {}',
                               invoice.id, invoice.amount_usd, amount, tx.signature)
                self._review(invoice, tx, 'amount mismatch')
                return result(REVIEW, 'amount_mismatch')
        elif amount <= 0:
            return result(IGNORED, 'amount_zero')

        outcome = store.mark_paid(
            invoice.id,
            signature=tx.signature,
            payer=transfer.from_user_account or tx.fee_payer,
            block_time=tx.timestamp,
            amount=amount,
        )
        current = outcome.invoice
        if current.status == Invoice.Status.PAID:
            if current.paid_tx_sig != tx.signature:
                # Lost the race to another payment for the same invoice.
                return self._already_paid(tx, current, result)
            if not outcome.status_changed:
                return result(DUPLICATE)
            logger.info('invoice {} paid by webhook: {} {} from {}',
                        invoice.id, amount, tx.signature, current.payer)
            return result(PAID)

        if current.status == Invoice.Status.EXPIRED:
            if current.matched_tx_sig != tx.signature:
                self._review(current, tx, 'payment after expiry')
            return result(REVIEW, 'late_payment')

        return result(IGNORED, f'status_{current.status}')

    def _already_paid(self, tx: HeliusTransaction, invoice: Invoice, result) -> IngestResult:
        if invoice.paid_tx_sig == tx.signature:
            logger.debug('duplicate delivery of {} for invoice {}', tx.signature, invoice.id)
            return result(DUPLICATE)
        self._review(invoice, tx, 'second payment')
        return result(REVIEW, 'second_payment')

    def _review(self, invoice: Invoice, tx: HeliusTransaction, why: str) -> None:
        logger.warning('invoice {}: {} in {}', invoice.id, why, tx.signature)
        store.flag_for_review(invoice.id, tx.signature)

    @staticmethod
    def _find_transfer(tx: HeliusTransaction, invoice: Invoice) -> Optional[TokenTransfer]:
        for transfer in tx.token_transfers:
            if transfer.mint != invoice.spl_token:
                continue
            if (transfer.to_token_account == invoice.recipient_token_account
                    or transfer.to_user_account == invoice.recipient):
                return transfer
        return None
