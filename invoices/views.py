"""
HTTP surface of the invoice service.
"""
import hmac
from decimal import Decimal
from typing import Optional

from asgiref.sync import async_to_sync
from django.conf import settings
from django.http import JsonResponse, StreamingHttpResponse
from django.views.decorators.http import require_GET
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.exceptions import ParseError
from rest_framework.response import Response
from rest_framework.views import APIView

from invoices import store
from invoices.chain import get_verifier
from invoices.exceptions import ConcurrentUpdate, InvalidParameters, InvalidState, NotFound
from invoices.expiry import extend_invoice, is_lapsed, resolve_lapsed
from invoices.models import Invoice
from invoices.payment_request import (
    PaymentRequest,
    decode_payment_request,
    encode_payment_request,
    format_amount,
    is_valid_payment_request,
)
from invoices.streams import StatusStreamManager
from invoices.verification import verify_invoice
from invoices.webhooks import WebhookIngestor


class CreateInvoiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    recipient: str
    amount_usd: Optional[Decimal] = Field(None, validation_alias=AliasChoices('amountUsd', 'amount'))
    allow_custom_amount: bool = Field(False, validation_alias=AliasChoices('allowCustomAmount'))
    reference: Optional[str] = None
    label: Optional[str] = None
    message: Optional[str] = None
    memo: Optional[str] = None


def _error(message: str, status_code: int) -> Response:
    return Response({'error': message}, status=status_code)


def _dev_mode(request) -> bool:
    value = request.query_params.get('dev') or ''
    return settings.DEBUG_ENDPOINTS_ENABLED and value.lower() in ('1', 'true', 'yes')


def build_payment_uri(invoice: Invoice, memo: Optional[str] = None) -> str:
    return encode_payment_request(PaymentRequest(
        recipient=invoice.recipient,
        reference=invoice.reference,
        amount=invoice.amount_usd,
        spl_token=invoice.spl_token,
        label=invoice.label or settings.INVOICE_MERCHANT_LABEL,
        message=invoice.message or f'Invoice {invoice.id[:8]}',
        memo=memo,
    ))


def status_payload(invoice: Invoice) -> dict:
    snapshot = invoice.snapshot()
    return {
        'invoiceId': invoice.id,
        'status': invoice.status,
        'signature': invoice.paid_tx_sig,
        'paidTxSig': invoice.paid_tx_sig,
        'payer': invoice.payer,
        'amountUsd': snapshot['amountUsd'],
        'createdAtSec': invoice.created_at_sec,
        'expiresAtSec': invoice.expires_at_sec,
        'paidAtSec': invoice.paid_at_sec,
        'needsReview': invoice.needs_review,
    }


async def _run_verification(invoice_id: str, dev_mode: bool):
    verifier = get_verifier()
    try:
        invoice, result = await verify_invoice(verifier, invoice_id, dev_mode=dev_mode)
        explorer_url = verifier.get_explorer_url(result.signature) if result.signature else None
        return invoice, result, explorer_url
    finally:
        await verifier.close()


async def _resolve_lapsed(invoice_id: str) -> Invoice:
    verifier = get_verifier()
    try:
        return await resolve_lapsed(invoice_id, verifier)
    finally:
        await verifier.close()


class InvoiceCreateView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, *args, **kwargs):
        try:
            body = CreateInvoiceRequest.model_validate(request.data)
        except PydanticValidationError as exc:
            logger.debug('invalid invoice request: {}', exc)
            return _error('Missing or invalid invoice fields.', status.HTTP_400_BAD_REQUEST)

        try:
            invoice = store.create_invoice(
                recipient=body.recipient,
                amount_usd=None if body.allow_custom_amount else body.amount_usd,
                reference=body.reference,
                label=body.label or '',
                message=body.message or '',
            )
            payment_uri = build_payment_uri(invoice, memo=body.memo)
        except InvalidParameters as exc:
            logger.info('invoice creation rejected: {}', exc.message)
            return _error(exc.message, status.HTTP_400_BAD_REQUEST)

        return Response(
            {
                'invoice': invoice.snapshot(),
                'paymentUri': payment_uri,
            },
            status=status.HTTP_201_CREATED,
        )


class InvoiceDetailView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, invoice_id, *args, **kwargs):
        try:
            invoice = store.get_invoice(invoice_id)
        except NotFound as exc:
            return _error(exc.message, status.HTTP_404_NOT_FOUND)

        data = invoice.snapshot()
        data['recipientTokenAccount'] = invoice.recipient_token_account
        data['splToken'] = invoice.spl_token
        data['paymentUri'] = build_payment_uri(invoice)
        return Response(data, status=status.HTTP_200_OK)


class InvoiceStatusView(APIView):
    """
    Current status of an invoice.

    A pending invoice whose window has closed is settled here: the ledger is
    checked once (time-boxed) before the invoice is allowed to expire.
    """
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, invoice_id, *args, **kwargs):
        try:
            invoice = store.get_invoice(invoice_id)
            if is_lapsed(invoice):
                invoice = async_to_sync(_resolve_lapsed)(invoice_id)
        except NotFound as exc:
            return _error(exc.message, status.HTTP_404_NOT_FOUND)

        return Response(status_payload(invoice), status=status.HTTP_200_OK)


class InvoiceVerifyView(APIView):
    """Fallback verification against the ledger, for when the webhook is late."""
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, invoice_id, *args, **kwargs):
        try:
            invoice, result, explorer_url = async_to_sync(_run_verification)(invoice_id, _dev_mode(request))
        except NotFound as exc:
            return _error(exc.message, status.HTTP_404_NOT_FOUND)

        return Response(
            {
                'success': invoice.status == Invoice.Status.PAID,
                'status': invoice.status,
                'txSignature': invoice.paid_tx_sig,
                'payer': invoice.payer,
                'explorerUrl': explorer_url,
                'result': result.to_dict(),
                'invoice': invoice.snapshot(),
            },
            status=status.HTTP_200_OK,
        )


class InvoiceExtendView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, invoice_id, *args, **kwargs):
        try:
            extension = extend_invoice(invoice_id)
        except NotFound as exc:
            return _error(exc.message, status.HTTP_404_NOT_FOUND)
        except InvalidState as exc:
            logger.info('extension refused for invoice {}: {}', invoice_id, exc.message)
            return _error(exc.message, status.HTTP_409_CONFLICT)
        except ConcurrentUpdate as exc:
            logger.warning('extension of invoice {} not applied: {}', invoice_id, exc.message)
            return _error(exc.message, status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response(
            {
                'success': True,
                'invoiceId': invoice_id,
                'expiresAtSec': extension.expires_at_sec,
                'previousExpiresAtSec': extension.previous_expires_at_sec,
                'lapsed': extension.lapsed,
            },
            status=status.HTTP_200_OK,
        )


class InvoiceDeclineView(APIView):
    """Explicit decline by an external actor; never triggered by a timeout."""
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, invoice_id, *args, **kwargs):
        try:
            outcome = store.mark_declined(invoice_id)
        except NotFound as exc:
            return _error(exc.message, status.HTTP_404_NOT_FOUND)
        except ConcurrentUpdate as exc:
            logger.warning('decline of invoice {} not applied: {}', invoice_id, exc.message)
            return _error(exc.message, status.HTTP_503_SERVICE_UNAVAILABLE)

        invoice = outcome.invoice
        if invoice.status != Invoice.Status.DECLINED:
            return _error(f'Cannot decline invoice with status: {invoice.status}', status.HTTP_409_CONFLICT)

        if outcome.changed:
            logger.info('invoice {} declined', invoice_id)
        return Response(
            {
                'changed': outcome.changed,
                'invoice': invoice.snapshot(),
            },
            status=status.HTTP_200_OK,
        )


@require_GET
async def invoice_stream(request, invoice_id):
    try:
        await store.aget_invoice(invoice_id)
    except NotFound as exc:
        return JsonResponse({'error': exc.message}, status=404)

    logger.info('stream opened for invoice {}', invoice_id)
    response = StreamingHttpResponse(
        StatusStreamManager().stream(invoice_id),
        content_type='text/event-stream',
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response


class HeliusWebhookView(APIView):
    """
    Receiver for Helius enhanced-transaction webhooks.

    Once authenticated the provider always gets a 200: failures are logged
    and the provider's own redelivery is relied upon.
    """
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        return Response(
            {
                'service': f'{settings.INVOICE_MERCHANT_LABEL} Helius Webhook',
                'status': 'ok',
                'message': 'Use POST to send webhook events',
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request, *args, **kwargs):
        secret = settings.HELIUS_WEBHOOK_SECRET
        if not secret:
            logger.error('HELIUS_WEBHOOK_SECRET is not configured')
            return _error('Webhook not configured', status.HTTP_500_INTERNAL_SERVER_ERROR)

        provided = request.headers.get('Authorization', '')
        if not hmac.compare_digest(provided.encode(), f'Bearer {secret}'.encode()):
            logger.warning('webhook call with invalid authorization header')
            return _error('Unauthorized', status.HTTP_401_UNAUTHORIZED)

        try:
            payload = request.data
        except ParseError as exc:
            logger.error('webhook body is not valid JSON: {}', exc)
            return Response({'success': False, 'error': 'Invalid JSON body'}, status=status.HTTP_200_OK)

        results = WebhookIngestor().handle_batch(payload)
        return Response(
            {
                'success': True,
                'results': [result.to_dict() for result in results],
            },
            status=status.HTTP_200_OK,
        )


class DebugPendingView(APIView):
    """Pending invoices with their remaining time, for operators."""
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        if not settings.DEBUG_ENDPOINTS_ENABLED:
            return _error('Not found', status.HTTP_404_NOT_FOUND)

        now = store.now_sec()
        invoices = store.list_pending(now=now)
        recipient = request.query_params.get('recipient')
        merchant_ata = request.query_params.get('merchantAta')
        if recipient:
            invoices = [invoice for invoice in invoices if invoice.recipient == recipient]
        if merchant_ata:
            invoices = [invoice for invoice in invoices if invoice.recipient_token_account == merchant_ata]

        items = []
        for invoice in invoices:
            time_left = max(invoice.expires_at_sec - now, 0)
            items.append({
                **invoice.snapshot(),
                'debug': {
                    'isExpired': now > invoice.expires_at_sec,
                    'timeLeftSec': time_left,
                    'timeLeftMin': time_left // 60,
                },
            })
        return Response({'now': now, 'count': len(items), 'pending': items}, status=status.HTTP_200_OK)


class DebugPaymentRequestView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        if not settings.DEBUG_ENDPOINTS_ENABLED:
            return _error('Not found', status.HTTP_404_NOT_FOUND)

        uri = request.query_params.get('uri')
        if not uri:
            return _error('Missing uri query parameter', status.HTTP_400_BAD_REQUEST)

        parsed = decode_payment_request(uri)
        if parsed is None:
            return Response({'valid': False, 'parsed': None}, status=status.HTTP_200_OK)

        return Response(
            {
                'valid': is_valid_payment_request(uri),
                'parsed': {
                    'recipient': parsed.recipient,
                    'reference': parsed.reference,
                    'amount': format_amount(parsed.amount) if parsed.amount is not None else None,
                    'splToken': parsed.spl_token,
                    'label': parsed.label,
                    'message': parsed.message,
                    'memo': parsed.memo,
                },
            },
            status=status.HTTP_200_OK,
        )
