"""
Solana Pay transfer-request URIs.

Format:
solana:<recipient>?spl-token=<mint>&amount=<amount>&reference=<reference>&label=<label>&message=<message>&memo=<memo>

The reference is mandatory: it is the only key that ties an on-chain transfer
back to one invoice. An omitted amount asks the wallet to let the customer
enter one.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import parse_qs, quote, urlencode, urlsplit

import base58

from invoices.exceptions import InvalidParameters

SCHEME = 'solana'

USDC_MINT = 'EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v'
USDC_DEVNET_MINT = '4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU'
USDC_DECIMALS = 6


@dataclass(frozen=True)
class PaymentRequest:
    """Parameters of a transfer request."""
    recipient: str
    reference: str
    amount: Optional[Decimal] = None
    spl_token: Optional[str] = USDC_MINT
    label: Optional[str] = None
    message: Optional[str] = None
    memo: Optional[str] = None

    def __post_init__(self):
        # An empty label, message or memo is not sent, so it decodes as None.
        for name in ('label', 'message', 'memo'):
            if getattr(self, name) == '':
                object.__setattr__(self, name, None)


def is_valid_public_key(value) -> bool:
    """Validate Solana address format (base58, 32 bytes)."""
    if not isinstance(value, str) or not value:
        return False
    try:
        decoded = base58.b58decode(value)
        return len(decoded) == 32
    except ValueError:
        return False


def format_amount(amount: Decimal) -> str:
    # Wallets reject exponent notation.
    return format(amount, 'f')


def encode_payment_request(request: PaymentRequest) -> str:
    """
    Build a transfer-request URI.

    Raises:
        InvalidParameters: recipient, reference or mint is not a public key,
            or the amount is not a positive number.
    """
    if not is_valid_public_key(request.recipient):
        raise InvalidParameters('Invalid recipient address')
    if not is_valid_public_key(request.reference):
        raise InvalidParameters('Invalid reference public key')
    if request.spl_token is not None and not is_valid_public_key(request.spl_token):
        raise InvalidParameters('Invalid SPL token mint')

    query = []
    if request.spl_token is not None:
        query.append(('spl-token', request.spl_token))

    if request.amount is not None:
        try:
            amount = Decimal(str(request.amount))
        except InvalidOperation as exc:
            raise InvalidParameters(f'Invalid amount: {request.amount}') from exc
        if not amount.is_finite() or amount <= 0:
            raise InvalidParameters(f'Amount must be positive: {request.amount}')
        query.append(('amount', format_amount(amount)))

    query.append(('reference', request.reference))

    for key in ('label', 'message', 'memo'):
        value = getattr(request, key)
        if value:
            query.append((key, value))

    return f'{SCHEME}:{request.recipient}?{urlencode(query, quote_via=quote)}'


def decode_payment_request(uri: str) -> Optional[PaymentRequest]:
    """
    Parse a transfer-request URI.

    Returns None for anything that is not a well-formed Solana Pay transfer
    request; malformed input is expected here, not a fault.
    """
    if not isinstance(uri, str):
        return None

    try:
        parts = urlsplit(uri)
    except ValueError:
        return None

    if parts.scheme != SCHEME or not parts.path or parts.netloc:
        return None

    params = parse_qs(parts.query)

    def first(key: str) -> Optional[str]:
        values = params.get(key)
        return values[0] if values else None

    reference = first('reference')
    if not reference:
        return None

    amount = None
    raw_amount = first('amount')
    if raw_amount is not None:
        try:
            amount = Decimal(raw_amount)
        except InvalidOperation:
            return None
        if not amount.is_finite() or amount <= 0:
            return None

    return PaymentRequest(
        recipient=parts.path,
        reference=reference,
        amount=amount,
        spl_token=first('spl-token'),
        label=first('label'),
        message=first('message'),
        memo=first('memo'),
    )


def is_valid_payment_request(uri: str) -> bool:
    parsed = decode_payment_request(uri)
    if parsed is None:
        return False
    return is_valid_public_key(parsed.recipient) and is_valid_public_key(parsed.reference)
