import unittest
from decimal import Decimal
from urllib.parse import parse_qs, urlsplit

from invoices.exceptions import InvalidParameters
from invoices.payment_request import (
    USDC_MINT,
    PaymentRequest,
    decode_payment_request,
    encode_payment_request,
    format_amount,
    is_valid_payment_request,
    is_valid_public_key,
)
from invoices.testing import new_key


class PaymentRequestEncodingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.recipient = new_key()
        self.reference = new_key()

    def test_encodes_solana_pay_transfer_request(self):
        uri = encode_payment_request(PaymentRequest(
            recipient=self.recipient,
            reference=self.reference,
            amount=Decimal('10.00'),
            label='Wino Business',
            message='Invoice 1234abcd',
        ))

        parts = urlsplit(uri)
        self.assertEqual(parts.scheme, 'solana')
        self.assertEqual(parts.path, self.recipient)
        query = parse_qs(parts.query)
        self.assertEqual(query['spl-token'], [USDC_MINT])
        self.assertEqual(query['amount'], ['10.00'])
        self.assertEqual(query['reference'], [self.reference])
        self.assertEqual(query['label'], ['Wino Business'])
        self.assertEqual(query['message'], ['Invoice 1234abcd'])
        self.assertNotIn('memo', query)

    def test_metadata_is_percent_encoded(self):
        uri = encode_payment_request(PaymentRequest(
            recipient=self.recipient,
            reference=self.reference,
            label='Café & Bar',
            message='Table #4',
        ))

        self.assertIn('label=Caf%C3%A9%20%26%20Bar', uri)
        self.assertIn('message=Table%20%234', uri)

    def test_custom_amount_omits_amount(self):
        uri = encode_payment_request(PaymentRequest(recipient=self.recipient, reference=self.reference))

        self.assertNotIn('amount=', uri)
        self.assertIn(f'reference={self.reference}', uri)

    def test_small_amount_is_never_in_exponent_form(self):
        self.assertEqual(format_amount(Decimal('0.000001')), '0.000001')
        uri = encode_payment_request(PaymentRequest(
            recipient=self.recipient, reference=self.reference, amount=Decimal('1E-6'),
        ))
        self.assertIn('amount=0.000001', uri)

    def test_rejects_malformed_recipient(self):
        with self.assertRaises(InvalidParameters):
            encode_payment_request(PaymentRequest(recipient='not-a-key', reference=self.reference))

    def test_rejects_malformed_reference(self):
        with self.assertRaises(InvalidParameters):
            encode_payment_request(PaymentRequest(recipient=self.recipient, reference='0OIl'))

    def test_rejects_non_positive_amount(self):
        with self.assertRaises(InvalidParameters):
            encode_payment_request(PaymentRequest(
                recipient=self.recipient, reference=self.reference, amount=Decimal('0'),
            ))


class PaymentRequestDecodingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.recipient = new_key()
        self.reference = new_key()

    def test_decode_reverses_encode(self):
        requests = [
            PaymentRequest(recipient=self.recipient, reference=self.reference),
            PaymentRequest(
                recipient=self.recipient,
                reference=self.reference,
                amount=Decimal('12.5'),
                label='Wino Business',
                message='Invoice 5f2c',
                memo='order-77',
            ),
            PaymentRequest(recipient=self.recipient, reference=self.reference, label='', message='', memo=''),
        ]
        for request in requests:
            with self.subTest(request=request):
                self.assertEqual(decode_payment_request(encode_payment_request(request)), request)

    def test_empty_metadata_is_omitted(self):
        request = PaymentRequest(recipient=self.recipient, reference=self.reference, label='', memo='')

        uri = encode_payment_request(request)

        self.assertNotIn('label=', uri)
        self.assertNotIn('memo=', uri)
        self.assertIsNone(request.label)
        self.assertIsNone(request.memo)

    def test_other_scheme_is_not_a_fault(self):
        self.assertIsNone(decode_payment_request(f'bitcoin:{self.recipient}?reference={self.reference}'))
        self.assertIsNone(decode_payment_request(f'https://example.com/{self.recipient}'))

    def test_structural_mismatches_return_none(self):
        self.assertIsNone(decode_payment_request(f'solana:{self.recipient}'))
        self.assertIsNone(decode_payment_request(f'solana:{self.recipient}?reference={self.reference}&amount=abc'))
        self.assertIsNone(decode_payment_request(f'solana:{self.recipient}?reference={self.reference}&amount=-1'))
        self.assertIsNone(decode_payment_request(''))
        self.assertIsNone(decode_payment_request(None))

    def test_validity_checks_both_keys(self):
        good = f'solana:{self.recipient}?reference={self.reference}'
        bad_reference = f'solana:{self.recipient}?reference=short'
        bad_recipient = f'solana:nope?reference={self.reference}'

        self.assertTrue(is_valid_payment_request(good))
        self.assertFalse(is_valid_payment_request(bad_reference))
        self.assertFalse(is_valid_payment_request(bad_recipient))
        self.assertFalse(is_valid_payment_request('mailto:someone@example.com'))

    def test_public_key_validation(self):
        self.assertTrue(is_valid_public_key(USDC_MINT))
        self.assertFalse(is_valid_public_key(''))
        self.assertFalse(is_valid_public_key('0' * 44))
        self.assertFalse(is_valid_public_key('3yZe7d'))
        self.assertFalse(is_valid_public_key(None))
