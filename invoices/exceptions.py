"""
Error taxonomy for the invoice core.
"""


class InvoiceError(Exception):
    """Base error for invoice processing."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(InvoiceError):
    """Unknown invoice id."""
    pass


class InvalidState(InvoiceError):
    """Operation is not legal for the invoice's current status."""
    pass


class InvalidParameters(InvoiceError):
    """Malformed payment-request or invoice inputs."""
    pass


class UpstreamUnavailable(InvoiceError):
    """Ledger provider or event bus could not be reached."""
    pass


class VerificationTimeout(InvoiceError):
    """Verification exceeded its overall deadline."""
    pass


class ConcurrentUpdate(InvoiceError):
    """Other writers kept winning the race for the same invoice; retry later."""
    pass
