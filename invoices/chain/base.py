"""
Base chain verifier interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from invoices.payment_request import format_amount


@dataclass
class VerificationResult:
    """Result of looking an invoice's payment up on the ledger."""
    paid: bool
    signature: Optional[str] = None
    payer: Optional[str] = None
    matched_amount: Optional[Decimal] = None
    block_time: Optional[int] = None
    needs_review: bool = False
    candidates: List[str] = field(default_factory=list)
    timed_out: bool = False
    debug: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'paid': self.paid,
            'signature': self.signature,
            'payer': self.payer,
            'matchedAmount': format_amount(self.matched_amount) if self.matched_amount is not None else None,
            'blockTime': self.block_time,
            'needsReview': self.needs_review,
            'timedOut': self.timed_out,
        }
        if self.debug is not None:
            data['debug'] = self.debug
        return data


class ChainVerifier(ABC):
    """
    Abstract base class for ledger-side payment lookups.
    Each chain implements this interface; verifiers never move funds.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the verifier.

        Args:
            config: Chain-specific configuration (RPC URL, token mint, limits)
        """
        self.config = config

    @property
    @abstractmethod
    def chain_name(self) -> str:
        """Return the chain name (e.g., 'solana')."""
        pass

    @abstractmethod
    async def verify(self, invoice, dev_mode: bool = False) -> VerificationResult:
        """
        Look for a confirmed transfer that pays the invoice.

        A miss is the normal "still pending" answer, not an error, and must
        stay cheap enough to call on every poll.

        Args:
            invoice: Pending invoice to check
            dev_mode: Attach matching diagnostics to the result

        Returns:
            VerificationResult

        Raises:
            UpstreamUnavailable: the ledger provider could not be reached
        """
        pass

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        pass

    def get_explorer_url(self, tx_hash: str) -> str:
        return f"{self.config.get('explorer_url', '')}/tx/{tx_hash}"

    async def close(self) -> None:
        """Release network clients held by the verifier."""
        pass
