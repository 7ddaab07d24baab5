"""
Factory for creating chain verifiers.
"""
from typing import Any, Dict, Optional, Type

from django.conf import settings

from invoices.payment_request import USDC_DEVNET_MINT, USDC_MINT

from .base import ChainVerifier
from .solana_chain import SolanaVerifier


def get_chain_config(network: Optional[str] = None) -> Dict[str, Any]:
    """
    Get chain-specific configuration from Django settings, keyed by network name.
    """
    network_lower = (network or settings.SOLANA_NETWORK).lower().strip()
    if network_lower not in ('solana', 'solana-devnet'):
        raise ValueError(f'Unsupported network: {network_lower}')

    devnet = network_lower == 'solana-devnet'
    return {
        'network': network_lower,
        'cluster': 'devnet' if devnet else 'mainnet-beta',
        'rpc_url': settings.SOLANA_RPC_URL or (
            'https://api.devnet.solana.com' if devnet else 'https://api.mainnet-beta.solana.com'
        ),
        'spl_token': settings.SOLANA_SPL_TOKEN_MINT or (USDC_DEVNET_MINT if devnet else USDC_MINT),
        'amount_tolerance': settings.INVOICE_AMOUNT_TOLERANCE,
        'signature_limit': settings.INVOICE_SIGNATURE_SCAN_LIMIT,
    }


class VerifierFactory:
    """Factory to create chain verifiers based on network name."""

    _verifiers: Dict[str, Type[ChainVerifier]] = {
        'solana': SolanaVerifier,
        'solana-devnet': SolanaVerifier,
    }

    @classmethod
    def create(cls, network: str, config: Dict[str, Any] = None) -> ChainVerifier:
        """
        Create a verifier for the specified network.

        Raises:
            ValueError: If network is not supported
        """
        network_lower = network.lower().strip()

        verifier_class = cls._verifiers.get(network_lower)
        if verifier_class is None:
            supported = ', '.join(cls._verifiers.keys())
            raise ValueError(
                f"Unsupported network: {network}. "
                f"Supported networks: {supported}"
            )

        return verifier_class(config or {})


def get_verifier(network: Optional[str] = None) -> ChainVerifier:
    """Build the verifier for the configured (or given) network."""
    config = get_chain_config(network)
    return VerifierFactory.create(config['network'], config)
