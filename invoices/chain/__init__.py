"""
Ledger-side payment verification.
"""
from .base import ChainVerifier, VerificationResult
from .solana_chain import SolanaLedger, SolanaVerifier
from .factory import VerifierFactory, get_chain_config, get_verifier

__all__ = [
    'ChainVerifier',
    'VerificationResult',
    'SolanaLedger',
    'SolanaVerifier',
    'VerifierFactory',
    'get_chain_config',
    'get_verifier',
]
