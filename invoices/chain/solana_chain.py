"""
Solana chain verifier.

Payment lookups follow the Solana Pay transfer-request flow: the payer's
wallet attaches the invoice's reference key to the transfer as a read-only
account, so the transactions paying an invoice are exactly the transactions
listed for its reference address. No scan of the merchant's token account is
needed.
"""
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

import httpx
from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from solders.signature import Signature

from invoices.exceptions import UpstreamUnavailable
from invoices.payment_request import USDC_DECIMALS, is_valid_public_key

from .base import ChainVerifier, VerificationResult

TOKEN_PROGRAMS = {'spl-token', 'spl-token-2022'}
TRANSFER_TYPES = {'transfer', 'transferChecked'}

RPC_ERRORS = (SolanaRpcException, RPCException, httpx.HTTPError, OSError)


class SolanaLedger:
    """
    Read-only access to a Solana RPC node.

    Responses are returned as plain JSON-shaped dicts so matching logic never
    depends on client object types.
    """

    def __init__(self, rpc_url: str, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client: Optional[AsyncClient] = None

    def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=self.timeout)
        return self._client

    async def get_signatures_for_address(self, address: str, limit: int) -> List[Dict[str, Any]]:
        """Newest-first signature statuses for transactions mentioning ``address``."""
        try:
            resp = await self._get_client().get_signatures_for_address(
                Pubkey.from_string(address),
                limit=limit,
                commitment=Confirmed,
            )
        except RPC_ERRORS as exc:
            raise UpstreamUnavailable(f'getSignaturesForAddress failed: {exc}') from exc

        return [
            {
                'signature': str(item.signature),
                'slot': item.slot,
                'err': str(item.err) if item.err is not None else None,
                'block_time': item.block_time,
            }
            for item in resp.value
        ]

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """jsonParsed transaction, or None when the node does not have it yet."""
        try:
            resp = await self._get_client().get_transaction(
                Signature.from_string(signature),
                encoding='jsonParsed',
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except RPC_ERRORS as exc:
            raise UpstreamUnavailable(f'getTransaction failed for {signature}: {exc}') from exc

        if resp.value is None:
            return None
        return json.loads(resp.to_json()).get('result')

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


@dataclass
class _Match:
    signature: str
    payer: Optional[str]
    amount: Decimal
    block_time: Optional[int]


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = tx['transaction']['message'].get('accountKeys') or []
    return [key['pubkey'] if isinstance(key, dict) else key for key in keys]


def _instructions(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Top-level instructions followed by inner (CPI) instructions."""
    yield from tx['transaction']['message'].get('instructions') or []
    for group in (tx.get('meta') or {}).get('innerInstructions') or []:
        yield from group.get('instructions') or []


def _token_balance(tx: Dict[str, Any], account: Optional[str], key: str) -> Optional[Dict[str, Any]]:
    if not account:
        return None
    keys = _account_keys(tx)
    for balance in (tx.get('meta') or {}).get(key) or []:
        index = balance.get('accountIndex')
        if index is not None and index < len(keys) and keys[index] == account:
            return balance
    return None


def find_token_transfer(tx: Dict[str, Any], destination: str, mint: str) -> Optional[Dict[str, Any]]:
    """
    Find an SPL token transfer of ``mint`` into ``destination``.

    Returns a dict with ``amount`` (Decimal, UI units), ``payer`` and
    ``source``, or None.
    """
    for instruction in _instructions(tx):
        parsed = instruction.get('parsed')
        if instruction.get('program') not in TOKEN_PROGRAMS or not isinstance(parsed, dict):
            continue
        if parsed.get('type') not in TRANSFER_TYPES:
            continue

        info = parsed.get('info') or {}
        if info.get('destination') != destination:
            continue

        if parsed['type'] == 'transferChecked':
            if info.get('mint') != mint:
                continue
            token_amount = info.get('tokenAmount') or {}
            raw_amount = token_amount.get('amount')
            decimals = token_amount.get('decimals', USDC_DECIMALS)
        else:
            # Plain transfers carry no mint; the destination's balance entry does.
            balance = _token_balance(tx, destination, 'postTokenBalances')
            if balance is not None and balance.get('mint') != mint:
                continue
            raw_amount = info.get('amount')
            decimals = balance['uiTokenAmount']['decimals'] if balance else USDC_DECIMALS

        if raw_amount is None:
            continue
        amount = Decimal(int(raw_amount)).scaleb(-int(decimals))

        source = info.get('source')
        source_balance = _token_balance(tx, source, 'preTokenBalances')
        keys = _account_keys(tx)
        payer = (
            info.get('authority')
            or info.get('multisigAuthority')
            or (source_balance or {}).get('owner')
            or (keys[0] if keys else None)
        )
        return {'amount': amount, 'payer': payer, 'source': source}

    return None


class SolanaVerifier(ChainVerifier):
    """
    Verifier for Solana Pay transfer requests.

    A candidate pays the invoice when it succeeded on-chain, mentions the
    invoice's reference, and transfers the invoice's mint into the
    recipient's token account for the expected amount (any positive amount
    for custom-amount invoices).
    """

    DEFAULT_TOLERANCE = Decimal('0.000001')
    DEFAULT_SIGNATURE_LIMIT = 25

    def __init__(self, config: Dict[str, Any], ledger: Optional[SolanaLedger] = None):
        super().__init__(config)
        self.tolerance = Decimal(str(config.get('amount_tolerance', self.DEFAULT_TOLERANCE)))
        self.signature_limit = int(config.get('signature_limit', self.DEFAULT_SIGNATURE_LIMIT))
        self.ledger = ledger or SolanaLedger(
            config.get('rpc_url', 'https://api.mainnet-beta.solana.com'),
            timeout=float(config.get('rpc_timeout_seconds', 10.0)),
        )

    @property
    def chain_name(self) -> str:
        return 'solana'

    def validate_address(self, address: str) -> bool:
        return is_valid_public_key(address)

    async def verify(self, invoice, dev_mode: bool = False) -> VerificationResult:
        debug: Dict[str, Any] = {
            'checkedAt': int(time.time()),
            'txsChecked': 0,
            'transfersFoundCount': 0,
            'rejectReasons': {},
            'invoiceCreatedAtSec': invoice.created_at_sec,
        }

        def reject(reason: str) -> None:
            debug['rejectReasons'][reason] = debug['rejectReasons'].get(reason, 0) + 1

        statuses = await self.ledger.get_signatures_for_address(invoice.reference, self.signature_limit)
        debug['txsChecked'] = len(statuses)
        if statuses:
            debug['lastSignatureChecked'] = statuses[0]['signature']

        # The node lists newest first; walk the ledger oldest first.
        ordered = [
            status for _, status in sorted(
                enumerate(statuses),
                key=lambda pair: (pair[1].get('slot') or 0, -pair[0]),
            )
        ]

        matches: List[_Match] = []
        for status in ordered:
            signature = status['signature']
            if status.get('err') is not None:
                reject('tx_failed')
                continue

            tx = await self.ledger.get_transaction(signature)
            if not tx:
                reject('tx_not_found')
                continue

            try:
                if (tx.get('meta') or {}).get('err') is not None:
                    reject('tx_failed')
                    continue
                if invoice.reference not in _account_keys(tx):
                    reject('reference_missing')
                    continue
                transfer = find_token_transfer(tx, invoice.recipient_token_account, invoice.spl_token)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error('failed to parse transaction {} for invoice {}: {}', signature, invoice.id, exc)
                reject('parse_error')
                continue

            if transfer is None:
                reject('no_matching_transfer')
                continue
            debug['transfersFoundCount'] += 1

            amount = transfer['amount']
            if invoice.amount_usd is not None:
                if abs(amount - invoice.amount_usd) > self.tolerance:
                    logger.debug('tx {} amount {} does not match invoice {} amount {}',
                                 signature, amount, invoice.id, invoice.amount_usd)
                    reject('amount_mismatch')
                    continue
            elif amount <= 0:
                reject('amount_zero')
                continue

            matches.append(_Match(
                signature=signature,
                payer=transfer['payer'],
                amount=amount,
                block_time=tx.get('blockTime') or status.get('block_time'),
            ))

        if not matches:
            logger.debug('no payment found for invoice {} ({} candidate(s))', invoice.id, len(statuses))
            return VerificationResult(paid=False, debug=debug if dev_mode else None)

        chosen = matches[0]
        needs_review = len(matches) > 1
        if needs_review:
            logger.warning('invoice {} has {} matching transactions, earliest {} chosen for review',
                           invoice.id, len(matches), chosen.signature)
        logger.info('payment found for invoice {}: {} {} from {}',
                    invoice.id, chosen.amount, chosen.signature, chosen.payer)

        return VerificationResult(
            paid=True,
            signature=chosen.signature,
            payer=chosen.payer,
            matched_amount=chosen.amount,
            block_time=chosen.block_time,
            needs_review=needs_review,
            candidates=[match.signature for match in matches],
            debug=debug if dev_mode else None,
        )

    async def close(self) -> None:
        await self.ledger.close()

    def get_explorer_url(self, tx_hash: str) -> str:
        """Get Solscan explorer URL."""
        if self.config.get('cluster') == 'devnet':
            return f"https://solscan.io/tx/{tx_hash}?cluster=devnet"
        return f"https://solscan.io/tx/{tx_hash}"
