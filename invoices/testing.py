"""
Fixtures shared by the test modules: keys, a scripted ledger, and builders
for jsonParsed RPC transactions and Helius webhook payloads.
"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

from solders.keypair import Keypair

from invoices.events import InMemoryEventBus, InvoiceEvent
from invoices.exceptions import UpstreamUnavailable

TOKEN_PROGRAM = 'TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA'


def new_key() -> str:
    return str(Keypair().pubkey())


def parsed_transfer_tx(
    reference: str,
    payer: str,
    destination: str,
    mint: str,
    amount: Decimal,
    block_time: int,
    slot: int = 1000,
    recipient: Optional[str] = None,
    err: Any = None,
    checked: bool = True,
    inner: bool = False,
    decimals: int = 6,
) -> Dict[str, Any]:
    """A jsonParsed transaction moving ``amount`` of ``mint`` into ``destination``."""
    source = new_key()
    raw_amount = str(int(Decimal(amount).scaleb(decimals)))
    info = {'source': source, 'destination': destination, 'authority': payer}
    if checked:
        info['mint'] = mint
        info['tokenAmount'] = {
            'amount': raw_amount,
            'decimals': decimals,
            'uiAmountString': str(amount),
        }
        kind = 'transferChecked'
    else:
        info['amount'] = raw_amount
        kind = 'transfer'

    instruction = {
        'program': 'spl-token',
        'programId': TOKEN_PROGRAM,
        'parsed': {'type': kind, 'info': info},
        'stackHeight': None,
    }
    keys = [payer, source, destination, mint, reference, TOKEN_PROGRAM]
    account_keys = [
        {'pubkey': key, 'signer': index == 0, 'writable': index < 3, 'source': 'transaction'}
        for index, key in enumerate(keys)
    ]
    balance = {
        'accountIndex': 2,
        'mint': mint,
        'owner': recipient or new_key(),
        'programId': TOKEN_PROGRAM,
        'uiTokenAmount': {'amount': raw_amount, 'decimals': decimals, 'uiAmountString': str(amount)},
    }
    return {
        'slot': slot,
        'blockTime': block_time,
        'meta': {
            'err': err,
            'fee': 5000,
            'innerInstructions': [{'index': 0, 'instructions': [instruction]}] if inner else [],
            'preTokenBalances': [],
            'postTokenBalances': [balance],
        },
        'transaction': {
            'message': {
                'accountKeys': account_keys,
                'instructions': [] if inner else [instruction],
            },
            'signatures': [],
        },
    }


class FakeLedger:
    """Scripted stand-in for ``SolanaLedger``."""

    def __init__(self, delay: float = 0, failures: int = 0):
        self.delay = delay
        self.failures = failures
        self.statuses: Dict[str, List[Dict[str, Any]]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.signature_calls = 0
        self.closed = False

    def add(self, address: str, signature: str, tx: Optional[Dict[str, Any]], err: Any = None) -> None:
        slot = tx['slot'] if tx else 0
        block_time = tx['blockTime'] if tx else None
        # Newest first, as the node returns them.
        self.statuses.setdefault(address, []).insert(
            0, {'signature': signature, 'slot': slot, 'err': err, 'block_time': block_time},
        )
        if tx is not None:
            self.transactions[signature] = tx

    async def get_signatures_for_address(self, address: str, limit: int) -> List[Dict[str, Any]]:
        self.signature_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise UpstreamUnavailable('getSignaturesForAddress failed: connection refused')
        return list(self.statuses.get(address, []))[:limit]

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(signature)

    async def close(self) -> None:
        self.closed = True


def helius_event(
    signature: str,
    reference: str,
    recipient: str,
    recipient_token_account: str,
    mint: str,
    amount,
    payer: str,
    timestamp: int,
    error: Any = None,
) -> Dict[str, Any]:
    """An enhanced-transaction webhook entry for one token transfer."""
    source = new_key()
    return {
        'description': f'{payer} transferred {amount} USDC to {recipient}.',
        'type': 'TRANSFER',
        'source': 'SOLANA_PROGRAM_LIBRARY',
        'fee': 5000,
        'feePayer': payer,
        'signature': signature,
        'slot': 250000000,
        'timestamp': timestamp,
        'transactionError': error,
        'nativeTransfers': [],
        'tokenTransfers': [
            {
                'fromTokenAccount': source,
                'toTokenAccount': recipient_token_account,
                'fromUserAccount': payer,
                'toUserAccount': recipient,
                'tokenAmount': float(amount),
                'mint': mint,
                'tokenStandard': 'Fungible',
            },
        ],
        'accountData': [
            {'account': payer, 'nativeBalanceChange': -5000, 'tokenBalanceChanges': []},
            {'account': source, 'nativeBalanceChange': 0, 'tokenBalanceChanges': []},
            {'account': recipient_token_account, 'nativeBalanceChange': 0, 'tokenBalanceChanges': []},
        ],
        'instructions': [
            {
                'programId': TOKEN_PROGRAM,
                'accounts': [source, mint, recipient_token_account, payer, reference],
                'data': '',
                'innerInstructions': [],
            },
        ],
        'events': {},
    }


class RecordingEventBus(InMemoryEventBus):
    """In-process bus that also keeps every published event."""

    def __init__(self):
        super().__init__()
        self.published: List[InvoiceEvent] = []

    def publish(self, event: InvoiceEvent) -> None:
        self.published.append(event)
        super().publish(event)

    def events_for(self, invoice_id: str) -> List[str]:
        return [event.event for event in self.published if event.invoice_id == invoice_id]
