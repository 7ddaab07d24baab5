"""
Live invoice status streams (server-sent events).
"""
import asyncio
import json
from typing import AsyncIterator, Optional

from django.conf import settings
from loguru import logger

from invoices import store
from invoices.events import EventBus, Subscription, get_event_bus
from invoices.exceptions import UpstreamUnavailable


def sse_frame(payload: dict) -> str:
    return f'data: {json.dumps(payload)}\n\n'


class StatusStreamManager:
    """
    Push an invoice's state to one client until it is final.

    The stream sends the current snapshot first, then a fresh read of the
    invoice after every bus notification that changed it. It ends on a
    terminal status, on the ceiling, or when the client goes away; the bus
    subscription is released in every case.
    """

    def __init__(self, bus: Optional[EventBus] = None, ceiling_seconds: Optional[float] = None):
        self.bus = bus or get_event_bus()
        self.ceiling_seconds = (
            ceiling_seconds if ceiling_seconds is not None else settings.INVOICE_STREAM_CEILING_SECONDS
        )

    async def _subscribe(self, invoice_id: str) -> Optional[Subscription]:
        try:
            return await self.bus.subscribe(invoice_id)
        except UpstreamUnavailable as exc:
            logger.error('stream for invoice {} cannot subscribe: {}', invoice_id, exc.message)
            return None

    async def stream(self, invoice_id: str) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ceiling_seconds
        seq = 0
        reason = 'client_disconnected'

        # Subscribe before the first read so no change can slip in between.
        subscription = await self._subscribe(invoice_id)
        try:
            invoice = await store.aget_invoice(invoice_id)
            last = invoice.snapshot()
            seq += 1
            yield sse_frame({**last, 'seq': seq})

            if invoice.is_terminal:
                reason = f'already_{invoice.status}'
                return
            if subscription is None:
                reason = 'bus_unavailable'
                return

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    reason = 'ceiling'
                    return
                try:
                    event = await subscription.get(remaining)
                except UpstreamUnavailable as exc:
                    logger.error('stream for invoice {} lost the event bus: {}', invoice_id, exc.message)
                    reason = 'bus_unavailable'
                    return
                if event is None:
                    continue

                logger.debug('stream for invoice {} notified: {}', invoice_id, event.event)
                invoice = await store.aget_invoice(invoice_id)
                current = invoice.snapshot()
                if current != last:
                    last = current
                    seq += 1
                    yield sse_frame({**current, 'seq': seq})
                if invoice.is_terminal:
                    reason = invoice.status
                    return
        finally:
            if subscription is not None:
                await subscription.close()
            logger.info('stream for invoice {} closed after {} frame(s): {}', invoice_id, seq, reason)
