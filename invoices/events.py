"""
Event bus for invoice state changes.

Writers (webhook, verifier, expiry) publish ``{invoiceId, event}`` after the
store has committed a status change; readers (live status streams) subscribe
by invoice id and re-read the invoice on every notification. The payload is a
wake-up signal, never the source of truth.
"""
import asyncio
import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Set

import redis
import redis.asyncio as aioredis
from django.conf import settings
from loguru import logger

from invoices.exceptions import UpstreamUnavailable

CHANNEL_PREFIX = 'invoice-events:'


def channel_for(invoice_id: str) -> str:
    return f'{CHANNEL_PREFIX}{invoice_id}'


@dataclass(frozen=True)
class InvoiceEvent:
    invoice_id: str
    event: str

    def to_json(self) -> str:
        return json.dumps({'invoiceId': self.invoice_id, 'event': self.event})

    @classmethod
    def from_json(cls, raw) -> 'InvoiceEvent':
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        data = json.loads(raw)
        return cls(invoice_id=str(data['invoiceId']), event=str(data['event']))


class Subscription(ABC):
    """Interest in one invoice id; must be closed to release the registration."""

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        self.closed = False

    @abstractmethod
    async def get(self, timeout: float) -> Optional[InvoiceEvent]:
        """Wait up to ``timeout`` seconds for the next event; None on timeout."""
        pass

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._release()

    @abstractmethod
    async def _release(self) -> None:
        pass


class EventBus(ABC):

    @abstractmethod
    def publish(self, event: InvoiceEvent) -> None:
        """
        Publish an event. Called from synchronous store code.

        Raises:
            UpstreamUnavailable: the bus backend could not be reached.
        """
        pass

    @abstractmethod
    async def subscribe(self, invoice_id: str) -> Subscription:
        pass

    def ping(self) -> bool:
        return True


class _MemorySubscription(Subscription):

    def __init__(self, bus: 'InMemoryEventBus', invoice_id: str, loop: asyncio.AbstractEventLoop):
        super().__init__(invoice_id)
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, event: InvoiceEvent) -> None:
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # The subscriber's loop is gone.
            logger.debug('dropping event for closed loop: invoice {}', self.invoice_id)
            self._bus._discard(self)

    async def get(self, timeout: float) -> Optional[InvoiceEvent]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def _release(self) -> None:
        self._bus._discard(self)


class InMemoryEventBus(EventBus):
    """Single-process bus. Publishing is safe from any thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[_MemorySubscription]] = defaultdict(set)

    def publish(self, event: InvoiceEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(event.invoice_id, ()))
        for subscription in subscribers:
            subscription.deliver(event)
        logger.debug('published {} for invoice {} to {} subscriber(s)',
                     event.event, event.invoice_id, len(subscribers))

    async def subscribe(self, invoice_id: str) -> Subscription:
        subscription = _MemorySubscription(self, invoice_id, asyncio.get_running_loop())
        with self._lock:
            self._subscribers[invoice_id].add(subscription)
        return subscription

    def subscriber_count(self, invoice_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(invoice_id, ()))

    def _discard(self, subscription: _MemorySubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.invoice_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.invoice_id]


class _RedisSubscription(Subscription):

    def __init__(self, invoice_id: str, client: aioredis.Redis, pubsub):
        super().__init__(invoice_id)
        self._client = client
        self._pubsub = pubsub

    async def get(self, timeout: float) -> Optional[InvoiceEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=remaining,
                )
            except redis.RedisError as exc:
                raise UpstreamUnavailable(f'Event bus read failed: {exc}') from exc
            if message is None or message.get('type') != 'message':
                continue
            try:
                return InvoiceEvent.from_json(message['data'])
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning('ignoring malformed invoice event on {}: {}',
                               channel_for(self.invoice_id), exc)

    async def _release(self) -> None:
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except redis.RedisError as exc:
            logger.warning('failed to unsubscribe from {}: {}', channel_for(self.invoice_id), exc)
        finally:
            await self._client.aclose()


class RedisEventBus(EventBus):
    """Cross-process bus on Redis pub/sub, one channel per invoice id."""

    def __init__(self, url: str):
        self.url = url
        self._client = redis.Redis.from_url(url)

    def publish(self, event: InvoiceEvent) -> None:
        try:
            receivers = self._client.publish(channel_for(event.invoice_id), event.to_json())
        except redis.RedisError as exc:
            raise UpstreamUnavailable(f'Event bus publish failed: {exc}') from exc
        logger.debug('published {} for invoice {} to {} subscriber(s)',
                     event.event, event.invoice_id, receivers)

    async def subscribe(self, invoice_id: str) -> Subscription:
        client = aioredis.Redis.from_url(self.url)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel_for(invoice_id))
        except redis.RedisError as exc:
            await pubsub.aclose()
            await client.aclose()
            raise UpstreamUnavailable(f'Event bus subscribe failed: {exc}') from exc
        return _RedisSubscription(invoice_id, client, pubsub)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.error('event bus ping failed: {}', exc)
            return False


def create_event_bus(url: str) -> EventBus:
    if not url or url.startswith('memory://'):
        return InMemoryEventBus()
    if url.startswith(('redis://', 'rediss://', 'unix://')):
        return RedisEventBus(url)
    raise ValueError(f'Unsupported event bus URL: {url}')


_bus: Optional[EventBus] = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    global _bus
    with _bus_lock:
        if _bus is None:
            _bus = create_event_bus(getattr(settings, 'INVOICE_EVENT_BUS_URL', ''))
            logger.info('invoice event bus: {}', type(_bus).__name__)
        return _bus


def set_event_bus(bus: Optional[EventBus]) -> None:
    """Replace the process-wide bus (None rebuilds it from settings on next use)."""
    global _bus
    with _bus_lock:
        _bus = bus
