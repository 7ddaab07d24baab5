import asyncio
import threading
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import redis
from django.test import TransactionTestCase

from invoices import store
from invoices.events import (
    InMemoryEventBus,
    InvoiceEvent,
    RedisEventBus,
    channel_for,
    create_event_bus,
    set_event_bus,
)
from invoices.exceptions import UpstreamUnavailable
from invoices.models import Invoice
from invoices.testing import new_key


class InvoiceEventTests(unittest.TestCase):
    def test_json_shape(self):
        event = InvoiceEvent(invoice_id='inv-1', event='paid')

        self.assertEqual(event.to_json(), '{"invoiceId": "inv-1", "event": "paid"}')
        self.assertEqual(InvoiceEvent.from_json(b'{"invoiceId": "inv-1", "event": "paid"}'), event)

    def test_channel_per_invoice(self):
        self.assertEqual(channel_for('inv-1'), 'invoice-events:inv-1')


class CreateEventBusTests(unittest.TestCase):
    def test_backend_selection(self):
        self.assertIsInstance(create_event_bus(''), InMemoryEventBus)
        self.assertIsInstance(create_event_bus('memory://'), InMemoryEventBus)
        self.assertIsInstance(create_event_bus('redis://localhost:6379/0'), RedisEventBus)

    def test_unknown_scheme(self):
        with self.assertRaises(ValueError):
            create_event_bus('amqp://localhost')


class InMemoryEventBusTests(unittest.IsolatedAsyncioTestCase):
    async def test_delivers_only_to_matching_invoice(self):
        bus = InMemoryEventBus()
        first = await bus.subscribe('inv-1')
        second = await bus.subscribe('inv-2')

        bus.publish(InvoiceEvent('inv-1', 'paid'))

        self.assertEqual(await first.get(timeout=1), InvoiceEvent('inv-1', 'paid'))
        self.assertIsNone(await second.get(timeout=0.01))

    async def test_get_times_out_with_none(self):
        bus = InMemoryEventBus()
        subscription = await bus.subscribe('inv-1')

        self.assertIsNone(await subscription.get(timeout=0.01))

    async def test_publish_from_another_thread(self):
        bus = InMemoryEventBus()
        subscription = await bus.subscribe('inv-1')

        thread = threading.Thread(target=bus.publish, args=(InvoiceEvent('inv-1', 'expired'),))
        thread.start()
        thread.join()

        self.assertEqual((await subscription.get(timeout=1)).event, 'expired')

    async def test_close_releases_registration_once(self):
        bus = InMemoryEventBus()
        subscription = await bus.subscribe('inv-1')
        self.assertEqual(bus.subscriber_count('inv-1'), 1)

        await subscription.close()
        await subscription.close()

        self.assertTrue(subscription.closed)
        self.assertEqual(bus.subscriber_count('inv-1'), 0)
        bus.publish(InvoiceEvent('inv-1', 'paid'))
        self.assertIsNone(await subscription.get(timeout=0.01))


class RedisEventBusTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.bus = RedisEventBus('redis://localhost:6379/0')

    def test_publish_uses_invoice_channel(self):
        with patch.object(self.bus._client, 'publish', return_value=1) as publish:
            self.bus.publish(InvoiceEvent('inv-1', 'paid'))

        publish.assert_called_once_with('invoice-events:inv-1', '{"invoiceId": "inv-1", "event": "paid"}')

    def test_publish_failure_is_upstream_unavailable(self):
        with patch.object(self.bus._client, 'publish', side_effect=redis.ConnectionError('refused')):
            with self.assertRaises(UpstreamUnavailable):
                self.bus.publish(InvoiceEvent('inv-1', 'paid'))

    def test_ping_failure_is_unhealthy(self):
        with patch.object(self.bus._client, 'ping', side_effect=redis.ConnectionError('refused')):
            self.assertFalse(self.bus.ping())

    def _fake_client(self, messages):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(side_effect=messages)
        client = MagicMock()
        client.pubsub.return_value = pubsub
        client.aclose = AsyncMock()
        return client, pubsub

    async def test_subscription_reads_and_releases(self):
        client, pubsub = self._fake_client([
            {'type': 'subscribe', 'data': 1},
            {'type': 'message', 'data': b'{"invoiceId": "inv-1", "event": "paid"}'},
        ])

        with patch('invoices.events.aioredis.Redis.from_url', return_value=client):
            subscription = await self.bus.subscribe('inv-1')
            event = await subscription.get(timeout=1)
            await subscription.close()
            await subscription.close()

        pubsub.subscribe.assert_awaited_once_with('invoice-events:inv-1')
        self.assertEqual(event, InvoiceEvent('inv-1', 'paid'))
        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()
        client.aclose.assert_awaited_once()

    async def test_malformed_messages_are_skipped(self):
        client, _ = self._fake_client([
            {'type': 'message', 'data': b'[1]'},
            {'type': 'message', 'data': b'not json'},
            {'type': 'message', 'data': b'{"invoiceId": "inv-1"}'},
            {'type': 'message', 'data': b'{"invoiceId": "inv-1", "event": "expired"}'},
        ])

        with patch('invoices.events.aioredis.Redis.from_url', return_value=client):
            subscription = await self.bus.subscribe('inv-1')
            event = await subscription.get(timeout=1)
            await subscription.close()

        self.assertEqual(event, InvoiceEvent('inv-1', 'expired'))

    async def test_subscribe_failure_releases_connection(self):
        client, pubsub = self._fake_client([])
        pubsub.subscribe.side_effect = redis.ConnectionError('refused')

        with patch('invoices.events.aioredis.Redis.from_url', return_value=client):
            with self.assertRaises(UpstreamUnavailable):
                await self.bus.subscribe('inv-1')

        client.aclose.assert_awaited_once()


class BrokenBus(InMemoryEventBus):
    def publish(self, event):
        raise UpstreamUnavailable('Event bus publish failed: connection refused')


class StorePublishTests(TransactionTestCase):
    def test_bus_outage_does_not_undo_transition(self):
        set_event_bus(BrokenBus())
        self.addCleanup(set_event_bus, None)
        invoice = store.create_invoice(new_key(), amount_usd='1.00')

        outcome = store.mark_paid(invoice.id, signature='sig-1', payer=new_key())

        self.assertTrue(outcome.status_changed)
        self.assertEqual(store.get_invoice(invoice.id).status, Invoice.Status.PAID)

    def test_notification_follows_committed_state(self):
        seen = []

        class ReadingBus(InMemoryEventBus):
            def publish(self, event):
                seen.append(store.get_invoice(event.invoice_id).status)

        set_event_bus(ReadingBus())
        self.addCleanup(set_event_bus, None)
        invoice = store.create_invoice(new_key(), amount_usd='1.00')

        store.mark_paid(invoice.id, signature='sig-1', payer=new_key())

        self.assertEqual(seen, ['paid'])
