"""End-to-end tests for sending and receiving private messages through a relay."""
import asyncio

import pytest

from conftest import wait_until
from nostrmem.models.core import KIND_PRIVATE_DIRECT_MESSAGE
from nostrmem.services.conversation import ReceiveTimeout
from nostrmem.utils.identity import InvalidKeyEncoding
from nostrmem.utils.timestamp_utils import now_seconds


async def wait_for_subscriptions(relay, count):
    await wait_until(lambda: sum(len(subscriptions) for subscriptions in relay.clients.values()) >= count)


class TestSend:

    @pytest.mark.asyncio
    async def test_send_publishes_one_gift_wrap(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        result = await sender.send(bob.npub, 'hello')

        assert result.accepted_relays == [relay.url]
        assert len(relay.events) == 1
        event = relay.events[0]
        assert event['id'] == result.event_id
        assert event['kind'] == 1059
        assert event['tags'] == [['p', bob.public_key]]
        assert event['pubkey'] != alice.public_key
        assert 'hello' not in event['content']

    @pytest.mark.asyncio
    async def test_invalid_target_rejected_before_publish(self, relay, make_engine, alice):
        sender = await make_engine(alice)
        with pytest.raises(InvalidKeyEncoding):
            await sender.send('npub1notakey', 'hello')
        assert relay.events == []


class TestReceiveNext:

    @pytest.mark.asyncio
    async def test_end_to_end_hello(self, relay, make_engine, alice, bob, eve):
        sender = await make_engine(alice)
        target = await make_engine(bob)
        bystander = await make_engine(eve)

        target_wait = asyncio.create_task(target.receive_next(expected_sender=alice.npub, timeout=5))
        bystander_wait = asyncio.create_task(bystander.receive_next(expected_sender=alice.public_key, timeout=1))
        await wait_for_subscriptions(relay, 2)

        await sender.send(bob.public_key, 'hello')

        message = await target_wait
        assert message.content == 'hello'
        assert message.sender == alice.public_key
        assert message.kind == KIND_PRIVATE_DIRECT_MESSAGE
        with pytest.raises(ReceiveTimeout):
            await bystander_wait

    @pytest.mark.asyncio
    async def test_bystander_cannot_decode(self, relay, make_engine, alice, bob, eve):
        sender = await make_engine(alice)
        bystander = await make_engine(eve)
        await sender.send(bob.public_key, 'private')

        assert await bystander.decode(relay.events[0]) is None

    @pytest.mark.asyncio
    async def test_timeout(self, make_engine, bob):
        target = await make_engine(bob)
        with pytest.raises(ReceiveTimeout):
            await target.receive_next(timeout=0.2)

    @pytest.mark.asyncio
    async def test_timeout_closes_subscription(self, make_engine, bob):
        target = await make_engine(bob)
        with pytest.raises(ReceiveTimeout):
            await target.receive_next(timeout=0.1)
        assert target.transport.subscriptions == {}

    @pytest.mark.asyncio
    async def test_sender_filter_skips_others(self, relay, make_engine, alice, bob, eve):
        first = await make_engine(eve)
        second = await make_engine(alice)
        target = await make_engine(bob)

        waiting = asyncio.create_task(target.receive_next(expected_sender=alice.public_key, timeout=5))
        await wait_for_subscriptions(relay, 1)
        await first.send(bob.public_key, 'from eve')
        await second.send(bob.public_key, 'from alice')

        message = await waiting
        assert message.content == 'from alice'

    @pytest.mark.asyncio
    async def test_any_sender_when_unfiltered(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)

        waiting = asyncio.create_task(target.receive_next(timeout=5))
        await wait_for_subscriptions(relay, 1)
        await sender.send(bob.public_key, 'hi')

        assert (await waiting).sender == alice.public_key

    @pytest.mark.asyncio
    async def test_cancellation_closes_subscription(self, relay, make_engine, bob):
        target = await make_engine(bob)
        waiting = asyncio.create_task(target.receive_next(timeout=5))
        await wait_for_subscriptions(relay, 1)

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        assert target.transport.subscriptions == {}

    @pytest.mark.asyncio
    async def test_garbage_events_are_skipped(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)

        waiting = asyncio.create_task(target.receive_next(timeout=5))
        await wait_for_subscriptions(relay, 1)
        await relay.push({
            'id': 'ff' * 32,
            'pubkey': 'ee' * 32,
            'created_at': now_seconds(),
            'kind': 1059,
            'tags': [['p', bob.public_key]],
            'content': 'not encrypted',
            'sig': '00' * 64,
        })
        await sender.send(bob.public_key, 'real')

        assert (await waiting).content == 'real'


class TestReceiveStream:

    @pytest.mark.asyncio
    async def test_handler_failures_are_isolated(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)
        received = []

        def handler(message):
            received.append(message.content)
            if message.content == 'first':
                raise RuntimeError('handler bug')

        stream = asyncio.create_task(target.receive_stream(handler, expected_sender=alice.public_key))
        try:
            await wait_for_subscriptions(relay, 1)
            await sender.send(bob.public_key, 'first')
            await wait_until(lambda: received == ['first'])
            await sender.send(bob.public_key, 'second')
            await wait_until(lambda: received == ['first', 'second'])
        finally:
            stream.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stream

    @pytest.mark.asyncio
    async def test_async_handler(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)
        received = []

        async def handler(message):
            await asyncio.sleep(0)
            received.append(message.content)

        stream = asyncio.create_task(target.receive_stream(handler))
        try:
            await wait_for_subscriptions(relay, 1)
            await sender.send(bob.public_key, 'async hello')
            await wait_until(lambda: received == ['async hello'])
        finally:
            stream.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stream

    @pytest.mark.asyncio
    async def test_duplicate_delivery_reaches_handler_once(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)
        received = []

        stream = asyncio.create_task(target.receive_stream(lambda message: received.append(message.event_id)))
        try:
            await wait_for_subscriptions(relay, 1)
            result = await sender.send(bob.public_key, 'once')
            await wait_until(lambda: len(received) == 1)

            await relay.push(relay.events[0])
            await relay.push(relay.events[0])
            await asyncio.sleep(0.2)
            assert received == [result.event_id]
        finally:
            stream.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stream

    @pytest.mark.asyncio
    async def test_reorder_window_releases_in_send_order(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob, reorder_window=0.3)
        received = []

        stream = asyncio.create_task(target.receive_stream(lambda message: received.append(message.content)))
        try:
            await wait_for_subscriptions(relay, 1)
            codec = sender.codec
            now = now_seconds()
            for content, created_at in (('later', now), ('earlier', now - 10)):
                rumor = codec.build_rumor(bob.public_key, content, created_at=created_at)
                await sender.transport.publish(codec.encode_outgoing(bob.public_key, rumor).to_event())

            await wait_until(lambda: len(received) == 2)
            assert received == ['earlier', 'later']
        finally:
            stream.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stream

    @pytest.mark.asyncio
    async def test_resubscribes_after_relay_closes_subscription(self, relay, make_engine, alice, bob):
        sender = await make_engine(alice)
        target = await make_engine(bob)
        received = []

        relay.close_subscriptions = True
        stream = asyncio.create_task(target.receive_stream(lambda message: received.append(message.content)))
        try:
            await wait_until(lambda: len(relay.requests()) >= 2)
            relay.close_subscriptions = False
            await wait_for_subscriptions(relay, 1)

            await sender.send(bob.public_key, 'after resubscribe')
            await wait_until(lambda: received == ['after resubscribe'])
        finally:
            stream.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stream


class TestFetchHistory:

    @pytest.mark.asyncio
    async def test_backfills_stored_messages(self, make_engine, alice, bob, eve):
        sender = await make_engine(alice)
        other = await make_engine(eve)
        await sender.send(bob.public_key, 'one')
        await other.send(bob.public_key, 'noise')
        await sender.send(bob.public_key, 'two')

        target = await make_engine(bob)
        history = await target.fetch_history(expected_sender=alice.public_key)

        assert sorted(message.content for message in history) == ['one', 'two']
        assert all(message.sender == alice.public_key for message in history)
        assert target.transport.subscriptions == {}

    @pytest.mark.asyncio
    async def test_empty_history(self, make_engine, bob):
        target = await make_engine(bob)
        assert await target.fetch_history() == []

    @pytest.mark.asyncio
    async def test_oldest_first(self, make_engine, alice, bob):
        sender = await make_engine(alice)
        codec = sender.codec
        now = now_seconds()
        for content, created_at in (('newest', now), ('oldest', now - 100), ('middle', now - 50)):
            rumor = codec.build_rumor(bob.public_key, content, created_at=created_at)
            await sender.transport.publish(codec.encode_outgoing(bob.public_key, rumor).to_event())

        target = await make_engine(bob)
        history = await target.fetch_history()
        assert [message.content for message in history] == ['oldest', 'middle', 'newest']

    @pytest.mark.asyncio
    async def test_pages_past_relay_result_cap(self, relay, make_engine, alice, bob):
        relay.max_limit = 2
        sender = await make_engine(alice)
        for number in range(5):
            await sender.send(bob.public_key, f'message {number}')

        target = await make_engine(bob)
        history = await target.fetch_history()

        assert sorted(message.content for message in history) == [f'message {number}' for number in range(5)]
        assert any('until' in request for request in relay.requests())
        assert target.transport.subscriptions == {}
