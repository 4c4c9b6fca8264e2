"""Tests for the relay transport: publish, subscribe, dedup and reconnect."""
import asyncio
import socket
import uuid
from unittest.mock import patch

import pytest

from conftest import wait_until
from nostrmem.utils.config import RelayConfig
from nostrmem.utils.relay_client import (ConnectFailed, ConnectionState, PublishRejected, PublishTimeout, RecentlySeen,
                                         RelayPool, SubscriptionDropped)
from nostrmem.utils.timestamp_utils import now_seconds

RECIPIENT = 'ab' * 32


def make_event(created_at=None, recipient=RECIPIENT, kind=1059):
    return {
        'id': uuid.uuid4().hex * 2,
        'pubkey': 'cd' * 32,
        'created_at': created_at if created_at is not None else now_seconds(),
        'kind': kind,
        'tags': [['p', recipient]],
        'content': 'payload',
        'sig': '00' * 64,
    }


def inbox_filter():
    return {'kinds': [1059], '#p': [RECIPIENT], 'limit': 0}


async def next_event(subscription, timeout=2.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


async def assert_no_event(subscription, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(subscription.__anext__(), timeout)


class StalledSocket:
    """WebSocket stand-in whose writes never complete."""
    closed = False

    async def send_str(self, data):
        await asyncio.sleep(3600)


def unused_port():
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


class TestRecentlySeen:

    def test_add_reports_duplicates(self):
        seen = RecentlySeen(10)
        assert seen.add('a')
        assert not seen.add('a')
        assert 'a' in seen

    def test_is_bounded(self):
        seen = RecentlySeen(3)
        for key in 'abcd':
            seen.add(key)
        assert len(seen) == 3
        assert 'a' not in seen
        assert 'd' in seen


class TestPoolLifecycle:

    def test_requires_urls(self, relay_config):
        with pytest.raises(ConnectFailed):
            RelayPool(['', '  '], relay_config)

    @pytest.mark.asyncio
    async def test_start_fails_without_reachable_relay(self):
        config = RelayConfig(connect_timeout=0.3, reconnect_delay=0.05, reconnect_max_delay=0.1, heartbeat=0)
        pool = RelayPool([f'ws://127.0.0.1:{unused_port()}/'], config)
        try:
            with pytest.raises(ConnectFailed):
                await pool.start()
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_status_reports_open(self, relay, pool):
        assert pool.status() == {relay.url: ConnectionState.OPEN.value}

    @pytest.mark.asyncio
    async def test_duplicate_urls_share_a_connection(self, relay, relay_config):
        pool = RelayPool([relay.url, relay.url], relay_config)
        assert len(pool.connections) == 1

    @pytest.mark.asyncio
    async def test_close_marks_connections_closed(self, relay, relay_config):
        async with RelayPool([relay.url], relay_config) as pool:
            assert pool.open_connections()
        assert pool.status() == {relay.url: ConnectionState.CLOSED.value}

    @pytest.mark.asyncio
    async def test_notice_is_tolerated(self, relay, pool):
        await relay.notice('slow down')
        result = await pool.publish(make_event())
        assert result.accepted_relays == [relay.url]


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_accepted(self, relay, pool):
        event = make_event()
        result = await pool.publish(event)

        assert result.event_id == event['id']
        assert result.accepted_relays == [relay.url]
        assert result.attempts == 1
        assert relay.events == [event]

    @pytest.mark.asyncio
    async def test_rejected_is_not_retried(self, relay, pool):
        relay.reject_reason = 'blocked: spam'
        with pytest.raises(PublishRejected, match='spam'):
            await pool.publish(make_event())
        assert len(relay.published()) == 1

    @pytest.mark.asyncio
    async def test_timeout_retries_then_fails(self, relay, pool, relay_config):
        relay.silent = True
        with pytest.raises(PublishTimeout):
            await pool.publish(make_event())
        assert len(relay.published()) == relay_config.retry_attempts

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_transient_failure(self, relay, pool):
        relay.silent = True
        event = make_event()
        task = asyncio.create_task(pool.publish(event))
        await wait_until(lambda: len(relay.published()) == 1)
        relay.silent = False

        result = await task
        assert result.attempts == 2
        assert relay.events == [event]


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_live_event_delivered(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: relay.requests())
        event = make_event()
        await pool.publish(event)

        assert await next_event(subscription) == event

    @pytest.mark.asyncio
    async def test_other_recipient_not_delivered(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: relay.requests())
        await pool.publish(make_event(recipient='ef' * 32))
        await assert_no_event(subscription)

    @pytest.mark.asyncio
    async def test_duplicate_delivery_collapsed(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: relay.requests())
        event = make_event()
        await relay.push(event)
        await relay.push(event)

        assert await next_event(subscription) == event
        await assert_no_event(subscription)

    @pytest.mark.asyncio
    async def test_close_on_eose_returns_stored_events(self, relay, pool):
        stored = [make_event(), make_event()]
        for event in stored:
            await pool.publish(event)

        subscription = await pool.subscribe({'kinds': [1059], '#p': [RECIPIENT]}, close_on_eose=True)
        received = [event async for event in subscription]

        assert received == stored
        assert subscription.eose_reached

    @pytest.mark.asyncio
    async def test_unsubscribe_sends_close_and_ends_iteration(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await pool.unsubscribe(subscription)

        assert [event async for event in subscription] == []
        await wait_until(lambda: any(message[0] == 'CLOSE' for message in relay.received))
        assert subscription.id not in pool.subscriptions

    @pytest.mark.asyncio
    async def test_closed_by_relay_raises_dropped(self, relay, pool):
        relay.close_subscriptions = True
        subscription = await pool.subscribe(inbox_filter())
        with pytest.raises(SubscriptionDropped):
            await next_event(subscription)


class TestStalledWrites:

    @pytest.mark.asyncio
    async def test_publish_deadline_covers_the_socket_write(self, relay, pool):
        connection = pool.connections[relay.url]
        with patch.object(connection, '_ws', StalledSocket()):
            with pytest.raises(PublishTimeout):
                await asyncio.wait_for(pool.publish(make_event()), 5)
        assert relay.published() == []

    @pytest.mark.asyncio
    async def test_subscribe_returns_when_write_stalls(self, relay, pool):
        connection = pool.connections[relay.url]
        with patch.object(connection, '_ws', StalledSocket()):
            subscription = await asyncio.wait_for(pool.subscribe(inbox_filter()), 5)
        assert subscription.id in pool.subscriptions
        assert relay.requests() == []


class TestReconnect:

    @pytest.mark.asyncio
    async def test_resubscribes_from_watermark(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: len(relay.requests()) == 1)
        assert 'since' not in relay.requests()[0]

        first = make_event()
        await relay.push(first)
        assert await next_event(subscription) == first
        watermark = subscription.watermark

        await relay.drop_connections()
        await wait_until(lambda: len(relay.requests()) == 2)

        resumed = relay.requests()[1]
        assert resumed['since'] == watermark
        assert 'limit' not in resumed
        assert resumed['#p'] == [RECIPIENT]

        second = make_event(created_at=now_seconds() + 10)
        await pool.publish(second)
        assert await next_event(subscription) == second

    @pytest.mark.asyncio
    async def test_replayed_event_after_reconnect_delivered_once(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: relay.requests())
        event = make_event(created_at=now_seconds() + 5)
        await pool.publish(event)
        assert await next_event(subscription) == event

        await relay.drop_connections()
        # Stored and newer than the watermark: the relay replays it on resume
        await wait_until(lambda: len(relay.requests()) == 2)
        await assert_no_event(subscription, timeout=0.3)

    @pytest.mark.asyncio
    async def test_publish_after_reconnect(self, relay, pool):
        await relay.drop_connections()
        await wait_until(lambda: relay.accepted == 2 and pool.status()[relay.url] == ConnectionState.OPEN.value)
        result = await pool.publish(make_event())
        assert result.accepted_relays == [relay.url]

    @pytest.mark.asyncio
    async def test_backdated_event_advances_watermark_to_arrival(self, relay, pool):
        subscription = await pool.subscribe(inbox_filter())
        await wait_until(lambda: relay.requests())
        subscribed_at = subscription.watermark

        await relay.push(make_event(created_at=now_seconds() - 100000))
        await next_event(subscription)

        assert subscription.watermark >= subscribed_at
        assert subscription.watermark >= now_seconds() - 1
