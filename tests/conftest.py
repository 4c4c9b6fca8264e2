"""Pytest fixtures: an in-process Nostr relay and small-timeout configurations."""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web

from nostrmem.services.conversation import ConversationEngine
from nostrmem.utils.config import ConversationConfig, MemoryConfig, RelayConfig
from nostrmem.utils.identity import Identity
from nostrmem.utils.relay_client import RelayPool


def matches_filter(event: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    if 'ids' in filters and event['id'] not in filters['ids']:
        return False
    if 'kinds' in filters and event['kind'] not in filters['kinds']:
        return False
    if 'authors' in filters and event['pubkey'] not in filters['authors']:
        return False
    if 'since' in filters and event['created_at'] < filters['since']:
        return False
    if 'until' in filters and event['created_at'] > filters['until']:
        return False
    for key, values in filters.items():
        if key.startswith('#'):
            tag_values = {tag[1] for tag in event.get('tags', []) if len(tag) >= 2 and tag[0] == key[1:]}
            if not tag_values & set(values):
                return False
    return True


class FakeRelay:
    """Minimal NIP-01 relay: stores events, answers REQ with stored events and EOSE, broadcasts live events."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.received: List[list] = []
        self.clients: Dict[web.WebSocketResponse, Dict[str, Dict[str, Any]]] = {}
        self.reject_reason: Optional[str] = None
        self.silent = False
        self.close_subscriptions = False
        self.max_limit: Optional[int] = None
        self.url = ''
        self.accepted = 0
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get('/', self.handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, '127.0.0.1', 0)
        await site.start()
        host, port = self._runner.addresses[0][:2]
        self.url = f'ws://{host}:{port}/'

    async def stop(self) -> None:
        await self.drop_connections()
        await self._runner.cleanup()

    def requests(self) -> List[Dict[str, Any]]:
        return [message[2] for message in self.received if message[0] == 'REQ']

    def published(self) -> List[Dict[str, Any]]:
        return [message[1] for message in self.received if message[0] == 'EVENT']

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.clients[ws] = {}
        self.accepted += 1
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                message = json.loads(msg.data)
                self.received.append(message)
                if message[0] == 'EVENT':
                    await self._on_event(ws, message[1])
                elif message[0] == 'REQ':
                    await self._on_req(ws, message[1], message[2])
                elif message[0] == 'CLOSE':
                    self.clients[ws].pop(message[1], None)
        finally:
            self.clients.pop(ws, None)
        return ws

    async def _on_event(self, ws: web.WebSocketResponse, event: Dict[str, Any]) -> None:
        if self.silent:
            return
        if self.reject_reason is not None:
            await ws.send_json(['OK', event['id'], False, self.reject_reason])
            return
        if any(stored['id'] == event['id'] for stored in self.events):
            await ws.send_json(['OK', event['id'], True, 'duplicate: already have this event'])
            return
        self.events.append(event)
        await ws.send_json(['OK', event['id'], True, ''])
        await self.push(event)

    async def _on_req(self, ws: web.WebSocketResponse, sub_id: str, filters: Dict[str, Any]) -> None:
        if self.close_subscriptions:
            await ws.send_json(['CLOSED', sub_id, 'restricted: test relay'])
            return
        self.clients[ws][sub_id] = filters
        stored = sorted((event for event in self.events if matches_filter(event, filters)), key=lambda e: e['created_at'])
        limit = filters.get('limit', self.max_limit)
        if limit is not None and self.max_limit is not None:
            limit = min(limit, self.max_limit)
        if limit is not None:
            stored = stored[-limit:] if limit else []
        for event in stored:
            await ws.send_json(['EVENT', sub_id, event])
        await ws.send_json(['EOSE', sub_id])

    async def push(self, event: Dict[str, Any]) -> None:
        """Send an event to every matching live subscription, stored or not."""
        for ws, subscriptions in list(self.clients.items()):
            for sub_id, filters in list(subscriptions.items()):
                if matches_filter(event, {key: value for key, value in filters.items() if key != 'limit'}):
                    await ws.send_json(['EVENT', sub_id, event])

    async def notice(self, text: str) -> None:
        for ws in list(self.clients):
            await ws.send_json(['NOTICE', text])

    async def drop_connections(self) -> None:
        for ws in list(self.clients):
            await ws.close()


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> None:
    """Poll until ``predicate()`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail('Condition not reached in time')
        await asyncio.sleep(interval)


@pytest.fixture
def relay_config():
    return RelayConfig(connect_timeout=2.0,
                       publish_timeout=0.5,
                       retry_attempts=2,
                       retry_delay=0.05,
                       retry_jitter=0.0,
                       reconnect_delay=0.05,
                       reconnect_max_delay=0.2,
                       seen_cache_size=128,
                       heartbeat=0,
                       resume_lookback=0)


@pytest.fixture
def conversation_config():
    return ConversationConfig(receive_timeout=5.0, reorder_window=0.0, resubscribe_delay=0.05, history_timeout=2.0)


@pytest.fixture
def memory_config():
    return MemoryConfig(default_limit=10, default_expiration_days=0)


@pytest.fixture
def alice():
    return Identity.generate()


@pytest.fixture
def bob():
    return Identity.generate()


@pytest.fixture
def eve():
    return Identity.generate()


@pytest_asyncio.fixture
async def relay():
    fake_relay = FakeRelay()
    await fake_relay.start()
    yield fake_relay
    await fake_relay.stop()


@pytest_asyncio.fixture
async def pool(relay, relay_config):
    relay_pool = RelayPool([relay.url], relay_config)
    await relay_pool.start()
    yield relay_pool
    await relay_pool.close()


@pytest_asyncio.fixture
async def make_engine(relay, relay_config, conversation_config):
    """Factory for conversation engines, each with its own relay connection."""
    pools = []

    async def factory(identity: Identity, **overrides) -> ConversationEngine:
        relay_pool = RelayPool([relay.url], relay_config)
        await relay_pool.start()
        pools.append(relay_pool)
        engine_config = ConversationConfig(**{**conversation_config.__dict__, **overrides})
        return ConversationEngine(identity, relay_pool, engine_config)

    yield factory
    for relay_pool in pools:
        await relay_pool.close()
