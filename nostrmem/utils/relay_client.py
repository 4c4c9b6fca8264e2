"""
Nostr relay client with retry, reconnect and duplicate suppression.

One WebSocket connection is held per relay. Subscriptions are owned by the
``RelayPool`` and shared by reference with every connection, so a reconnecting
relay can resume them from their ``since`` watermark.
"""

import asyncio
import json
import random
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Set, Tuple

import aiohttp

from ..models.core import PublishResult
from .config import RelayConfig
from .json_utils import compact_dumps
from .logging_config import get_logger
from .timestamp_utils import now_seconds

logger = get_logger(__name__)


class TransportError(Exception):
    """Custom exception for relay transport errors."""
    pass


class ConnectFailed(TransportError):
    """Raised when no relay connection is available."""
    pass


class PublishTimeout(TransportError):
    """Raised when no relay acknowledged an event in time."""
    pass


class PublishRejected(TransportError):
    """Raised when every relay answered the event with ``OK false``."""
    pass


class SubscriptionDropped(TransportError):
    """Raised to subscription consumers when every relay closed the subscription."""
    pass


class ConnectionState(str, Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'
    RECONNECTING = 'reconnecting'


class RecentlySeen:
    """Bounded set that forgets the oldest keys first."""

    def __init__(self, max_size: int):
        self.max_size = max(1, max_size)
        self._items: 'OrderedDict[Hashable, None]' = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, key: Hashable) -> bool:
        """Record a key. Returns False if it was already present."""
        if key in self._items:
            return False
        self._items[key] = None
        if len(self._items) > self.max_size:
            self._items.popitem(last=False)
        return True


_END = object()


class Subscription:
    """A REQ shared across relays, consumed as an async iterator of raw events."""

    def __init__(self,
                 sub_id: str,
                 filters: Dict[str, Any],
                 seen_cache_size: int,
                 close_on_eose: bool = False,
                 watermark: Optional[int] = None,
                 lookback: int = 0):
        """
        Initialize a subscription.

        Args:
            sub_id: Subscription id sent in REQ/CLOSE messages
            filters: NIP-01 filter
            seen_cache_size: Bound of the event id set used to collapse multi-relay fanout
            close_on_eose: End iteration once every relay that got the REQ sent EOSE
            watermark: Initial ``since`` watermark for resumption, None to re-request everything
            lookback: Seconds subtracted from the watermark when resuming
        """
        self.id = sub_id
        self.filters = filters
        self.close_on_eose = close_on_eose
        self.watermark = watermark
        self.lookback = lookback
        self.active = True
        self._queue: asyncio.Queue = asyncio.Queue()
        self._seen = RecentlySeen(seen_cache_size)
        self._sent_relays: Set[str] = set()
        self._eose_relays: Set[str] = set()
        self._eose_reached = False

    @property
    def eose_reached(self) -> bool:
        return self._eose_reached

    def request_filter(self, resume: bool = False) -> Dict[str, Any]:
        """Filter to send in a REQ. Resumed requests drop ``limit`` and start at the watermark."""
        if resume and self.watermark is not None:
            request = {key: value for key, value in self.filters.items() if key != 'limit'}
            request['since'] = max(0, self.watermark - self.lookback)
            return request
        return dict(self.filters)

    def mark_sent(self, url: str) -> None:
        self._sent_relays.add(url)

    def deliver(self, event: Dict[str, Any]) -> bool:
        """Queue an event unless another relay already delivered it."""
        if not self.active or not self._seen.add(event['id']):
            return False
        # Arrival time; lookback covers backdated created_at
        if self.watermark is not None:
            self.watermark = max(self.watermark, now_seconds())
        self._queue.put_nowait(event)
        return True

    def on_eose(self, url: str) -> None:
        self._eose_relays.add(url)
        self._check_eose()

    def relay_lost(self, url: str) -> None:
        if url not in self._eose_relays:
            self._sent_relays.discard(url)
        self._check_eose()

    def on_closed(self, url: str, reason: str) -> None:
        self._sent_relays.discard(url)
        logger.warning(f'Relay {url} closed subscription {self.id}: {reason}')
        if not self._sent_relays and self.active:
            self._queue.put_nowait(SubscriptionDropped(f'Subscription {self.id} closed by relays: {reason}'))

    def _check_eose(self) -> None:
        if self._eose_reached or not self._sent_relays or not self._sent_relays <= self._eose_relays:
            return
        self._eose_reached = True
        logger.debug(f'Subscription {self.id} reached end of stored events')
        if self.close_on_eose:
            self._queue.put_nowait(_END)

    def close(self) -> None:
        if self.active:
            self.active = False
            self._queue.put_nowait(_END)

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if item is _END:
            self.active = False
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class RelayConnection:
    """One relay WebSocket with its own reconnect loop and dedup set."""

    def __init__(self, url: str, config: RelayConfig, subscriptions: Dict[str, Subscription]):
        """
        Initialize a relay connection.

        Args:
            url: Relay WebSocket URL
            config: RelayConfig instance with timeouts and backoff parameters
            subscriptions: Active subscriptions, owned by the RelayPool
        """
        self.url = url
        self.config = config
        self.state = ConnectionState.CLOSED
        self.seen = RecentlySeen(config.seen_cache_size)
        self._subscriptions = subscriptions
        self._lock = asyncio.Lock()
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()
        self._pending_ok: Dict[str, asyncio.Future] = {}
        self._has_connected = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self._ws is not None and not self._ws.closed

    async def start(self) -> None:
        """Start the background connect/read/reconnect loop."""
        if self._task is not None:
            return
        self._closing = False
        self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Stop reconnecting and close the socket."""
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_pending(ConnectFailed(f'Connection to {self.url} closed'))
        async with self._lock:
            self._ws = None
            self.state = ConnectionState.CLOSED
        self._opened.clear()
        logger.info(f'Closed relay connection {self.url}')

    async def wait_open(self, timeout: float) -> bool:
        if self.is_open:
            return True
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _backoff(self, failures: int) -> float:
        return min(self.config.reconnect_delay * (2**max(0, failures - 1)), self.config.reconnect_max_delay)

    async def _run(self) -> None:
        failures = 0
        while not self._closing:
            async with self._lock:
                self.state = ConnectionState.RECONNECTING if self._has_connected else ConnectionState.CONNECTING
            try:
                ws = await asyncio.wait_for(
                    self._session.ws_connect(self.url, heartbeat=self.config.heartbeat or None),
                    self.config.connect_timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                failures += 1
                delay = self._backoff(failures)
                logger.warning(f'Relay {self.url} connect attempt {failures} failed: {e}. Retrying in {delay:.1f}s')
                await asyncio.sleep(delay)
                continue

            async with self._lock:
                resumed = self._has_connected
                self._ws = ws
                self.state = ConnectionState.OPEN
                self._has_connected = True
            failures = 0
            logger.info(f'{"Reconnected" if resumed else "Connected"} to relay {self.url}')

            try:
                for subscription in list(self._subscriptions.values()):
                    await self.send_req(subscription, resume=resumed)
                self._opened.set()
                await self._read_loop(ws)
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning(f'Relay {self.url} connection error: {e}')
            finally:
                self._opened.clear()
                async with self._lock:
                    self._ws = None
                    if not self._closing:
                        self.state = ConnectionState.RECONNECTING
                self._fail_pending(ConnectFailed(f'Connection to {self.url} lost'))
                for subscription in list(self._subscriptions.values()):
                    subscription.relay_lost(self.url)
                if not ws.closed:
                    await ws.close()

            if self._closing:
                break
            failures += 1
            delay = self._backoff(failures)
            logger.warning(f'Relay {self.url} disconnected, reconnecting in {delay:.1f}s')
            await asyncio.sleep(delay)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_message(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f'Relay {self.url} socket error: {ws.exception()}')
                break

    async def _handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f'Ignoring non-JSON message from {self.url}')
            return
        if not isinstance(message, list) or not message or not isinstance(message[0], str):
            logger.debug(f'Ignoring malformed message from {self.url}')
            return

        message_type = message[0]
        if message_type == 'EVENT' and len(message) >= 3 and isinstance(message[1], str) and isinstance(message[2], dict):
            await self._on_event(message[1], message[2])
        elif message_type == 'OK' and len(message) >= 3 and isinstance(message[1], str):
            self._on_ok(message[1], bool(message[2]), str(message[3]) if len(message) > 3 else '')
        elif message_type == 'EOSE' and len(message) >= 2 and isinstance(message[1], str):
            subscription = self._subscriptions.get(message[1])
            if subscription is not None:
                subscription.on_eose(self.url)
        elif message_type == 'CLOSED' and len(message) >= 2 and isinstance(message[1], str):
            subscription = self._subscriptions.get(message[1])
            if subscription is not None:
                subscription.on_closed(self.url, str(message[2]) if len(message) > 2 else '')
        elif message_type == 'NOTICE':
            logger.info(f'Notice from {self.url}: {message[1] if len(message) > 1 else ""}')
        else:
            logger.debug(f'Ignoring {message_type} message from {self.url}')

    async def _on_event(self, sub_id: str, event: Dict[str, Any]) -> None:
        subscription = self._subscriptions.get(sub_id)
        event_id = event.get('id')
        if subscription is None or not isinstance(event_id, str):
            return
        async with self._lock:
            if not self.seen.add((sub_id, event_id)):
                logger.debug(f'Duplicate event {event_id} from {self.url}')
                return
        subscription.deliver(event)

    def _on_ok(self, event_id: str, accepted: bool, message: str) -> None:
        future = self._pending_ok.get(event_id)
        if future is not None and not future.done():
            future.set_result((accepted, message))

    def _fail_pending(self, error: TransportError) -> None:
        for future in self._pending_ok.values():
            if not future.done():
                future.set_exception(error)

    async def send_event(self, event: Dict[str, Any], timeout: float) -> Tuple[bool, str]:
        """
        Send an EVENT and wait for the relay's OK.

        The socket write and the wait for OK share one deadline.

        Returns:
            Tuple of (accepted, relay message)

        Raises:
            ConnectFailed: If the connection is not open or drops while waiting
            PublishTimeout: If no OK arrives within ``timeout``
        """
        ws = self._ws
        if ws is None or ws.closed or self.state != ConnectionState.OPEN:
            raise ConnectFailed(f'Relay {self.url} is not connected')

        future = asyncio.get_running_loop().create_future()
        self._pending_ok[event['id']] = future

        async def exchange() -> Tuple[bool, str]:
            await ws.send_str(compact_dumps(['EVENT', event]))
            return await future

        try:
            return await asyncio.wait_for(exchange(), timeout)
        except asyncio.TimeoutError:
            raise PublishTimeout(f'No OK from {self.url} within {timeout}s')
        except (aiohttp.ClientError, ConnectionError) as e:
            raise ConnectFailed(f'Failed to send to {self.url}: {e}')
        finally:
            self._pending_ok.pop(event['id'], None)

    async def _send_message(self, ws: aiohttp.ClientWebSocketResponse, message: list) -> None:
        try:
            await asyncio.wait_for(ws.send_str(compact_dumps(message)), self.config.publish_timeout)
        except asyncio.TimeoutError:
            raise ConnectionError(f'Write to {self.url} stalled for {self.config.publish_timeout}s')

    async def send_req(self, subscription: Subscription, resume: bool = False) -> None:
        """
        Send a REQ for ``subscription``.

        Raises:
            ConnectionError: If the write fails or stalls past the publish timeout
        """
        ws = self._ws
        if ws is None or ws.closed:
            return
        request = subscription.request_filter(resume)
        # Marked first so an EOSE or CLOSED racing the send is counted
        subscription.mark_sent(self.url)
        try:
            await self._send_message(ws, ['REQ', subscription.id, request])
        except (aiohttp.ClientError, ConnectionError):
            subscription.relay_lost(self.url)
            raise
        logger.debug(f'Sent REQ {subscription.id} to {self.url}: {request}')

    async def send_close(self, sub_id: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        await self._send_message(ws, ['CLOSE', sub_id])


class RelayPool:
    """Transport over one or more relays: publish, subscribe, reconnect and dedup."""

    def __init__(self, urls: Iterable[str], config: RelayConfig):
        """
        Initialize the pool.

        Args:
            urls: Relay WebSocket URLs
            config: RelayConfig instance

        Raises:
            ConnectFailed: If no relay URL is given
        """
        self.config = config
        self.subscriptions: Dict[str, Subscription] = {}
        unique_urls = list(dict.fromkeys(url.strip() for url in urls if url and url.strip()))
        if not unique_urls:
            raise ConnectFailed('No relay URLs configured')
        self.connections: Dict[str, RelayConnection] = {
            url: RelayConnection(url, config, self.subscriptions) for url in unique_urls
        }

    async def __aenter__(self) -> 'RelayPool':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """
        Start every connection and wait for at least one to open.

        Raises:
            ConnectFailed: If no relay opens within the connect timeout
        """
        for connection in self.connections.values():
            await connection.start()
        if not await self._wait_any_open(self.config.connect_timeout):
            raise ConnectFailed(f'Could not connect to any relay: {", ".join(self.connections)}')
        logger.info(f'Relay pool started with {len(self.open_connections())}/{len(self.connections)} relays open')

    async def close(self) -> None:
        for subscription in list(self.subscriptions.values()):
            subscription.close()
        self.subscriptions.clear()
        await asyncio.gather(*(connection.close() for connection in self.connections.values()))

    def open_connections(self) -> List[RelayConnection]:
        return [connection for connection in self.connections.values() if connection.is_open]

    def status(self) -> Dict[str, str]:
        return {url: connection.state.value for url, connection in self.connections.items()}

    async def _wait_any_open(self, timeout: float) -> bool:
        if self.open_connections():
            return True
        waiters = [asyncio.ensure_future(connection.wait_open(timeout)) for connection in self.connections.values()]
        try:
            for next_done in asyncio.as_completed(waiters):
                if await next_done:
                    return True
            return False
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _publish_once(self, event: Dict[str, Any]) -> Tuple[List[str], Dict[str, str]]:
        if not await self._wait_any_open(self.config.connect_timeout):
            raise ConnectFailed('No relay connection is open')

        connections = self.open_connections()
        results = await asyncio.gather(
            *(connection.send_event(event, self.config.publish_timeout) for connection in connections),
            return_exceptions=True)

        accepted: List[str] = []
        rejected: Dict[str, str] = {}
        errors: List[TransportError] = []
        for connection, result in zip(connections, results):
            if isinstance(result, TransportError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                ok, message = result
                if ok:
                    accepted.append(connection.url)
                else:
                    rejected[connection.url] = message

        if accepted:
            return accepted, rejected
        if rejected and not errors:
            raise PublishRejected(f'Event {event["id"]} rejected by all relays: {rejected}')
        if any(isinstance(error, PublishTimeout) for error in errors):
            raise PublishTimeout(f'Event {event["id"]} not acknowledged: {"; ".join(str(e) for e in errors)}')
        raise ConnectFailed(f'Event {event["id"]} not sent: {"; ".join(str(e) for e in errors)}')

    async def publish(self, event: Dict[str, Any]) -> PublishResult:
        """
        Publish an event to every open relay with retry logic.

        Args:
            event: Signed event dict

        Returns:
            PublishResult listing the relays that accepted the event

        Raises:
            PublishRejected: If every relay rejected the event
            TransportError: If all retry attempts fail
        """
        attempts = max(1, self.config.retry_attempts)
        last_error: Optional[TransportError] = None

        for attempt in range(attempts):
            try:
                logger.debug(f'Publish attempt {attempt + 1}/{attempts} for event {event["id"]}')
                accepted, rejected = await self._publish_once(event)
                logger.debug(f'Event {event["id"]} accepted by {accepted}')
                return PublishResult(event_id=event['id'],
                                     accepted_relays=accepted,
                                     rejected_relays=rejected,
                                     attempts=attempt + 1)

            except PublishRejected:
                raise

            except TransportError as e:
                last_error = e
                logger.warning(f'Publish attempt {attempt + 1}/{attempts} failed: {e}')

                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_jitter)
                    await asyncio.sleep(delay)

        raise type(last_error)(f'Publish failed after {attempts} attempts: {last_error}')

    async def subscribe(self,
                        filters: Dict[str, Any],
                        close_on_eose: bool = False,
                        lookback: Optional[int] = None) -> Subscription:
        """
        Open a subscription on every relay.

        Relays that are not open yet receive the REQ when they connect.

        Args:
            filters: NIP-01 filter
            close_on_eose: End the subscription once stored events have been delivered
            lookback: Resume lookback in seconds (config default if None)

        Returns:
            Subscription yielding raw events
        """
        subscription = Subscription(sub_id=uuid.uuid4().hex,
                                    filters=dict(filters),
                                    seen_cache_size=self.config.seen_cache_size,
                                    close_on_eose=close_on_eose,
                                    watermark=None if close_on_eose else now_seconds(),
                                    lookback=self.config.resume_lookback if lookback is None else lookback)
        self.subscriptions[subscription.id] = subscription

        if not self.open_connections():
            logger.warning(f'No relay open yet, subscription {subscription.id} will be sent on connect')
        for connection in self.open_connections():
            try:
                await connection.send_req(subscription)
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning(f'Failed to subscribe on {connection.url}: {e}')
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.id, None)
        subscription.close()
        for connection in self.open_connections():
            try:
                await connection.send_close(subscription.id)
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f'Failed to close subscription on {connection.url}: {e}')
