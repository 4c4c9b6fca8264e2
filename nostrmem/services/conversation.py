"""
Conversation engine: private direct messages over gift-wrapped envelopes.
"""

import asyncio
import heapq
import inspect
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..models.core import KIND_GIFT_WRAP, KIND_PRIVATE_DIRECT_MESSAGE, PublishResult, ReceivedMessage
from ..utils.config import ConversationConfig
from ..utils.identity import Identity, parse_public_key
from ..utils.logging_config import get_logger
from ..utils.nip44 import CryptoError
from ..utils.relay_client import RecentlySeen, RelayPool, Subscription, SubscriptionDropped
from ..utils.timestamp_utils import now_seconds
from .codec import GiftWrapCodec, ProtocolError, parse_gift_wrap

logger = get_logger(__name__)

MessageHandler = Callable[[ReceivedMessage], Union[None, Awaitable[None]]]


class ConversationError(Exception):
    """Custom exception for conversation errors."""
    pass


class ReceiveTimeout(ConversationError):
    """Raised when no matching message arrives before the deadline."""
    pass


class ConversationEngine:
    """Sends and receives private messages for one identity over a relay pool."""

    def __init__(self,
                 identity: Identity,
                 transport: RelayPool,
                 config: ConversationConfig,
                 codec: Optional[GiftWrapCodec] = None):
        """
        Initialize the conversation engine.

        Args:
            identity: Our identity
            transport: Started RelayPool shared with other components
            config: ConversationConfig instance
            codec: Optional codec, built from the identity if None
        """
        self.identity = identity
        self.transport = transport
        self.config = config
        self.codec = codec or GiftWrapCodec(identity)

    def inbox_filter(self, live: bool = True) -> Dict[str, Any]:
        """Relay filter for gift wraps addressed to us. Live filters skip stored events."""
        filters: Dict[str, Any] = {'kinds': [KIND_GIFT_WRAP], '#p': [self.identity.public_key]}
        if live:
            filters['limit'] = 0
        return filters

    async def _subscribe_inbox(self, filters: Dict[str, Any]) -> Subscription:
        # Gift wrap timestamps are backdated, so resumed REQs must look back over the whole tweak window
        return await self.transport.subscribe(filters, lookback=self.codec.tweak_range)

    def _live_floor(self) -> int:
        return now_seconds() - int(self.config.max_clock_skew)

    async def send(self, target_public_key: str, text: str) -> PublishResult:
        """
        Send a private message.

        Args:
            target_public_key: Recipient as npub or hex
            text: Message content

        Returns:
            PublishResult of the gift wrap

        Raises:
            TransportError: If publishing fails after all retries
        """
        target = parse_public_key(target_public_key)
        rumor = self.codec.build_rumor(target, text)
        gift_wrap = await asyncio.to_thread(self.codec.encode_outgoing, target, rumor)
        result = await self.transport.publish(gift_wrap.to_event())
        logger.info(f'Sent message {gift_wrap.id} to {target} via {len(result.accepted_relays)} relays')
        return result

    async def decode(self, event: Dict[str, Any]) -> Optional[ReceivedMessage]:
        """Decode a relay event, or return None if it is not a readable message for us."""
        try:
            gift_wrap = parse_gift_wrap(event)
            unwrapped = await asyncio.to_thread(self.codec.decode_incoming, gift_wrap)
        except (CryptoError, ProtocolError) as e:
            logger.debug(f'Skipping event {event.get("id")}: {e}')
            return None

        rumor = unwrapped.rumor
        return ReceivedMessage(event_id=gift_wrap.id,
                               sender=unwrapped.sender,
                               content=rumor.content,
                               created_at=rumor.created_at,
                               kind=rumor.kind,
                               tags=rumor.tags)

    async def _decode_matching(self,
                               event: Dict[str, Any],
                               expected_sender: Optional[str],
                               not_before: Optional[int] = None) -> Optional[ReceivedMessage]:
        message = await self.decode(event)
        if message is None:
            return None
        if message.kind != KIND_PRIVATE_DIRECT_MESSAGE:
            logger.debug(f'Ignoring rumor kind {message.kind} in {message.event_id}')
            return None
        if expected_sender is not None and message.sender != expected_sender:
            logger.debug(f'Ignoring message from {message.sender} (expected {expected_sender})')
            return None
        if not_before is not None and message.created_at < not_before:
            logger.debug(f'Ignoring replayed message {message.event_id} sent before this listener started')
            return None
        return message

    async def _first_match(self, subscription: Subscription, expected_sender: Optional[str],
                           not_before: int) -> ReceivedMessage:
        async for event in subscription:
            message = await self._decode_matching(event, expected_sender, not_before)
            if message is not None:
                return message
        raise ConversationError('Subscription ended before a message arrived')

    async def receive_next(self, expected_sender: Optional[str] = None, timeout: Optional[float] = None) -> ReceivedMessage:
        """
        Wait for the next message, optionally from one sender.

        Cancelling the calling task stops the wait and closes the subscription.

        Args:
            expected_sender: Only accept messages from this npub or hex key
            timeout: Seconds to wait (uses config default if None)

        Returns:
            The first matching ReceivedMessage

        Raises:
            ReceiveTimeout: If the deadline passes first
        """
        sender = parse_public_key(expected_sender) if expected_sender else None
        timeout = timeout if timeout is not None else self.config.receive_timeout

        not_before = self._live_floor()
        subscription = await self._subscribe_inbox(self.inbox_filter())
        try:
            message = await asyncio.wait_for(self._first_match(subscription, sender, not_before), timeout)
        except asyncio.TimeoutError:
            raise ReceiveTimeout(f'No message{f" from {sender}" if sender else ""} within {timeout}s')
        finally:
            await self.transport.unsubscribe(subscription)

        logger.info(f'Received message {message.event_id} from {message.sender}')
        return message

    async def receive_stream(self, handler: MessageHandler, expected_sender: Optional[str] = None) -> None:
        """
        Call ``handler`` for every incoming message until cancelled.

        Handler failures are logged and do not stop the stream. Messages are held
        for ``reorder_window`` seconds and released in send-time order.

        Args:
            handler: Sync or async callable taking a ReceivedMessage
            expected_sender: Only deliver messages from this npub or hex key
        """
        sender = parse_public_key(expected_sender) if expected_sender else None
        filters = self.inbox_filter()
        not_before = self._live_floor()
        delivered = RecentlySeen(self.transport.config.seen_cache_size)

        while True:
            subscription = await self._subscribe_inbox(filters)
            logger.info(f'Listening for messages on subscription {subscription.id}')
            try:
                await self._pump(subscription, handler, sender, not_before, delivered)
                return
            except SubscriptionDropped as e:
                logger.warning(f'{e}; resubscribing in {self.config.resubscribe_delay}s')
                filters = subscription.request_filter(resume=True)
            finally:
                await self.transport.unsubscribe(subscription)
            await asyncio.sleep(self.config.resubscribe_delay)

    async def _pump(self, subscription: Subscription, handler: MessageHandler, expected_sender: Optional[str],
                    not_before: int, delivered: RecentlySeen) -> None:
        loop = asyncio.get_running_loop()
        window = self.config.reorder_window
        pending: List[Tuple[int, int, float, ReceivedMessage]] = []
        sequence = itertools.count()
        iterator = subscription.__aiter__()
        next_event: Optional[asyncio.Future] = None

        try:
            while True:
                wait_timeout = max(0.0, pending[0][2] - loop.time()) if pending else None
                if next_event is None:
                    next_event = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait({next_event}, timeout=wait_timeout)

                if next_event in done:
                    finished, next_event = next_event, None
                    try:
                        event = finished.result()
                    except StopAsyncIteration:
                        break
                    except SubscriptionDropped:
                        await self._flush(pending, handler)
                        raise
                    # Survives resubscription, unlike the subscription's own seen set
                    if not delivered.add(event['id']):
                        continue
                    message = await self._decode_matching(event, expected_sender, not_before)
                    if message is not None:
                        heapq.heappush(pending, (message.created_at, next(sequence), loop.time() + window, message))

                while pending and pending[0][2] <= loop.time():
                    await self._dispatch(handler, heapq.heappop(pending)[3])
        finally:
            if next_event is not None:
                next_event.cancel()

        await self._flush(pending, handler)

    async def _flush(self, pending: List[Tuple[int, int, float, ReceivedMessage]], handler: MessageHandler) -> None:
        while pending:
            await self._dispatch(handler, heapq.heappop(pending)[3])

    async def _dispatch(self, handler: MessageHandler, message: ReceivedMessage) -> None:
        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f'Message handler failed for {message.event_id}: {e}')

    async def _fetch_page(self, filters: Dict[str, Any], events: Dict[str, Dict[str, Any]]) -> Tuple[int, Optional[int]]:
        """Run one close-on-EOSE REQ, adding unseen events to ``events``.

        Returns:
            Tuple of (new events, oldest ``created_at`` in the page or None if empty)
        """
        subscription = await self.transport.subscribe(filters, close_on_eose=True)
        added = 0
        oldest: Optional[int] = None
        try:
            async for event in subscription:
                created_at = event.get('created_at')
                if isinstance(created_at, int):
                    oldest = created_at if oldest is None else min(oldest, created_at)
                if event['id'] not in events:
                    events[event['id']] = event
                    added += 1
        finally:
            await self.transport.unsubscribe(subscription)
        return added, oldest

    async def _page_history(self, filters: Dict[str, Any], events: Dict[str, Dict[str, Any]]) -> None:
        # Relays cap results per REQ, newest first, so walk ``until`` back until a page is empty
        until: Optional[int] = None
        while True:
            page_filters = dict(filters)
            if until is not None:
                page_filters['until'] = until
            added, oldest = await self._fetch_page(page_filters, events)
            if oldest is None or not added or oldest - 1 < filters.get('since', 0):
                return
            until = oldest - 1

    async def fetch_history(self,
                            expected_sender: Optional[str] = None,
                            timeout: Optional[float] = None,
                            since: Optional[int] = None) -> List[ReceivedMessage]:
        """
        Backfill stored messages addressed to us.

        Pages backwards with ``until`` so relays that cap results per request
        still return the whole inbox.

        Args:
            expected_sender: Only keep messages from this npub or hex key
            timeout: Seconds to wait for relays to finish sending stored events (config default if None)
            since: Optional lower bound on gift wrap ``created_at``

        Returns:
            Decoded messages, oldest first. Partial if the timeout passed first.
        """
        sender = parse_public_key(expected_sender) if expected_sender else None
        timeout = timeout if timeout is not None else self.config.history_timeout
        filters = self.inbox_filter(live=False)
        if since is not None:
            filters['since'] = since

        events: Dict[str, Dict[str, Any]] = {}
        try:
            await asyncio.wait_for(self._page_history(filters, events), timeout)
        except asyncio.TimeoutError:
            logger.warning(f'History backfill timed out after {timeout}s with {len(events)} events')

        messages = []
        for event in events.values():
            message = await self._decode_matching(event, sender)
            if message is not None:
                messages.append(message)
        messages.sort(key=lambda m: m.created_at)
        logger.debug(f'Backfilled {len(messages)} messages from {len(events)} events')
        return messages
