import json
import asyncio
import logging
import secrets
from typing import Callable, Dict, List, Optional

import websockets
import websockets.exceptions

import config
from errors import PublishFailed, SubscriptionSetupFailed

CONNECT_TIMEOUT = 10


def normalize_relay_url(url):
    url = url.strip()
    if not url.startswith(('wss://', 'ws://')):
        url = f"wss://{url}"
    return url.rstrip('/')


class RelayConnection:
    """
    One websocket to one relay.

    A single reader task dispatches incoming frames by subscription id or
    event id; sends go through a lock so concurrent exchanges never interleave
    partial frames.
    """

    def __init__(self, url):
        self.url = url
        self.websocket = None
        self.closed = False
        self._send_lock = asyncio.Lock()
        self._reader_task = None
        self._subscriptions: Dict[str, 'Subscription'] = {}
        self._ok_waiters: Dict[str, asyncio.Future] = {}

    async def connect(self, timeout=CONNECT_TIMEOUT):
        self.websocket = await websockets.connect(self.url, open_timeout=timeout)
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())
        logging.info(f"[RELAY] Connected to {self.url}")

    async def send(self, message):
        if self.closed:
            raise ConnectionError(f"{self.url} is closed")
        async with self._send_lock:
            await self.websocket.send(json.dumps(message))

    async def _read_loop(self):
        reason = 'connection closed'
        try:
            async for raw in self.websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logging.warning(f"[RELAY] Invalid JSON from {self.url}")
                    continue
                if isinstance(message, list) and message:
                    self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except asyncio.CancelledError:
            reason = 'reader cancelled'
            raise
        finally:
            self._mark_closed(reason)

    def _dispatch(self, message):
        kind = message[0]
        if kind == 'EVENT' and len(message) >= 3:
            subscription = self._subscriptions.get(message[1])
            if subscription is not None and isinstance(message[2], dict):
                subscription._deliver(message[2])
        elif kind == 'OK' and len(message) >= 3:
            waiter = self._ok_waiters.get(message[1])
            if waiter is not None and not waiter.done():
                waiter.set_result((bool(message[2]), message[3] if len(message) > 3 else ''))
        elif kind == 'EOSE' and len(message) >= 2:
            subscription = self._subscriptions.get(message[1])
            if subscription is not None:
                subscription._relay_eose(self)
        elif kind == 'CLOSED' and len(message) >= 2:
            subscription = self._subscriptions.pop(message[1], None)
            if subscription is not None:
                detail = message[2] if len(message) > 2 else ''
                logging.warning(f"[RELAY] {self.url} closed subscription {message[1]}: {detail}")
                subscription._relay_closed(self, detail or 'closed by relay')
        elif kind == 'NOTICE':
            logging.warning(f"[RELAY] Notice from {self.url}: {message[1] if len(message) > 1 else ''}")

    def _mark_closed(self, reason):
        if self.closed:
            return
        self.closed = True
        logging.info(f"[RELAY] {self.url} {reason}")
        for waiter in self._ok_waiters.values():
            if not waiter.done():
                waiter.set_result((False, reason))
        self._ok_waiters.clear()
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            subscription._relay_closed(self, reason)

    async def publish(self, event, timeout):
        """Send an EVENT and wait for the relay's OK. Returns (accepted, message)."""
        waiter = asyncio.get_running_loop().create_future()
        self._ok_waiters[event['id']] = waiter
        try:
            await self.send(['EVENT', event])
            return await asyncio.wait_for(waiter, timeout)
        finally:
            self._ok_waiters.pop(event['id'], None)

    async def close(self):
        self.closed = True
        if self.websocket is not None:
            await self.websocket.close()
        if self._reader_task is not None:
            self._reader_task.cancel()


class Subscription:
    """A REQ spread across several relays. Events are de-duplicated by id."""

    def __init__(self, sub_id, filters, on_event, on_closed=None, on_eose=None):
        self.sub_id = sub_id
        self.filters = filters
        self.on_event = on_event
        self.on_closed = on_closed
        self.on_eose = on_eose
        self.connections: List[RelayConnection] = []
        self.closed = False
        self._eose = set()
        self._seen = set()

    def _deliver(self, event):
        if self.closed or event.get('id') in self._seen:
            return
        self._seen.add(event.get('id'))
        self.on_event(event)

    def _relay_eose(self, connection):
        self._eose.add(connection.url)
        if self.on_eose and self._eose >= {c.url for c in self.connections}:
            self.on_eose()

    def _relay_closed(self, connection, reason):
        if connection in self.connections:
            self.connections.remove(connection)
        if not self.connections and not self.closed:
            self.closed = True
            if self.on_closed:
                self.on_closed(reason)
        elif self.on_eose and self._eose >= {c.url for c in self.connections}:
            self.on_eose()

    async def close(self):
        """Unsubscribe everywhere. Safe to call more than once."""
        self.closed = True
        connections, self.connections = self.connections, []
        for connection in connections:
            connection._subscriptions.pop(self.sub_id, None)
            if connection.closed:
                continue
            try:
                await connection.send(['CLOSE', self.sub_id])
            except (ConnectionError, websockets.exceptions.ConnectionClosed) as e:
                logging.debug(f"[RELAY] CLOSE to {connection.url} failed: {e}")


class RelayPool:
    """Shared websocket connections to relays, opened lazily and reused."""

    def __init__(self, publish_timeout=None, connect_timeout=CONNECT_TIMEOUT):
        self.publish_timeout = config.NWC_PUBLISH_TIMEOUT if publish_timeout is None else publish_timeout
        self.connect_timeout = connect_timeout
        self._connections: Dict[str, RelayConnection] = {}
        self._connect_locks: Dict[str, asyncio.Lock] = {}

    async def _connection(self, url) -> RelayConnection:
        url = normalize_relay_url(url)
        lock = self._connect_locks.setdefault(url, asyncio.Lock())
        async with lock:
            connection = self._connections.get(url)
            if connection is not None and not connection.closed:
                return connection
            connection = RelayConnection(url)
            await connection.connect(self.connect_timeout)
            self._connections[url] = connection
            return connection

    async def _connections_for(self, relays):
        results = await asyncio.gather(*(self._connection(url) for url in relays), return_exceptions=True)
        connections = []
        for url, result in zip(relays, results):
            if isinstance(result, BaseException):
                logging.error(f"[RELAY] Could not connect to {url}: {result}")
            else:
                connections.append(result)
        return connections

    async def publish(self, event, relays) -> List[str]:
        """
        Publish to every relay.

        Returns:
            URLs of the relays that accepted the event

        Raises:
            PublishFailed: no relay accepted it
        """
        connections = await self._connections_for(relays)

        async def publish_one(connection):
            try:
                accepted, message = await connection.publish(event, self.publish_timeout)
            except (asyncio.TimeoutError, ConnectionError, websockets.exceptions.ConnectionClosed) as e:
                logging.error(f"[RELAY] Publish to {connection.url} failed: {e or type(e).__name__}")
                return False
            if not accepted:
                logging.error(f"[RELAY] {connection.url} rejected {event['id'][:8]}: {message}")
            return accepted

        results = await asyncio.gather(*(publish_one(c) for c in connections))
        accepted = [c.url for c, ok in zip(connections, results) if ok]
        if not accepted:
            raise PublishFailed(f"No relay accepted event {event['id'][:8]}")
        logging.info(f"[RELAY] Event {event['id'][:8]} accepted by {len(accepted)}/{len(relays)} relays")
        return accepted

    async def subscribe(self, filters, relays, on_event: Callable, on_closed: Optional[Callable] = None,
                        on_eose: Optional[Callable] = None) -> Subscription:
        """
        Open a REQ on every reachable relay.

        on_closed(reason) fires once, when the last relay carrying the
        subscription goes away before close() is called.

        Raises:
            SubscriptionSetupFailed: no relay accepted the REQ
        """
        subscription = Subscription(secrets.token_hex(8), filters, on_event, on_closed, on_eose)
        for connection in await self._connections_for(relays):
            connection._subscriptions[subscription.sub_id] = subscription
            try:
                await connection.send(['REQ', subscription.sub_id, *filters])
            except (ConnectionError, websockets.exceptions.ConnectionClosed) as e:
                connection._subscriptions.pop(subscription.sub_id, None)
                logging.error(f"[RELAY] REQ to {connection.url} failed: {e}")
                continue
            subscription.connections.append(connection)

        if not subscription.connections:
            raise SubscriptionSetupFailed("Could not subscribe on any relay")
        return subscription

    async def query(self, filters, relays, timeout) -> List[dict]:
        """Collect stored events until every relay sends EOSE or the timeout passes."""
        events = []
        done = asyncio.Event()
        subscription = await self.subscribe(filters, relays, events.append,
                                            on_closed=lambda _reason: done.set(), on_eose=done.set)
        try:
            await asyncio.wait_for(done.wait(), timeout)
        except asyncio.TimeoutError:
            logging.info(f"[RELAY] Query timed out after {timeout}s with {len(events)} events")
        finally:
            await subscription.close()
        return events

    async def close(self):
        connections, self._connections = list(self._connections.values()), {}
        for connection in connections:
            await connection.close()
