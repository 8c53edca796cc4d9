"""In-memory stand-ins for HTTP, relays and an NWC wallet, used by the test modules."""
import json
import asyncio
import hashlib

from errors import PublishFailed, SubscriptionSetupFailed
from models import EventKind
from nostr_crypto import (nip04_encrypt, nip04_decrypt, finalize_event, generate_secret, public_key_from_secret)


class FakeHttp:
    """Routes GETs by URL without query string. A route value may be (status, body) or an exception."""

    def __init__(self, routes=None, delay=0):
        self.routes = dict(routes or {})
        self.delay = delay
        self.calls = []

    async def get_json(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        route = self.routes.get(url.split('?')[0])
        if route is None:
            return 404, None
        if isinstance(route, BaseException):
            raise route
        return route

    def calls_to(self, base):
        return [c for c in self.calls if c.split('?')[0] == base]


def matches(filters, event):
    for f in filters:
        if 'kinds' in f and event.get('kind') not in f['kinds']:
            continue
        if 'authors' in f and event.get('pubkey') not in f['authors']:
            continue
        ok = True
        for key, values in f.items():
            if key.startswith('#'):
                tag_values = [t[1] for t in event.get('tags', []) if len(t) > 1 and t[0] == key[1:]]
                if not set(values) & set(tag_values):
                    ok = False
        if ok:
            return True
    return False


class FakeSubscription:
    def __init__(self, pool, filters, on_event, on_closed, on_eose):
        self.pool = pool
        self.filters = filters
        self.on_event = on_event
        self.on_closed = on_closed
        self.on_eose = on_eose
        self.closed = False
        self.close_calls = 0

    async def close(self):
        self.close_calls += 1
        self.closed = True
        if self in self.pool.subscriptions:
            self.pool.subscriptions.remove(self)


class FakeRelayPool:
    """Delivers published events to a responder and matching events to live subscriptions."""

    def __init__(self, responder=None, stored=(), fail_publish=False, fail_subscribe=False):
        self.responder = responder
        self.stored = list(stored)
        self.fail_publish = fail_publish
        self.fail_subscribe = fail_subscribe
        self.subscriptions = []
        self.published = []
        self.all_subscriptions = []

    async def subscribe(self, filters, relays, on_event, on_closed=None, on_eose=None):
        if self.fail_subscribe:
            raise SubscriptionSetupFailed("no relay reachable")
        subscription = FakeSubscription(self, filters, on_event, on_closed, on_eose)
        self.subscriptions.append(subscription)
        self.all_subscriptions.append(subscription)
        return subscription

    async def publish(self, event, relays):
        if self.fail_publish:
            raise PublishFailed("rejected")
        self.published.append(event)
        if self.responder:
            self.responder(event, self)
        return list(relays)

    async def query(self, filters, relays, timeout):
        return [e for e in self.stored if matches(filters, e)]

    def deliver(self, event):
        for subscription in list(self.subscriptions):
            if not subscription.closed and matches(subscription.filters, event):
                subscription.on_event(event)

    def drop_all(self, reason='relay went away'):
        for subscription in list(self.subscriptions):
            if subscription.on_closed:
                subscription.on_closed(reason)


def preimage_for(invoice):
    return hashlib.sha256(invoice.encode()).hexdigest()


class FakeWallet:
    """
    NWC wallet service answering kind 23194 requests.

    delays maps an invoice (or method name) to seconds before replying;
    errors maps an invoice to (code, message).
    """

    def __init__(self, delays=None, errors=None, silent=False, balance=21000):
        self.secret = generate_secret()
        self.pubkey = public_key_from_secret(self.secret)
        self.client_secret = generate_secret()
        self.client_pubkey = public_key_from_secret(self.client_secret)
        self.delays = delays or {}
        self.errors = errors or {}
        self.silent = silent
        self.balance = balance
        self.requests = []

    def uri(self, relay='wss://relay.example'):
        return f"nostr+walletconnect://{self.pubkey}?relay={relay}&secret={self.client_secret}"

    def info_event(self, methods='pay_invoice get_balance make_invoice'):
        return finalize_event({
            'kind': EventKind.NWC_INFO,
            'content': methods,
            'tags': [['notifications', 'payment_received payment_sent'], ['encryption', 'nip04']],
        }, self.secret)

    def _result(self, payload):
        method, params = payload['method'], payload.get('params', {})
        invoice = params.get('invoice')
        if invoice in self.errors:
            code, message = self.errors[invoice]
            return {'result_type': method, 'result': None, 'error': {'code': code, 'message': message}}
        if method == 'pay_invoice':
            result = {'preimage': preimage_for(invoice), 'fees_paid': 0}
        elif method == 'get_balance':
            result = {'balance': self.balance}
        elif method == 'make_invoice':
            result = {'type': 'incoming', 'invoice': 'lnbc1made', 'payment_hash': '00' * 32,
                      'amount': params['amount']}
        elif method == 'list_transactions':
            result = {'transactions': [{'type': 'incoming', 'invoice': 'lnbc1old', 'amount': 1000}]}
        elif method == 'lookup_invoice':
            result = {'type': 'incoming', 'invoice': 'lnbc1old', 'payment_hash': params.get('payment_hash')}
        else:
            return {'result_type': method, 'result': None,
                    'error': {'code': 'NOT_IMPLEMENTED', 'message': method}}
        return {'result_type': method, 'result': result, 'error': None}

    def response_event(self, request_event, payload, client_pubkey=None):
        client_pubkey = client_pubkey or request_event['pubkey']
        return finalize_event({
            'kind': EventKind.NWC_RESPONSE,
            'content': nip04_encrypt(self.secret, client_pubkey, json.dumps(payload)),
            'tags': [['p', client_pubkey], ['e', request_event['id']]],
        }, self.secret)

    def __call__(self, event, pool):
        if event.get('kind') != EventKind.NWC_REQUEST:
            return
        payload = json.loads(nip04_decrypt(self.secret, event['pubkey'], event['content']))
        self.requests.append(payload)
        if self.silent:
            return
        key = payload.get('params', {}).get('invoice') or payload['method']
        response = self.response_event(event, self._result(payload))
        asyncio.get_running_loop().call_later(self.delays.get(key, 0), pool.deliver, response)


class FakeClipboard:
    def __init__(self, *values):
        self.values = list(values)
        self.reads = 0

    def __call__(self):
        self.reads += 1
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0] if self.values else ''
