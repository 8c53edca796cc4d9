"""Tests for lightning address resolution and invoice acquisition."""

import json
import asyncio
import urllib.parse

import aiohttp
import pytest

from errors import (NoAddress, MalformedAddress, DiscoveryUnreachable, ProtocolUnsupported,
                    NoInvoiceReturned)
from fakes import FakeHttp
from lnurl import (LightningAddressResolver, build_callback_url, discovery_url, select_address,
                   validate_address_format)
from models import PaymentEndpoint, ZapTarget
from validation_cache import ValidationCache

DISCOVERY = 'https://getalby.com/.well-known/lnurlp/alice'
CALLBACK = 'https://getalby.com/lnurlp/alice/callback'

PAYABLE = {
    'callback': CALLBACK,
    'minSendable': 1000,
    'maxSendable': 100000000,
    'allowsNostr': True,
    'nostrPubkey': 'ab' * 32,
    'commentAllowed': 255,
    'tag': 'payRequest',
}


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_resolver(routes, delay=0, clock=None):
    http = FakeHttp(routes, delay=delay)
    cache = ValidationCache(ttl=300, clock=clock or Clock())
    return LightningAddressResolver(http=http, cache=cache), http


def test_address_validation():
    assert validate_address_format('alice@getalby.com') == (True, None)
    for bad in ['', 'alice', 'alice@', '@getalby.com', 'a@b@c.com', 'alice@localhost',
                'al ice@getalby.com', 'x' * 65 + '@getalby.com', 'a@' + 'b' * 320 + '.com']:
        valid, error = validate_address_format(bad)
        assert not valid, bad
        assert error


def test_discovery_url_uses_http_for_onion():
    assert discovery_url('alice', 'getalby.com') == DISCOVERY
    assert discovery_url('bob', 'abc.onion') == 'http://abc.onion/.well-known/lnurlp/bob'


def test_override_wins_over_profile_address():
    profile = json.dumps({'lud16': 'profile@example.com'})
    assert select_address(profile, 'override@example.com') == 'override@example.com'
    assert select_address(profile) == 'profile@example.com'


def test_malformed_profile_is_treated_as_empty():
    with pytest.raises(NoAddress):
        select_address('{not json')
    with pytest.raises(NoAddress):
        select_address('[1, 2]')


def test_resolve_returns_endpoint():
    resolver, http = make_resolver({DISCOVERY: (200, PAYABLE)})

    endpoint = asyncio.run(resolver.resolve({'lud16': 'Alice@GetAlby.com'}))

    assert endpoint == PaymentEndpoint(
        address='alice@getalby.com', callback_url=CALLBACK, min_sendable=1000, max_sendable=100000000,
        supports_protocol_payments=True, comment_allowed=255, nostr_pubkey='ab' * 32)
    assert http.calls == [DISCOVERY]


def test_resolve_uses_zap_lnurl_override():
    resolver, http = make_resolver({DISCOVERY: (200, PAYABLE)})
    target = ZapTarget(pubkey='cd' * 32, address_override='alice@getalby.com')

    asyncio.run(resolver.resolve({'lud16': 'other@example.com'}, target))

    assert http.calls == [DISCOVERY]


@pytest.mark.parametrize('status,body', [
    (200, dict(PAYABLE, allowsNostr=False)),
    (200, {k: v for k, v in PAYABLE.items() if k != 'allowsNostr'}),
    (200, dict(PAYABLE, allowsNostr='true')),
    (200, {'status': 'ERROR', 'reason': 'user not found'}),
    (404, None),
    (200, None),
    (200, dict(PAYABLE, callback=None)),
])
def test_non_zap_endpoints_are_protocol_unsupported(status, body):
    resolver, _ = make_resolver({DISCOVERY: (status, body)})
    with pytest.raises(ProtocolUnsupported):
        asyncio.run(resolver.discover('alice@getalby.com'))


def test_network_failure_is_discovery_unreachable():
    resolver, _ = make_resolver({DISCOVERY: aiohttp.ClientConnectionError('refused')})
    with pytest.raises(DiscoveryUnreachable):
        asyncio.run(resolver.discover('alice@getalby.com'))


def test_malformed_address_never_hits_network():
    resolver, http = make_resolver({})
    with pytest.raises(MalformedAddress):
        asyncio.run(resolver.discover('not-an-address'))
    assert http.calls == []


def test_concurrent_discoveries_coalesce():
    resolver, http = make_resolver({DISCOVERY: (200, PAYABLE)}, delay=0.05)

    async def run():
        return await asyncio.gather(*(resolver.discover(a) for a in
                                      ['alice@getalby.com', 'ALICE@getalby.com', ' alice@getalby.com ']))

    endpoints = asyncio.run(run())

    assert len(http.calls) == 1
    assert len(set(endpoints)) == 1


def test_positive_result_is_cached():
    resolver, http = make_resolver({DISCOVERY: (200, PAYABLE)})
    asyncio.run(resolver.discover('alice@getalby.com'))
    asyncio.run(resolver.discover('alice@getalby.com'))
    assert len(http.calls) == 1


def test_negative_result_expires_after_ttl():
    clock = Clock()
    resolver, http = make_resolver({DISCOVERY: (200, dict(PAYABLE, allowsNostr=False))}, clock=clock)

    for _ in range(2):
        with pytest.raises(ProtocolUnsupported):
            asyncio.run(resolver.discover('alice@getalby.com'))
    assert len(http.calls) == 1

    # recipient fixes their endpoint
    http.routes[DISCOVERY] = (200, PAYABLE)
    clock.now += 301

    endpoint = asyncio.run(resolver.discover('alice@getalby.com'))
    assert endpoint.supports_protocol_payments
    assert len(http.calls) == 2


def test_unreachable_result_is_cached_with_its_kind():
    resolver, http = make_resolver({DISCOVERY: asyncio.TimeoutError()})
    for _ in range(2):
        with pytest.raises(DiscoveryUnreachable):
            asyncio.run(resolver.discover('alice@getalby.com'))
    assert len(http.calls) == 1


def test_is_payable():
    resolver, _ = make_resolver({DISCOVERY: (200, PAYABLE)})
    assert asyncio.run(resolver.is_payable('alice@getalby.com'))
    assert not asyncio.run(resolver.is_payable('bob@getalby.com'))
    assert not asyncio.run(resolver.is_payable('garbage'))


# Invoice acquisition

ENDPOINT = PaymentEndpoint(address='alice@getalby.com', callback_url=CALLBACK, min_sendable=1000,
                           max_sendable=100000000, supports_protocol_payments=True)
SIGNED = {'id': 'ee' * 32, 'kind': 9734, 'content': 'gm', 'tags': [], 'pubkey': 'ab' * 32,
          'created_at': 1, 'sig': 'ff' * 64}


def test_build_callback_url_appends_to_existing_query():
    assert build_callback_url('https://x.com/cb', {'amount': 1}) == 'https://x.com/cb?amount=1'
    assert build_callback_url('https://x.com/cb?id=7', {'amount': 1}) == 'https://x.com/cb?id=7&amount=1'


def test_request_invoice_sends_signed_request():
    resolver, http = make_resolver({CALLBACK: (200, {'pr': 'lnbc210n1notreal', 'routes': []})})

    invoice = asyncio.run(resolver.request_invoice(ENDPOINT, SIGNED, 21000))

    assert invoice.payment_request == 'lnbc210n1notreal'
    assert invoice.amount_msat == 21000
    query = urllib.parse.parse_qs(urllib.parse.urlsplit(http.calls[0]).query)
    assert query['amount'] == ['21000']
    assert json.loads(query['nostr'][0]) == SIGNED
    assert query['lnurl'] == ['alice@getalby.com']


@pytest.mark.parametrize('body', [
    {'status': 'ERROR', 'reason': 'amount too low'},
    {'routes': []},
    {'pr': ''},
    None,
])
def test_missing_invoice_is_no_invoice_returned(body):
    resolver, _ = make_resolver({CALLBACK: (200, body)})
    with pytest.raises(NoInvoiceReturned):
        asyncio.run(resolver.request_invoice(ENDPOINT, SIGNED, 21000))


def test_callback_network_failure():
    resolver, _ = make_resolver({CALLBACK: aiohttp.ClientConnectionError('reset')})
    with pytest.raises(DiscoveryUnreachable):
        asyncio.run(resolver.request_invoice(ENDPOINT, SIGNED, 21000))
