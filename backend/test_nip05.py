import asyncio

import aiohttp

from fakes import FakeHttp
from nip05 import Nip05Validator
from validation_cache import ValidationCache

PUBKEY = 'ab' * 32
NOSTR_JSON = 'https://example.com/.well-known/nostr.json'


def make_validator(route):
    http = FakeHttp({NOSTR_JSON: route})
    return Nip05Validator(http=http, cache=ValidationCache(ttl=60)), http


def test_matching_pubkey():
    validator, http = make_validator((200, {'names': {'bob': PUBKEY}}))
    assert asyncio.run(validator.validate('Bob@Example.com', PUBKEY.upper()))
    assert http.calls == [f'{NOSTR_JSON}?name=bob']


def test_mismatched_or_missing_name():
    validator, _ = make_validator((200, {'names': {'bob': PUBKEY}}))
    assert not asyncio.run(validator.validate('bob@example.com', 'cd' * 32))
    assert not asyncio.run(validator.validate('carol@example.com', PUBKEY))


def test_malformed_identifiers_skip_network():
    validator, http = make_validator((200, {}))
    for value in (None, '', 'bob', 'bob@', '@example.com', 'a@b@c'):
        assert not asyncio.run(validator.validate(value, PUBKEY))
    assert http.calls == []


def test_results_are_cached():
    validator, http = make_validator((200, {'names': {'bob': PUBKEY}}))
    asyncio.run(validator.validate('bob@example.com', PUBKEY))
    assert asyncio.run(validator.validate('bob@example.com'))
    assert len(http.calls) == 1


def test_unreachable_host_is_invalid():
    validator, http = make_validator(aiohttp.ClientConnectionError('refused'))
    assert not asyncio.run(validator.validate('bob@example.com', PUBKEY))
    assert not asyncio.run(validator.validate('bob@example.com', PUBKEY))
    assert len(http.calls) == 1
