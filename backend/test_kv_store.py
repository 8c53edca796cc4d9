import json

import pytest

from kv_store import EncryptedFileStore, MemoryStore
from secret_storage import encrypt_private_key, decrypt_private_key, requires_password


def test_encrypted_store_round_trip(tmp_path):
    store = EncryptedFileStore(str(tmp_path))
    store.set('publicKey', 'ab' * 32)
    store.set_json('nwcConnections', [{'id': 'x'}])

    reopened = EncryptedFileStore(str(tmp_path))
    assert reopened.get('publicKey') == 'ab' * 32
    assert reopened.get_json('nwcConnections') == [{'id': 'x'}]
    assert (tmp_path / '.pubzap_store_key').exists()


def test_encrypted_store_is_not_plaintext(tmp_path):
    store = EncryptedFileStore(str(tmp_path))
    store.set('walletConnectionString', 'nostr+walletconnect://secret-stuff')
    assert b'secret-stuff' not in (tmp_path / '.pubzap_store').read_bytes()


def test_remove_and_clear(tmp_path):
    store = EncryptedFileStore(str(tmp_path))
    store.set('a', '1')
    store.set('b', '2')
    store.remove('a')
    store.remove('missing')
    assert store.get('a') is None
    assert store.get('b') == '2'
    store.clear()
    assert store.get('b') is None


def test_get_json_default_on_garbage():
    store = MemoryStore({'k': '{broken'})
    assert store.get_json('k', default=[]) == []
    assert store.get_json('absent', default={}) == {}


def test_device_bound_key_round_trip():
    blob = encrypt_private_key('11' * 32)
    assert not requires_password(blob)
    assert '11' * 32 not in blob
    assert decrypt_private_key(blob) == '11' * 32


def test_password_key_round_trip():
    blob = encrypt_private_key('22' * 32, password='correct horse')
    assert requires_password(blob)
    assert json.loads(blob)['mode'] == 'password'
    assert decrypt_private_key(blob, 'correct horse') == '22' * 32
    with pytest.raises(ValueError):
        decrypt_private_key(blob)
    with pytest.raises(ValueError):
        decrypt_private_key(blob, 'battery staple')


def test_unreadable_blob():
    with pytest.raises(ValueError):
        decrypt_private_key('not json')
    assert not requires_password('not json')
