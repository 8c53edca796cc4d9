"""Event hashing, signing and NIP-04 encryption helpers.

ECDH and AES-256-CBC come from the cryptography library; key parsing, Schnorr
signatures and verification come from nostr-sdk.
"""
import json
import base64
import hashlib
import os
import re
import time

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import padding

from nostr_sdk import Keys, SecretKey, PublicKey, Event

HEX64 = re.compile(r'^[0-9a-fA-F]{64}$')
HEX128 = re.compile(r'^[0-9a-fA-F]{128}$')


def _derive_shared_secret(privkey_hex: str, pubkey_hex: str) -> bytes:
    """
    Derives the NIP-04 shared secret (32-byte X-coordinate) using ECDH.
    """
    private_key = ec.derive_private_key(int(privkey_hex, 16), ec.SECP256K1(), default_backend())

    # Nostr public keys are the bare x-coordinate; assume the even-y point.
    if len(pubkey_hex) == 64:
        public_key_bytes = bytes.fromhex('02' + pubkey_hex)
    elif len(pubkey_hex) == 66 and pubkey_hex[:2] in ('02', '03'):
        public_key_bytes = bytes.fromhex(pubkey_hex)
    else:
        raise ValueError(f"Public key hex '{pubkey_hex}' is not a 64-char x-coordinate or 66-char compressed key.")

    public_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key_bytes)
    shared_secret = private_key.exchange(ec.ECDH(), public_key)

    if len(shared_secret) != 32:
        raise ValueError(f"Derived shared secret length is not 32 bytes ({len(shared_secret)}).")

    return shared_secret


def nip04_encrypt(privkey_hex, pubkey_hex, plaintext):
    """NIP-04 encryption: base64(ciphertext) + '?iv=' + base64(iv)."""
    aes_key = _derive_shared_secret(privkey_hex, pubkey_hex)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded_plaintext = padder.update(plaintext.encode('utf-8')) + padder.finalize()

    iv = os.urandom(algorithms.AES.block_size // 8)

    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv), backend=default_backend()).encryptor()
    ciphertext = encryptor.update(padded_plaintext) + encryptor.finalize()

    return base64.b64encode(ciphertext).decode('ascii') + "?iv=" + base64.b64encode(iv).decode('ascii')


def nip04_decrypt(privkey_hex, pubkey_hex, encrypted_content):
    """NIP-04 decryption. Raises ValueError on malformed content."""
    parts = encrypted_content.split('?iv=')
    if len(parts) != 2:
        raise ValueError("Invalid NIP-04 content format: expected '<ciphertext>?iv=<iv>'.")

    ciphertext = base64.b64decode(parts[0])
    iv = base64.b64decode(parts[1])

    aes_key = _derive_shared_secret(privkey_hex, pubkey_hex)

    decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv), backend=default_backend()).decryptor()
    padded_plaintext = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    plaintext_bytes = unpadder.update(padded_plaintext) + unpadder.finalize()

    return plaintext_bytes.decode('utf-8')


def compute_event_id(event):
    """NIP-01 event id: sha256 of the compact [0, pubkey, created_at, kind, tags, content] array."""
    serialized = json.dumps([
        0,
        event['pubkey'],
        event['created_at'],
        event['kind'],
        event['tags'],
        event['content']
    ], separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


def prepare_event(event, pubkey):
    """Return a copy of an unsigned event with pubkey, created_at and id filled in."""
    prepared = {
        'kind': event['kind'],
        'created_at': event.get('created_at') or int(time.time()),
        'tags': [list(tag) for tag in event.get('tags', [])],
        'content': event.get('content', ''),
        'pubkey': pubkey,
    }
    prepared['id'] = compute_event_id(prepared)
    return prepared


def finalize_event(event, secret):
    """Sign an unsigned event with a hex or nsec secret; returns a new dict."""
    keys = Keys.parse(secret)
    signed = prepare_event(event, keys.public_key().to_hex())
    signed['sig'] = keys.sign_schnorr(bytes.fromhex(signed['id']))
    return signed


def attach_signature(event, sig):
    """Reassemble an event prepared elsewhere with a detached signature."""
    signed = dict(event)
    signed['sig'] = sig.lower()
    return signed


def verify_event(event):
    """True when the id matches the content and the signature is valid."""
    try:
        if compute_event_id(event) != event.get('id'):
            return False
        return Event.from_json(json.dumps(event)).verify()
    except Exception:
        return False


def normalize_secret(secret):
    """Accept a hex or nsec secret and return lowercase hex."""
    return SecretKey.parse(secret.strip()).to_hex()


def normalize_pubkey(pubkey):
    """Accept a hex or npub public key and return lowercase hex."""
    return PublicKey.parse(pubkey.strip().removeprefix('nostr:')).to_hex()


def public_key_from_secret(secret):
    return Keys.parse(secret).public_key().to_hex()


def generate_secret():
    return Keys.generate().secret_key().to_hex()


def is_hex_signature(value):
    return bool(value) and bool(HEX128.match(value))


def is_hex_key(value):
    return bool(value) and bool(HEX64.match(value))


def get_tag_values(event, name):
    return [tag[1] for tag in event.get('tags', []) if len(tag) >= 2 and tag[0] == name]
