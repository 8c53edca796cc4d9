import asyncio
import logging
import urllib.parse

import aiohttp

from lnurl import HttpClient
from validation_cache import ValidationCache


class Nip05Validator:
    """Checks that a name@domain identifier maps to the expected pubkey."""

    def __init__(self, http=None, cache=None):
        self.http = http or HttpClient(timeout=5)
        self.cache = cache if cache is not None else ValidationCache()

    async def validate(self, nip05, expected_pubkey=None) -> bool:
        if not nip05 or not isinstance(nip05, str):
            return False

        parts = nip05.strip().split('@')
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return False
        name, domain = parts[0].lower(), parts[1].lower()

        key = f"nip05:{name}@{domain}"
        cached = self.cache.get(key)
        if cached is not None:
            return self._matches(cached.valid, cached.resolved_pubkey, expected_pubkey)

        registered = await self.cache.coalesce(key, lambda: self._lookup(key, name, domain))
        return self._matches(registered is not None, registered, expected_pubkey)

    @staticmethod
    def _matches(valid, registered, expected_pubkey):
        if not valid:
            return False
        if expected_pubkey is None:
            return True
        return bool(registered) and registered.lower() == expected_pubkey.lower()

    async def _lookup(self, key, name, domain):
        url = f"https://{domain}/.well-known/nostr.json?name={urllib.parse.quote(name)}"
        try:
            status, body = await self.http.get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            # Many NIP-05 hosts refuse or time out; not worth more than debug
            logging.debug(f"[NIP05] {name}@{domain} unreachable: {e}")
            self.cache.put(key, False)
            return None

        names = body.get('names') if isinstance(body, dict) else None
        registered = names.get(name) if isinstance(names, dict) else None
        if not 200 <= status < 300 or not isinstance(registered, str) or not registered:
            self.cache.put(key, False)
            return None

        self.cache.put(key, True, resolved_pubkey=registered)
        return registered
