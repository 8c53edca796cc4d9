import json
import asyncio
import logging
import urllib.parse
from typing import Any, Dict, Optional, Tuple

import aiohttp
import bolt11

import config
from errors import (NoAddress, MalformedAddress, DiscoveryUnreachable, ProtocolUnsupported,
                    NoInvoiceReturned)
from models import PaymentEndpoint, Invoice, ZapTarget
from validation_cache import ValidationCache

MAX_ADDRESS_LENGTH = 320
MAX_LOCALPART_LENGTH = 64


class HttpClient:
    """Minimal async JSON GET used for LNURL discovery and callbacks."""

    def __init__(self, timeout=None):
        self.timeout = config.HTTP_TIMEOUT if timeout is None else timeout

    async def get_json(self, url) -> Tuple[int, Optional[Any]]:
        """
        Returns:
            (HTTP status, decoded JSON body or None when the body is not JSON)

        Raises:
            aiohttp.ClientError, asyncio.TimeoutError on transport failure
        """
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url, headers={'Accept': 'application/json'}, allow_redirects=True) as response:
                try:
                    body = await response.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    body = None
                return response.status, body


def validate_address_format(address) -> Tuple[bool, Optional[str]]:
    """Strict user@domain.tld check for lightning addresses."""
    if not address or not isinstance(address, str):
        return False, 'Lightning address is required'

    trimmed = address.strip()
    if len(trimmed) > MAX_ADDRESS_LENGTH:
        return False, f'Lightning address cannot exceed {MAX_ADDRESS_LENGTH} characters'
    if trimmed.count('@') != 1:
        return False, 'Lightning address must contain exactly one @ symbol'

    local_part, domain = trimmed.split('@')
    if not local_part:
        return False, 'Lightning address must have a username before @'
    if len(local_part) > MAX_LOCALPART_LENGTH:
        return False, f'Username part cannot exceed {MAX_LOCALPART_LENGTH} characters'
    if not domain:
        return False, 'Lightning address must have a domain after @'
    if '.' not in domain or domain.startswith('.') or domain.endswith('.'):
        return False, 'Lightning address domain is invalid'
    if any(c.isspace() for c in trimmed) or '/' in domain:
        return False, 'Lightning address cannot contain spaces or slashes'
    return True, None


def normalize_address(address):
    return address.strip().lower()


def parse_address(address) -> Tuple[str, str]:
    valid, error = validate_address_format(address)
    if not valid:
        raise MalformedAddress(f"{address!r}: {error}")
    local_part, domain = normalize_address(address).split('@')
    return local_part, domain


def discovery_url(local_part, domain):
    # .onion services are only reachable over plain http through tor
    protocol = 'http' if domain.endswith('.onion') else 'https'
    return f"{protocol}://{domain}/.well-known/lnurlp/{urllib.parse.quote(local_part)}"


def parse_profile_content(profile_content) -> Dict[str, Any]:
    """Kind 0 content as a dict; anything unparseable is an empty profile."""
    if isinstance(profile_content, dict):
        return profile_content
    if not profile_content:
        return {}
    try:
        data = json.loads(profile_content)
    except (TypeError, ValueError):
        logging.warning("[LNURL] Profile metadata is not valid JSON, treating as empty")
        return {}
    return data if isinstance(data, dict) else {}


def select_address(profile_content, override=None):
    """The post's zap-lnurl override wins over the profile lud16."""
    if override and override.strip():
        return override.strip()
    lud16 = parse_profile_content(profile_content).get('lud16')
    if isinstance(lud16, str) and lud16.strip():
        return lud16.strip()
    raise NoAddress("No lightning address found for recipient")


def build_callback_url(callback, params):
    separator = '&' if '?' in callback else '?'
    return f"{callback}{separator}{urllib.parse.urlencode(params, quote_via=urllib.parse.quote)}"


class LightningAddressResolver:
    """Resolves LUD-16 addresses to zap-capable LNURL-pay endpoints."""

    def __init__(self, http=None, cache=None):
        self.http = http or HttpClient()
        self.cache = cache if cache is not None else ValidationCache()

    async def resolve(self, profile_content, target: Optional[ZapTarget] = None) -> PaymentEndpoint:
        override = target.address_override if target else None
        address = select_address(profile_content, override)
        if override:
            logging.info(f"[LNURL] Using zap-lnurl override {address}")
        return await self.discover(address)

    async def discover(self, address) -> PaymentEndpoint:
        local_part, domain = parse_address(address)
        normalized = f"{local_part}@{domain}"
        key = f"lud16:{normalized}"

        cached = self.cache.get(key)
        if cached is not None:
            if cached.valid and cached.detail:
                logging.info(f"[LNURL] Cache hit for {normalized}")
                return PaymentEndpoint.from_dict(cached.detail)
            if not cached.valid:
                logging.info(f"[LNURL] Cached negative result for {normalized}: {cached.reason}")
                if cached.reason == DiscoveryUnreachable.kind.value:
                    raise DiscoveryUnreachable(f"{normalized} was unreachable (cached)")
                raise ProtocolUnsupported(f"{normalized} does not support zaps (cached)")

        return await self.cache.coalesce(key, lambda: self._fetch(normalized, local_part, domain, key))

    async def _fetch(self, normalized, local_part, domain, key) -> PaymentEndpoint:
        url = discovery_url(local_part, domain)
        logging.info(f"[LNURL] Resolving {normalized} -> {url}")

        try:
            status, body = await self.http.get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logging.error(f"[LNURL] Network error resolving {normalized}: {e}")
            self.cache.put(key, False, reason=DiscoveryUnreachable.kind.value)
            raise DiscoveryUnreachable(f"Failed to fetch {url}: {e}")

        try:
            endpoint = self._parse_discovery(normalized, status, body)
        except ProtocolUnsupported as e:
            logging.error(f"[LNURL] {e}")
            self.cache.put(key, False, reason=ProtocolUnsupported.kind.value)
            raise

        logging.info(f"[LNURL] {normalized} callback {endpoint.callback_url} "
                     f"min {endpoint.min_sendable} msat max {endpoint.max_sendable} msat")
        self.cache.put(key, True, resolved_pubkey=endpoint.nostr_pubkey, detail=endpoint.to_dict())
        return endpoint

    def _parse_discovery(self, address, status, body) -> PaymentEndpoint:
        if not 200 <= status < 300:
            raise ProtocolUnsupported(f"{address}: discovery returned HTTP {status}")
        if not isinstance(body, dict):
            raise ProtocolUnsupported(f"{address}: discovery response is not a JSON object")
        if body.get('status') == 'ERROR':
            raise ProtocolUnsupported(f"{address}: {body.get('reason', 'provider error')}")
        if body.get('allowsNostr') is not True:
            raise ProtocolUnsupported(f"{address}: no nostr support")
        callback = body.get('callback')
        if not isinstance(callback, str) or not callback:
            raise ProtocolUnsupported(f"{address}: missing callback")
        try:
            min_sendable = int(body['minSendable'])
            max_sendable = int(body['maxSendable'])
        except (KeyError, TypeError, ValueError):
            raise ProtocolUnsupported(f"{address}: missing amount limits")

        return PaymentEndpoint(
            address=address,
            callback_url=callback,
            min_sendable=min_sendable,
            max_sendable=max_sendable,
            supports_protocol_payments=True,
            comment_allowed=int(body.get('commentAllowed') or 0),
            nostr_pubkey=body.get('nostrPubkey'),
        )

    async def is_payable(self, address) -> bool:
        """Boolean form of discover() for list views."""
        try:
            await self.discover(address)
            return True
        except (MalformedAddress, DiscoveryUnreachable, ProtocolUnsupported):
            return False

    async def request_invoice(self, endpoint: PaymentEndpoint, signed_request, amount_msat) -> Invoice:
        """Submit the signed zap request to the endpoint callback and return the invoice."""
        url = build_callback_url(endpoint.callback_url, {
            'amount': amount_msat,
            'nostr': json.dumps(signed_request, separators=(',', ':')),
            'lnurl': endpoint.address,
        })
        logging.info(f"[LNURL] Requesting invoice for {amount_msat} msat from {endpoint.address} "
                     f"(zap request {signed_request.get('id', '')[:8]})")

        try:
            status, body = await self.http.get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logging.error(f"[LNURL] Network error requesting invoice: {e}")
            raise DiscoveryUnreachable(f"Invoice callback unreachable: {e}")

        if not isinstance(body, dict):
            raise NoInvoiceReturned(f"Callback returned HTTP {status} without JSON")
        if body.get('status') == 'ERROR':
            raise NoInvoiceReturned(f"Invoice request error: {body.get('reason', 'unreported reason')}")
        payment_request = body.get('pr')
        if not isinstance(payment_request, str) or not payment_request:
            raise NoInvoiceReturned("No invoice (pr) in callback response")

        invoice = self._decode_invoice(payment_request, amount_msat)
        logging.info(f"[LNURL] Got invoice {payment_request[:32]}...")
        return invoice

    def _decode_invoice(self, payment_request, amount_msat) -> Invoice:
        try:
            decoded = bolt11.decode(payment_request)
        except Exception as e:
            logging.warning(f"[LNURL] Could not decode bolt11 invoice, using requested amount: {e}")
            return Invoice(payment_request=payment_request, amount_msat=amount_msat)

        invoice_amount = decoded.amount_msat
        if invoice_amount and int(invoice_amount) != int(amount_msat):
            raise NoInvoiceReturned(
                f"Invoice amount {invoice_amount} msat does not match requested {amount_msat} msat")
        return Invoice(
            payment_request=payment_request,
            amount_msat=amount_msat,
            payment_hash=decoded.payment_hash,
        )
