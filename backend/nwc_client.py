import json
import time
import asyncio
import logging
import urllib.parse
from typing import Any, Dict, Optional

import config
from errors import PublishFailed, SubscriptionSetupFailed
from models import (EventKind, ErrorKind, ExchangeState, NWCResponse, RpcError, WalletConnectSession,
                    WalletInfo)
from nostr_crypto import (nip04_encrypt, nip04_decrypt, finalize_event, verify_event, normalize_secret,
                          normalize_pubkey, public_key_from_secret, is_hex_key, get_tag_values)
from relay_pool import RelayPool
from socketio_logger import get_socketio_logger

socketio_logger = get_socketio_logger()

NWC_SCHEMES = ('nostr+walletconnect://', 'nostrnwc://')


def parse_connection_string(uri) -> WalletConnectSession:
    """
    Parse a NIP-47 connection string.

    Accepts nostr+walletconnect:// and nostrnwc://, the wallet pubkey in the
    host or the path, repeated or comma separated relay params, and a hex or
    nsec secret.

    Raises:
        ValueError: missing or invalid pubkey, relay or secret
    """
    if not uri or not isinstance(uri, str):
        raise ValueError("Empty NWC connection string")

    uri = uri.strip()
    scheme = next((s for s in NWC_SCHEMES if uri.lower().startswith(s)), None)
    if scheme is None:
        raise ValueError("Invalid NWC URI format - must start with nostr+walletconnect://")

    parts = urllib.parse.urlsplit('https://' + uri[len(scheme):])
    wallet_pubkey = (parts.netloc or parts.path.lstrip('/')).strip()
    if parts.netloc and parts.path.strip('/'):
        logging.debug("[NWC] Ignoring path component after wallet pubkey")
    if not wallet_pubkey:
        raise ValueError("Missing wallet pubkey in NWC URI")
    if wallet_pubkey.startswith('npub'):
        wallet_pubkey = normalize_pubkey(wallet_pubkey)
    if not is_hex_key(wallet_pubkey):
        raise ValueError("Wallet pubkey must be 64 hex characters")

    params = urllib.parse.parse_qs(parts.query)

    relays = []
    for value in params.get('relay', []):
        for relay in value.split(','):
            relay = relay.strip()
            if relay and relay not in relays:
                relays.append(relay)
    if not relays:
        raise ValueError("Missing relay parameter in NWC URI")

    secret = (params.get('secret') or [''])[0].strip()
    if not secret:
        raise ValueError("Missing secret parameter in NWC URI")
    if secret.startswith('nsec'):
        try:
            secret = normalize_secret(secret)
        except Exception:
            raise ValueError("Invalid nsec secret in NWC URI")
    if not is_hex_key(secret):
        raise ValueError("Secret must be 64 hex characters or an nsec")
    secret = secret.lower()

    lud16 = (params.get('lud16') or [None])[0]

    return WalletConnectSession(
        wallet_pubkey=wallet_pubkey.lower(),
        relays=tuple(relays),
        client_secret=secret,
        client_pubkey=public_key_from_secret(secret),
        lud16=lud16,
    )


class RpcExchange:
    """One request/response round trip. The first terminal outcome wins."""

    def __init__(self, request_id, method, params, timeout):
        self.request_id = request_id
        self.method = method
        self.params = params
        self.created_at = time.time()
        self.timeout = timeout
        self.timeout_at = None
        self.state = ExchangeState.CREATED
        self.future = asyncio.get_running_loop().create_future()

    def advance(self, state):
        if not self.state.is_terminal:
            self.state = state

    def _finish(self, state, response):
        """Move to a terminal state. Returns False when already terminal."""
        if self.state.is_terminal:
            return False
        self.state = state
        if not self.future.done():
            self.future.set_result(response)
        return True

    def __repr__(self):
        return f"<RpcExchange {self.method} {self.request_id[:8]} {self.state.name}>"


def _error_response(method, kind, message, code=None):
    return NWCResponse(result_type=method, error=RpcError(kind=kind, code=code or kind.name, message=message))


class NWCClient:
    """
    NIP-47 wallet connect client.

    Every RPC is an independent exchange correlated by request event id, so
    any number of calls may be in flight on one session and one relay pool.
    Failures come back as NWCResponse.error rather than exceptions.
    """

    def __init__(self, session, pool=None, timeout=None, info_timeout=None):
        if isinstance(session, str):
            session = parse_connection_string(session)
        self.session: WalletConnectSession = session
        self.pool = pool or RelayPool()
        self.timeout = config.NWC_RPC_TIMEOUT if timeout is None else timeout
        self.info_timeout = config.NWC_INFO_TIMEOUT if info_timeout is None else info_timeout

        logging.info(f"[NWC] Initialized client with wallet: {self.session.wallet_pubkey[:8]}...")
        logging.info(f"[NWC] Client pubkey: {self.session.client_pubkey[:8]}...")
        logging.info(f"[NWC] Relays: {', '.join(self.session.relays)}")

    def _build_request_event(self, method, params):
        content = nip04_encrypt(
            self.session.client_secret,
            self.session.wallet_pubkey,
            json.dumps({'method': method, 'params': params}),
        )
        return finalize_event({
            'kind': EventKind.NWC_REQUEST,
            'content': content,
            'tags': [['p', self.session.wallet_pubkey], ['encryption', 'nip04']],
        }, self.session.client_secret)

    def _parse_response(self, exchange, event) -> Optional[NWCResponse]:
        """Decrypt a candidate response; None means "not ours or unreadable", keep listening."""
        if event.get('kind') != EventKind.NWC_RESPONSE or event.get('pubkey') != self.session.wallet_pubkey:
            return None
        if exchange.request_id not in get_tag_values(event, 'e'):
            return None
        if not verify_event(event):
            logging.warning(f"[NWC] Dropping response with bad signature for {exchange.request_id[:8]}")
            return None
        try:
            payload = json.loads(nip04_decrypt(self.session.client_secret, self.session.wallet_pubkey,
                                               event.get('content', '')))
        except (ValueError, TypeError, UnicodeDecodeError) as e:
            logging.warning(f"[NWC] Could not decrypt response for {exchange.request_id[:8]}: {e}")
            return None
        if not isinstance(payload, dict):
            return None

        result_type = payload.get('result_type', exchange.method)
        error = payload.get('error')
        result = payload.get('result')
        if error is not None:
            if isinstance(error, dict) and (error.get('code') or error.get('message')):
                code = error.get('code') or 'OTHER'
                message = error.get('message') or code
            elif error and not isinstance(error, dict):
                code, message = 'OTHER', str(error)
            elif result is not None:
                # some wallets send "error": {} alongside a real result
                return NWCResponse(result_type=result_type, result=result)
            else:
                code, message = 'OTHER', 'Wallet returned an empty error'
            return NWCResponse(
                result_type=result_type,
                error=RpcError(kind=ErrorKind.WALLET_ERROR, code=code, message=message),
            )
        if result is None:
            return NWCResponse(
                result_type=result_type,
                error=RpcError(kind=ErrorKind.WALLET_ERROR, code='OTHER', message='Wallet returned no result'),
            )
        return NWCResponse(result_type=result_type, result=result)

    async def _request(self, method, params, timeout=None) -> NWCResponse:
        """Run one exchange: subscribe, publish, wait for the correlated response or timeout."""
        timeout = self.timeout if timeout is None else timeout
        event = self._build_request_event(method, params)
        exchange = RpcExchange(event['id'], method, params, timeout)
        relays = list(self.session.relays)

        def on_event(candidate):
            if exchange.state.is_terminal:
                return
            response = self._parse_response(exchange, candidate)
            if response is None:
                return
            state = ExchangeState.ERRORED if response.error else ExchangeState.RESOLVED
            if exchange._finish(state, response):
                logging.info(f"[NWC] {method} {exchange.request_id[:8]} -> {state.name}")

        def on_closed(reason):
            exchange._finish(ExchangeState.ERRORED, _error_response(
                method, ErrorKind.SUBSCRIPTION_CLOSED, f"Relay closed before wallet replied: {reason}"))

        def on_timeout():
            if exchange._finish(ExchangeState.TIMED_OUT, _error_response(
                    method, ErrorKind.TIMEOUT, f"Wallet did not respond within {timeout}s")):
                logging.error(f"[NWC] {method} {exchange.request_id[:8]} timed out after {timeout}s")

        subscription = None
        timer = None
        try:
            filters = [{
                'kinds': [EventKind.NWC_RESPONSE],
                'authors': [self.session.wallet_pubkey],
                '#p': [self.session.client_pubkey],
                '#e': [exchange.request_id],
            }]
            # 23195 is ephemeral, so listen before the request goes out
            try:
                subscription = await self.pool.subscribe(filters, relays, on_event, on_closed=on_closed)
            except SubscriptionSetupFailed as e:
                exchange._finish(ExchangeState.ERRORED, _error_response(
                    method, ErrorKind.SUBSCRIPTION_SETUP_FAILED, str(e)))
                return exchange.future.result()

            try:
                await self.pool.publish(event, relays)
            except PublishFailed as e:
                exchange._finish(ExchangeState.ERRORED, _error_response(method, ErrorKind.PUBLISH_FAILED, str(e)))
                return exchange.future.result()

            exchange.advance(ExchangeState.PUBLISHED)
            logging.info(f"[NWC] Sent {method} request {exchange.request_id[:8]}")
            loop = asyncio.get_running_loop()
            exchange.timeout_at = time.time() + timeout
            timer = loop.call_later(timeout, on_timeout)
            exchange.advance(ExchangeState.AWAITING_RESPONSE)

            return await exchange.future
        finally:
            if timer is not None:
                timer.cancel()
            if not exchange.future.done():
                exchange.future.cancel()
            if subscription is not None:
                await subscription.close()

    async def pay_invoice(self, bolt11, amount_msat=None, timeout=None) -> NWCResponse:
        params: Dict[str, Any] = {'invoice': bolt11}
        if amount_msat is not None:
            params['amount'] = int(amount_msat)
        socketio_logger.info("[NWC] Sending payment to wallet...")
        response = await self._request('pay_invoice', params, timeout)
        if response.ok:
            socketio_logger.info("[NWC] Payment confirmed by wallet")
        else:
            socketio_logger.error(f"[NWC] Payment failed: {response.error.message}")
        return response

    async def get_balance(self, timeout=None) -> NWCResponse:
        return await self._request('get_balance', {}, timeout)

    async def make_invoice(self, amount_msat, description=None, expiry=None, timeout=None) -> NWCResponse:
        params: Dict[str, Any] = {'amount': int(amount_msat)}
        if description is not None:
            params['description'] = description
        if expiry is not None:
            params['expiry'] = int(expiry)
        return await self._request('make_invoice', params, timeout)

    async def list_invoices(self, params=None, timeout=None) -> NWCResponse:
        """Incoming transactions, exposed as result['invoices']."""
        request_params = dict(params or {})
        request_params['type'] = 'incoming'
        response = await self._request('list_transactions', request_params, timeout)
        if response.ok and isinstance(response.result, dict):
            response.result.setdefault('invoices', response.result.get('transactions', []))
        return response

    async def lookup_invoice(self, payment_hash=None, invoice=None, timeout=None) -> NWCResponse:
        if not payment_hash and not invoice:
            raise ValueError("lookup_invoice needs a payment_hash or an invoice")
        params = {'payment_hash': payment_hash} if payment_hash else {'invoice': invoice}
        return await self._request('lookup_invoice', params, timeout)

    async def get_info(self, timeout=None) -> Optional[WalletInfo]:
        """
        Read the wallet's kind 13194 capability event.

        Returns None when the wallet cannot be found in time; this is "unknown",
        not an error.
        """
        timeout = self.info_timeout if timeout is None else timeout
        filters = [{'kinds': [EventKind.NWC_INFO], 'authors': [self.session.wallet_pubkey], 'limit': 1}]
        try:
            events = await asyncio.wait_for(
                self.pool.query(filters, list(self.session.relays), timeout), timeout)
        except (SubscriptionSetupFailed, asyncio.TimeoutError) as e:
            logging.warning(f"[NWC] Wallet info unavailable: {e or 'timeout'}")
            return None

        events = [e for e in events if e.get('pubkey') == self.session.wallet_pubkey]
        if not events:
            logging.info("[NWC] No wallet info event found")
            return None

        latest = max(events, key=lambda e: e.get('created_at', 0))
        content = (latest.get('content') or '').strip()
        notifications = get_tag_values(latest, 'notifications')
        encryption = get_tag_values(latest, 'encryption')
        return WalletInfo(
            methods=content.split() if content else [],
            notifications=notifications[0].split() if notifications else None,
            encryption=encryption[0].split() if encryption else None,
        )

    @classmethod
    async def validate(cls, uri, pool=None) -> bool:
        """True when the URI parses and the wallet advertises at least one method."""
        try:
            client = cls(uri, pool=pool)
        except ValueError as e:
            logging.info(f"[NWC] Connection string rejected: {e}")
            return False
        info = await client.get_info()
        return bool(info and info.methods)

    async def test_connection(self) -> Dict[str, Any]:
        """
        Test the NWC connection by requesting wallet info (kind 13194).

        Returns:
            Dict with success status and connection details
        """
        relay_list = ', '.join(self.session.relays)
        logging.info(f"[NWC] Testing connection to wallet via relays: {relay_list}")
        socketio_logger.info(f"[NWC] Connecting to relays: {relay_list}")

        info = await self.get_info()
        if info is None:
            socketio_logger.error("[NWC] Timeout - wallet may be offline or relay unreachable")
            return {
                'success': False,
                'error': 'Timeout waiting for wallet response. Wallet may be offline or relay unreachable.'
            }

        if not info.methods:
            return {'success': False, 'error': 'Wallet advertises no supported methods'}
        if 'pay_invoice' not in info.methods:
            logging.warning("[NWC] Wallet does not advertise pay_invoice")

        socketio_logger.info(f"[NWC] Wallet supports: {' '.join(info.methods)}")
        return {
            'success': True,
            'relays': list(self.session.relays),
            'wallet_pubkey': self.session.wallet_pubkey[:8] + '...',
            'capabilities': info.methods,
            'notifications': info.notifications or [],
            'encryption': info.encryption or [],
            'message': 'Connection successful!',
        }
