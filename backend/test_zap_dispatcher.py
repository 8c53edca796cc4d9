"""End to end zap attempts against in-memory HTTP, relays and wallet."""

import json
import asyncio
from urllib.parse import parse_qs, urlsplit

from nostr_sdk import Keys

from errors import WalletError
from fakes import FakeClipboard, FakeHttp, FakeRelayPool, FakeWallet, preimage_for
from kv_store import MemoryStore
from lnurl import LightningAddressResolver
from models import ErrorKind, StorageKey, ZapStatus, ZapTarget
from nostr_crypto import generate_secret, public_key_from_secret, verify_event
from nwc_client import NWCClient
from presentation import CallbackInvoicePresenter
from signers import AnonymousSigner, ExternalSigner
from validation_cache import ValidationCache
from zap_dispatcher import ZapDispatcher

DISCOVERY = 'https://getalby.com/.well-known/lnurlp/alice'
CALLBACK = 'https://getalby.com/lnurlp/alice/callback'
INVOICE = 'lnbc210n1pzapinvoicenotreal'
RECIPIENT = 'cd' * 32
NOTE = 'ef' * 32
PROFILE = json.dumps({'name': 'alice', 'lud16': 'alice@getalby.com'})

PAYABLE = {
    'callback': CALLBACK,
    'minSendable': 1000,
    'maxSendable': 100000000,
    'allowsNostr': True,
    'nostrPubkey': 'ab' * 32,
    'commentAllowed': 100,
}


class SpySigner(AnonymousSigner):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def sign(self, event, context=None):
        self.calls += 1
        return await super().sign(event, context)


def make_dispatcher(discovery=(200, PAYABLE), invoice_body=None, wallet=None, signer=None):
    http = FakeHttp({
        DISCOVERY: discovery,
        CALLBACK: (200, invoice_body if invoice_body is not None else {'pr': INVOICE, 'routes': []}),
    })
    resolver = LightningAddressResolver(http=http, cache=ValidationCache())
    presented = []
    nwc = None
    if wallet is not None:
        nwc = NWCClient(wallet.uri(), pool=FakeRelayPool(responder=wallet), timeout=2)
    dispatcher = ZapDispatcher(resolver, signer or SpySigner(), nwc_client=nwc,
                               presenter=CallbackInvoicePresenter(presented.append),
                               relays=['wss://relay.example'])
    return dispatcher, http, presented


def test_without_wallet_invoice_is_presented():
    dispatcher, http, presented = make_dispatcher()

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT, event_id=NOTE), PROFILE, amount_sats=21,
                                         comment='great post'))

    assert outcome.status is ZapStatus.INVOICE_PRESENTED
    assert outcome.invoice.payment_request == INVOICE
    assert presented == [{'bolt11': INVOICE, 'amount': 21, 'eventId': outcome.zap_request_id,
                          'uri': f'lightning:{INVOICE}'}]
    assert len(http.calls_to(CALLBACK)) == 1


def test_signed_request_reaches_callback():
    dispatcher, http, _ = make_dispatcher()

    asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT, event_id=NOTE), PROFILE, amount_sats=21))

    query = parse_qs(urlsplit(http.calls_to(CALLBACK)[0]).query)
    zap_request = json.loads(query['nostr'][0])
    assert verify_event(zap_request)
    assert zap_request['kind'] == 9734
    assert ['e', NOTE] in zap_request['tags']
    assert query['amount'] == ['21000']


def test_wallet_pays_and_nothing_is_presented():
    wallet = FakeWallet()
    dispatcher, _, presented = make_dispatcher(wallet=wallet)

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))

    assert outcome.status is ZapStatus.PAID
    assert outcome.preimage == preimage_for(INVOICE)
    assert presented == []
    assert wallet.requests == [{'method': 'pay_invoice', 'params': {'invoice': INVOICE}}]
    assert outcome.to_dict()['success'] is True


def test_wallet_failure_is_terminal():
    wallet = FakeWallet(errors={INVOICE: ('INSUFFICIENT_BALANCE', 'not enough sats')})
    dispatcher, _, presented = make_dispatcher(wallet=wallet)

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))

    assert outcome.status is ZapStatus.FAILED
    assert isinstance(outcome.error, WalletError)
    assert outcome.error.code == 'INSUFFICIENT_BALANCE'
    assert presented == []
    assert outcome.to_dict()['error'] == 'WalletError'


def test_silent_wallet_times_out_without_presenting():
    wallet = FakeWallet(silent=True)
    dispatcher, _, presented = make_dispatcher(wallet=wallet)
    dispatcher.nwc_client.timeout = 0.1

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))

    assert outcome.error_kind is ErrorKind.TIMEOUT
    assert presented == []


def test_endpoint_without_nostr_never_signs_or_calls_back():
    signer = SpySigner()
    dispatcher, http, presented = make_dispatcher(discovery=(200, dict(PAYABLE, allowsNostr=False)), signer=signer)

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))

    assert outcome.error_kind is ErrorKind.PROTOCOL_UNSUPPORTED
    assert signer.calls == 0
    assert http.calls_to(CALLBACK) == []
    assert presented == []


def test_profile_without_address():
    dispatcher, http, _ = make_dispatcher()
    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), '{"name": "bob"}', amount_sats=21))
    assert outcome.error_kind is ErrorKind.NO_ADDRESS
    assert http.calls == []


def test_amount_out_of_range_stops_before_signing():
    signer = SpySigner()
    dispatcher, _, _ = make_dispatcher(signer=signer)
    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=1_000_000))
    assert outcome.error_kind is ErrorKind.AMOUNT_OUT_OF_RANGE
    assert signer.calls == 0


def test_callback_without_invoice():
    dispatcher, _, presented = make_dispatcher(invoice_body={'status': 'ERROR', 'reason': 'nope'})
    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))
    assert outcome.error_kind is ErrorKind.NO_INVOICE_RETURNED
    assert outcome.zap_request_id
    assert presented == []


def test_external_signer_pending_then_resumed():
    secret = generate_secret()
    store = MemoryStore({StorageKey.PUBLIC_KEY: public_key_from_secret(secret)})
    launched = []
    signer = ExternalSigner(store, launched.append, clipboard_retries=2, retry_delay=0)
    dispatcher, http, presented = make_dispatcher(signer=signer)

    first = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT, event_id=NOTE), PROFILE, amount_sats=21))

    assert first.status is ZapStatus.PENDING_SIGNATURE
    assert len(launched) == 1
    assert http.calls_to(CALLBACK) == []

    signature = Keys.parse(secret).sign_schnorr(bytes.fromhex(first.zap_request_id))
    second = asyncio.run(dispatcher.resume_external(FakeClipboard(signature)))

    assert second.status is ZapStatus.INVOICE_PRESENTED
    assert second.zap_request_id == first.zap_request_id
    assert second.invoice.amount_msat == 21000
    assert len(presented) == 1
    assert store.get(StorageKey.SIGN_ZAP_EVENT) is None


def test_resume_without_pending_request_fails():
    store = MemoryStore({StorageKey.PUBLIC_KEY: 'ab' * 32})
    dispatcher, _, _ = make_dispatcher(signer=ExternalSigner(store, lambda uri: None, clipboard_retries=1))
    outcome = asyncio.run(dispatcher.resume_external(FakeClipboard('')))
    assert outcome.error_kind is ErrorKind.SIGNING_FAILED


def test_wallet_reply_without_result_fails_cleanly():
    class EmptyReplyWallet(FakeWallet):
        def _result(self, payload):
            return {'result_type': payload['method'], 'result': None, 'error': None}

    dispatcher, _, presented = make_dispatcher(wallet=EmptyReplyWallet())

    outcome = asyncio.run(dispatcher.zap(ZapTarget(pubkey=RECIPIENT), PROFILE, amount_sats=21))

    assert outcome.status is ZapStatus.FAILED
    assert isinstance(outcome.error, WalletError)
    assert outcome.error.code == 'OTHER'
    assert presented == []
