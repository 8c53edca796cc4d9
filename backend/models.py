from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import time


# Nostr event kinds used by the zap flow
class EventKind:
    METADATA = 0
    ZAP_REQUEST = 9734
    ZAP_RECEIPT = 9735
    NWC_INFO = 13194
    NWC_REQUEST = 23194
    NWC_RESPONSE = 23195


class ErrorKind(Enum):
    NO_ADDRESS = 'NoAddress'
    MALFORMED_ADDRESS = 'MalformedAddress'
    DISCOVERY_UNREACHABLE = 'DiscoveryUnreachable'
    PROTOCOL_UNSUPPORTED = 'ProtocolUnsupported'
    AMOUNT_OUT_OF_RANGE = 'AmountOutOfRange'
    SIGNING_FAILED = 'SigningFailed'
    SIGNING_PENDING_EXTERNALLY = 'SigningPendingExternally'
    NO_INVOICE_RETURNED = 'NoInvoiceReturned'
    PUBLISH_FAILED = 'PublishFailed'
    SUBSCRIPTION_SETUP_FAILED = 'SubscriptionSetupFailed'
    SUBSCRIPTION_CLOSED = 'SubscriptionClosed'
    TIMEOUT = 'Timeout'
    WALLET_ERROR = 'WalletError'


# User-facing text for each failure, shown by the UI toast
NWC_ERROR_MESSAGES = {
    ErrorKind.NO_ADDRESS: {"text": "❌ Recipient has no Lightning address", "type": "error"},
    ErrorKind.MALFORMED_ADDRESS: {"text": "❌ Invalid Lightning address", "type": "error"},
    ErrorKind.DISCOVERY_UNREACHABLE: {"text": "❌ Recipient Lightning service unreachable", "type": "error"},
    ErrorKind.PROTOCOL_UNSUPPORTED: {"text": "❌ Recipient does not support zaps", "type": "error"},
    ErrorKind.AMOUNT_OUT_OF_RANGE: {"text": "❌ Amount outside the allowed range", "type": "error"},
    ErrorKind.SIGNING_FAILED: {"text": "❌ Could not sign zap request", "type": "error"},
    ErrorKind.SIGNING_PENDING_EXTERNALLY: {"text": "✍️ Waiting for external signer", "type": "info"},
    ErrorKind.NO_INVOICE_RETURNED: {"text": "❌ Recipient did not return an invoice", "type": "error"},
    ErrorKind.PUBLISH_FAILED: {"text": "❌ Could not reach wallet relays", "type": "error"},
    ErrorKind.SUBSCRIPTION_SETUP_FAILED: {"text": "❌ Could not listen for wallet reply", "type": "error"},
    ErrorKind.SUBSCRIPTION_CLOSED: {"text": "❌ Wallet relay closed the connection", "type": "error"},
    ErrorKind.TIMEOUT: {"text": "❌ Wallet not responding", "type": "error"},
    ErrorKind.WALLET_ERROR: {"text": "❌ Wallet rejected the payment", "type": "error"},
}


class SignInMethod(Enum):
    EXTENSION = 'extension'
    EXTERNAL_SIGNER = 'externalSigner'
    NSEC = 'nsec'
    ANONYMOUS = 'anonymous'


class ExchangeState(Enum):
    CREATED = 0
    PUBLISHED = 1
    AWAITING_RESPONSE = 2
    RESOLVED = 3
    ERRORED = 4
    TIMED_OUT = 5

    @property
    def is_terminal(self):
        return self in (ExchangeState.RESOLVED, ExchangeState.ERRORED, ExchangeState.TIMED_OUT)


class ZapStatus(Enum):
    PAID = 'paid'
    INVOICE_PRESENTED = 'invoice_presented'
    PENDING_SIGNATURE = 'pending_signature'
    FAILED = 'failed'


# Key names shared with the front-end storage layout
class StorageKey:
    PUBLIC_KEY = 'publicKey'
    PRIVATE_KEY = 'privateKey'
    ENCRYPTED_PRIVATE_KEY = 'encryptedPrivateKey'
    SIGN_IN_METHOD = 'signInMethod'
    WALLET_CONNECTION_STRING = 'walletConnectionString'
    NWC_CONNECTIONS = 'nwcConnections'
    NWC_ACTIVE_CONNECTION_ID = 'nwcActiveConnectionId'
    VALIDATION_CACHE_BLOB = 'validationCacheBlob'
    SIGN_ZAP_EVENT = 'SignZapEvent'


@dataclass(frozen=True)
class PaymentEndpoint:
    address: str
    callback_url: str
    min_sendable: int
    max_sendable: int
    supports_protocol_payments: bool
    comment_allowed: int = 0
    nostr_pubkey: Optional[str] = None

    def to_dict(self):
        return {
            'address': self.address,
            'callback': self.callback_url,
            'minSendable': self.min_sendable,
            'maxSendable': self.max_sendable,
            'allowsNostr': self.supports_protocol_payments,
            'commentAllowed': self.comment_allowed,
            'nostrPubkey': self.nostr_pubkey,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            address=data['address'],
            callback_url=data['callback'],
            min_sendable=int(data['minSendable']),
            max_sendable=int(data['maxSendable']),
            supports_protocol_payments=data.get('allowsNostr') is True,
            comment_allowed=int(data.get('commentAllowed') or 0),
            nostr_pubkey=data.get('nostrPubkey'),
        )


@dataclass(frozen=True)
class ZapTarget:
    """The post or profile receiving the zap."""
    pubkey: str
    event_id: Optional[str] = None
    zap_min_msat: Optional[int] = None
    zap_max_msat: Optional[int] = None
    address_override: Optional[str] = None
    relay_hints: tuple = ()

    @classmethod
    def from_event(cls, event: Dict[str, Any]):
        """Build a target from a kind 1 note, reading its zap-* tags."""
        zap_min = zap_max = override = None
        for tag in event.get('tags', []):
            if len(tag) < 2:
                continue
            if tag[0] == 'zap-lnurl' and tag[1]:
                override = tag[1]
            elif tag[0] == 'zap-min':
                zap_min = _parse_msat(tag[1])
            elif tag[0] == 'zap-max':
                zap_max = _parse_msat(tag[1])
        return cls(
            pubkey=event['pubkey'],
            event_id=event.get('id'),
            zap_min_msat=zap_min,
            zap_max_msat=zap_max,
            address_override=override,
        )


def _parse_msat(value):
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Invoice:
    payment_request: str
    amount_msat: int
    payment_hash: Optional[str] = None


@dataclass(frozen=True)
class WalletConnectSession:
    wallet_pubkey: str
    relays: tuple
    client_secret: str = field(repr=False)
    client_pubkey: str
    lud16: Optional[str] = None


@dataclass(frozen=True)
class RpcError:
    kind: ErrorKind
    code: str
    message: str


@dataclass
class NWCResponse:
    result_type: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[RpcError] = None

    @property
    def ok(self):
        return self.error is None and self.result is not None


@dataclass(frozen=True)
class WalletInfo:
    methods: List[str]
    notifications: Optional[List[str]] = None
    encryption: Optional[List[str]] = None


@dataclass
class ValidationCacheEntry:
    key: str
    valid: bool
    timestamp: float
    resolved_pubkey: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None

    def is_fresh(self, ttl, now=None):
        now = time.time() if now is None else now
        return now - self.timestamp < ttl


@dataclass(frozen=True)
class PendingSignature:
    event: Dict[str, Any]
    context: Dict[str, Any]
    created_at: float
    expires_at: float

    def expired(self, now=None):
        return (time.time() if now is None else now) >= self.expires_at

    def to_dict(self):
        return {
            'event': self.event,
            'context': self.context,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            event=data['event'],
            context=data.get('context') or {},
            created_at=float(data['created_at']),
            expires_at=float(data['expires_at']),
        )


@dataclass
class ZapOutcome:
    status: ZapStatus
    invoice: Optional[Invoice] = None
    preimage: Optional[str] = None
    fees_paid: Optional[int] = None
    error: Optional[Exception] = None
    zap_request_id: Optional[str] = None
    pending: Optional[PendingSignature] = None

    @property
    def error_kind(self):
        return getattr(self.error, 'kind', None)

    def to_dict(self):
        data = {
            'success': self.status in (ZapStatus.PAID, ZapStatus.INVOICE_PRESENTED, ZapStatus.PENDING_SIGNATURE),
            'status': self.status.value,
            'zap_request_id': self.zap_request_id,
        }
        if self.invoice:
            data['invoice'] = self.invoice.payment_request
            data['amount_msat'] = self.invoice.amount_msat
        if self.preimage:
            data['preimage'] = self.preimage
        if self.fees_paid is not None:
            data['fees_paid'] = self.fees_paid
        if self.error is not None:
            kind = self.error_kind
            data['error'] = kind.value if kind else 'Error'
            data['message'] = NWC_ERROR_MESSAGES[kind]['text'] if kind in NWC_ERROR_MESSAGES else str(self.error)
            data['detail'] = str(self.error)
        return data
