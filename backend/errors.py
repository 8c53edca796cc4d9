from models import ErrorKind


class ZapError(Exception):
    """Base class for zap flow failures. Every failure carries its kind."""

    kind = None

    def __init__(self, message=None, kind=None):
        if kind is not None:
            self.kind = kind
        super().__init__(message or self.kind.value)


class NoAddress(ZapError):
    kind = ErrorKind.NO_ADDRESS


class MalformedAddress(ZapError):
    kind = ErrorKind.MALFORMED_ADDRESS


class DiscoveryUnreachable(ZapError):
    kind = ErrorKind.DISCOVERY_UNREACHABLE


class ProtocolUnsupported(ZapError):
    kind = ErrorKind.PROTOCOL_UNSUPPORTED


class AmountOutOfRange(ZapError):
    kind = ErrorKind.AMOUNT_OUT_OF_RANGE


class SigningFailed(ZapError):
    kind = ErrorKind.SIGNING_FAILED


class SigningPendingExternally(ZapError):
    """Raised by the external signer once the request has been handed off."""

    kind = ErrorKind.SIGNING_PENDING_EXTERNALLY

    def __init__(self, pending, message=None):
        self.pending = pending
        super().__init__(message or "Waiting for external signer")


class NoInvoiceReturned(ZapError):
    kind = ErrorKind.NO_INVOICE_RETURNED


class PublishFailed(ZapError):
    kind = ErrorKind.PUBLISH_FAILED


class SubscriptionSetupFailed(ZapError):
    kind = ErrorKind.SUBSCRIPTION_SETUP_FAILED


class SubscriptionClosed(ZapError):
    kind = ErrorKind.SUBSCRIPTION_CLOSED


class Timeout(ZapError):
    kind = ErrorKind.TIMEOUT


class WalletError(ZapError):
    kind = ErrorKind.WALLET_ERROR

    def __init__(self, code, message):
        self.code = code
        super().__init__(f"{code}: {message}")


def error_from_rpc(rpc_error):
    """Turn an RpcError result into the matching exception instance."""
    if rpc_error.kind is ErrorKind.WALLET_ERROR:
        return WalletError(rpc_error.code, rpc_error.message)
    for cls in (PublishFailed, SubscriptionSetupFailed, SubscriptionClosed, Timeout):
        if cls.kind is rpc_error.kind:
            return cls(rpc_error.message)
    return ZapError(rpc_error.message, kind=rpc_error.kind)
