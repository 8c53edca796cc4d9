import logging

from errors import ZapError, SigningFailed, SigningPendingExternally, error_from_rpc
from models import PaymentEndpoint, ZapOutcome, ZapStatus, ZapTarget
from presentation import SocketIOInvoicePresenter
from socketio_logger import get_socketio_logger
from zap_request import build_zap_request

socketio_logger = get_socketio_logger()


class ZapDispatcher:
    """
    Runs one zap attempt end to end: resolve, build, sign, fetch invoice, pay.

    With a wallet connect client the invoice is paid through it and any failure
    ends the attempt; without one the invoice goes to the presenter. The two
    paths never chain into each other.
    """

    def __init__(self, resolver, signer, nwc_client=None, presenter=None, relays=()):
        self.resolver = resolver
        self.signer = signer
        self.nwc_client = nwc_client
        self.presenter = presenter or SocketIOInvoicePresenter()
        self.relays = tuple(relays)

    async def zap(self, target: ZapTarget, profile_content, amount_sats=None, comment='',
                  override_tags=()) -> ZapOutcome:
        try:
            endpoint = await self.resolver.resolve(profile_content, target)
            event, amount_msat = build_zap_request(target, endpoint, amount_sats=amount_sats, comment=comment,
                                                   relays=self.relays, override_tags=override_tags)
            socketio_logger.info(f"[ZAP] Signing zap request for {amount_msat // 1000} sats")
            signed = await self.signer.sign(event, context={
                'endpoint': endpoint.to_dict(),
                'amount_msat': amount_msat,
                'recipient': target.pubkey,
                'event_id': target.event_id,
            })
        except SigningPendingExternally as pending:
            socketio_logger.info("[ZAP] Waiting for external signer")
            return ZapOutcome(status=ZapStatus.PENDING_SIGNATURE, pending=pending.pending,
                              zap_request_id=pending.pending.event.get('id'))
        except ZapError as e:
            return self._failed(e)

        if self.signer.fallback_reason:
            logging.info(f"[ZAP] Signed anonymously ({self.signer.fallback_reason})")
        return await self._complete(endpoint, signed, amount_msat)

    async def resume_external(self, read_clipboard) -> ZapOutcome:
        """Continue an attempt that was waiting on the external signer."""
        if not hasattr(self.signer, 'resume'):
            return self._failed(SigningFailed("Current signer has no pending request"))
        try:
            signed, context = await self.signer.resume(read_clipboard)
            endpoint = PaymentEndpoint.from_dict(context['endpoint'])
            amount_msat = int(context['amount_msat'])
        except ZapError as e:
            return self._failed(e)
        except (KeyError, TypeError, ValueError) as e:
            return self._failed(SigningFailed(f"Pending request is missing its context: {e}"))
        return await self._complete(endpoint, signed, amount_msat)

    async def _complete(self, endpoint, signed, amount_msat) -> ZapOutcome:
        try:
            invoice = await self.resolver.request_invoice(endpoint, signed, amount_msat)
        except ZapError as e:
            return self._failed(e, signed.get('id'))

        if self.nwc_client is not None:
            return await self._pay_with_wallet(invoice, signed['id'])

        self.presenter.present(invoice, signed['id'])
        return ZapOutcome(status=ZapStatus.INVOICE_PRESENTED, invoice=invoice, zap_request_id=signed['id'])

    async def _pay_with_wallet(self, invoice, zap_request_id) -> ZapOutcome:
        response = await self.nwc_client.pay_invoice(invoice.payment_request)
        if not response.ok:
            # the wallet may already have attempted this invoice; showing it again risks paying twice
            return self._failed(error_from_rpc(response.error), zap_request_id, invoice)

        logging.info(f"[ZAP] Paid {invoice.amount_msat} msat for {zap_request_id[:8]}")
        return ZapOutcome(
            status=ZapStatus.PAID,
            invoice=invoice,
            preimage=response.result.get('preimage'),
            fees_paid=response.result.get('fees_paid'),
            zap_request_id=zap_request_id,
        )

    def _failed(self, error, zap_request_id=None, invoice=None) -> ZapOutcome:
        logging.error(f"[ZAP] {error.kind.value if error.kind else 'Error'}: {error}")
        socketio_logger.error(f"[ZAP] Zap failed: {error}")
        return ZapOutcome(status=ZapStatus.FAILED, error=error, zap_request_id=zap_request_id, invoice=invoice)
