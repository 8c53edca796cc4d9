import logging

from models import Invoice
from socketio_logger import emit_event


class InvoicePresenter:
    """Hands an invoice to the user when no wallet connection is configured."""

    def present(self, invoice: Invoice, zap_request_id=None):
        raise NotImplementedError


def invoice_payload(invoice: Invoice, zap_request_id=None):
    return {
        'bolt11': invoice.payment_request,
        'amount': invoice.amount_msat // 1000,
        'eventId': zap_request_id,
        'uri': f"lightning:{invoice.payment_request}",
    }


class SocketIOInvoicePresenter(InvoicePresenter):
    """Pushes an 'invoice' event so the browser can show a QR code and wallet link."""

    def present(self, invoice: Invoice, zap_request_id=None):
        logging.info(f"[ZAP] Presenting invoice for {invoice.amount_msat} msat")
        return emit_event('invoice', invoice_payload(invoice, zap_request_id))


class CallbackInvoicePresenter(InvoicePresenter):
    def __init__(self, callback):
        self.callback = callback

    def present(self, invoice: Invoice, zap_request_id=None):
        return self.callback(invoice_payload(invoice, zap_request_id))
