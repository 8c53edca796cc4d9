import time
import logging

import config
from errors import AmountOutOfRange, ProtocolUnsupported
from models import EventKind, PaymentEndpoint, ZapTarget


def amount_out_of_range(min_msat, max_msat, amount_msat):
    return amount_msat < min_msat or amount_msat > max_msat


def parse_amount_sats(value):
    """Whole sats from a request body; None when absent. bool is not a number here."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise AmountOutOfRange(f"Zap amount must be a whole number of sats, got {value!r}")
    return value


def resolve_amount_msat(target: ZapTarget, amount_sats=None):
    """Explicit sats win; otherwise the post's zap-min; otherwise the configured default."""
    amount_sats = parse_amount_sats(amount_sats)
    if amount_sats is not None:
        return amount_sats * 1000
    if target.zap_min_msat is not None:
        return int(target.zap_min_msat)
    return config.DEFAULT_ZAP_MSAT


def check_amount(amount_msat, endpoint: PaymentEndpoint, target: ZapTarget = None):
    if amount_msat <= 0:
        raise AmountOutOfRange(f"Amount must be positive, got {amount_msat} msat")
    ceiling = config.MAX_ZAP_SATS * 1000
    if amount_msat > ceiling:
        raise AmountOutOfRange(f"Amount {amount_msat} msat exceeds the {config.MAX_ZAP_SATS} sat limit")

    if amount_out_of_range(endpoint.min_sendable, endpoint.max_sendable, amount_msat):
        raise AmountOutOfRange(
            f"{amount_msat} msat outside {endpoint.address} range "
            f"{endpoint.min_sendable}-{endpoint.max_sendable} msat")

    if target is not None:
        low = target.zap_min_msat if target.zap_min_msat is not None else 0
        high = target.zap_max_msat if target.zap_max_msat is not None else ceiling
        if amount_out_of_range(low, high, amount_msat):
            raise AmountOutOfRange(f"{amount_msat} msat outside the post's range {low}-{high} msat")


def build_zap_request(target: ZapTarget, endpoint: PaymentEndpoint, amount_sats=None, comment='',
                      relays=(), override_tags=()):
    """
    Build the unsigned kind 9734 zap request for a target.

    Returns:
        (event dict, amount in msat)

    Raises:
        ProtocolUnsupported: endpoint cannot accept zap requests
        AmountOutOfRange: amount rejected by the sanity ceiling, the endpoint or the post
    """
    if not endpoint.supports_protocol_payments:
        raise ProtocolUnsupported(f"{endpoint.address} does not accept zap requests")

    amount_msat = resolve_amount_msat(target, amount_sats)
    check_amount(amount_msat, endpoint, target)

    comment = comment or ''
    if endpoint.comment_allowed and len(comment) > endpoint.comment_allowed:
        logging.info(f"[ZAP] Truncating comment to {endpoint.comment_allowed} characters")
        comment = comment[:endpoint.comment_allowed]

    relay_list = list(relays) or list(target.relay_hints) or list(config.NOSTR_RELAYS)

    tags = [['p', target.pubkey]]
    if target.event_id:
        tags.append(['e', target.event_id])
    tags.append(['amount', str(amount_msat)])
    tags.append(['relays', *relay_list])
    tags.append(['zap-lnurl', endpoint.address])
    tags.append(['t', config.APP_TAG])

    overrides = [list(tag) for tag in override_tags if tag]
    if overrides:
        replaced = {tag[0] for tag in overrides}
        tags = [tag for tag in tags if tag[0] not in replaced] + overrides

    event = {
        'kind': EventKind.ZAP_REQUEST,
        'created_at': int(time.time()),
        'content': comment,
        'tags': tags,
    }
    logging.info(f"[ZAP] Built zap request for {target.pubkey[:8]} amount {amount_msat} msat")
    return event, amount_msat
