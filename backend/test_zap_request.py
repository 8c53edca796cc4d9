import pytest

import config
from errors import AmountOutOfRange, ProtocolUnsupported
from models import EventKind, PaymentEndpoint, ZapTarget
from zap_request import (amount_out_of_range, parse_amount_sats, resolve_amount_msat, check_amount,
                         build_zap_request)

RECIPIENT = 'cd' * 32
NOTE = 'ef' * 32

ENDPOINT = PaymentEndpoint(address='alice@getalby.com', callback_url='https://getalby.com/cb',
                           min_sendable=1000, max_sendable=10_000_000, supports_protocol_payments=True,
                           comment_allowed=10)


def tag(event, name):
    return next((t for t in event['tags'] if t[0] == name), None)


@pytest.mark.parametrize('amount,expected', [
    (999, True),
    (1000, False),
    (5000, False),
    (10_000_000, False),
    (10_000_001, True),
])
def test_amount_out_of_range(amount, expected):
    assert amount_out_of_range(1000, 10_000_000, amount) is expected


def test_amount_resolution_order():
    assert resolve_amount_msat(ZapTarget(pubkey=RECIPIENT, zap_min_msat=5000), 21) == 21000
    assert resolve_amount_msat(ZapTarget(pubkey=RECIPIENT, zap_min_msat=5000)) == 5000
    assert resolve_amount_msat(ZapTarget(pubkey=RECIPIENT)) == config.DEFAULT_ZAP_MSAT


def test_amount_sats_must_be_a_real_integer():
    assert parse_amount_sats(None) is None
    assert parse_amount_sats(21) == 21
    for value in (True, False, 21.0, '21', [21]):
        with pytest.raises(AmountOutOfRange):
            parse_amount_sats(value)


def test_boolean_amount_is_not_a_one_sat_zap():
    with pytest.raises(AmountOutOfRange):
        build_zap_request(ZapTarget(pubkey=RECIPIENT), ENDPOINT, amount_sats=True)


@pytest.mark.parametrize('amount_msat', [0, -1000, 999, 10_000_001])
def test_check_amount_rejects_outside_endpoint(amount_msat):
    with pytest.raises(AmountOutOfRange):
        check_amount(amount_msat, ENDPOINT)


def test_check_amount_applies_sanity_ceiling():
    wide = PaymentEndpoint(address='a@b.com', callback_url='https://b.com/cb', min_sendable=1,
                           max_sendable=10 ** 15, supports_protocol_payments=True)
    check_amount(config.MAX_ZAP_SATS * 1000, wide)
    with pytest.raises(AmountOutOfRange):
        check_amount(config.MAX_ZAP_SATS * 1000 + 1, wide)


def test_check_amount_honours_post_range():
    target = ZapTarget(pubkey=RECIPIENT, zap_min_msat=5000, zap_max_msat=8000)
    check_amount(5000, ENDPOINT, target)
    check_amount(8000, ENDPOINT, target)
    with pytest.raises(AmountOutOfRange):
        check_amount(4000, ENDPOINT, target)
    with pytest.raises(AmountOutOfRange):
        check_amount(9000, ENDPOINT, target)


def test_build_zap_request_tags():
    target = ZapTarget(pubkey=RECIPIENT, event_id=NOTE)

    event, amount_msat = build_zap_request(target, ENDPOINT, amount_sats=21, comment='gm',
                                           relays=['wss://one.example', 'wss://two.example'])

    assert amount_msat == 21000
    assert event['kind'] == EventKind.ZAP_REQUEST
    assert event['content'] == 'gm'
    assert [t[0] for t in event['tags']] == ['p', 'e', 'amount', 'relays', 'zap-lnurl', 't']
    assert tag(event, 'p') == ['p', RECIPIENT]
    assert tag(event, 'e') == ['e', NOTE]
    assert tag(event, 'amount') == ['amount', '21000']
    assert tag(event, 'relays') == ['relays', 'wss://one.example', 'wss://two.example']
    assert tag(event, 'zap-lnurl') == ['zap-lnurl', 'alice@getalby.com']
    assert tag(event, 't') == ['t', config.APP_TAG]
    assert 'id' not in event and 'sig' not in event


def test_profile_zap_has_no_event_tag():
    event, _ = build_zap_request(ZapTarget(pubkey=RECIPIENT), ENDPOINT, amount_sats=1)
    assert tag(event, 'e') is None


def test_relays_fall_back_to_hints_then_config():
    hinted = ZapTarget(pubkey=RECIPIENT, relay_hints=('wss://hint.example',))
    event, _ = build_zap_request(hinted, ENDPOINT, amount_sats=1)
    assert tag(event, 'relays') == ['relays', 'wss://hint.example']

    event, _ = build_zap_request(ZapTarget(pubkey=RECIPIENT), ENDPOINT, amount_sats=1)
    assert tag(event, 'relays') == ['relays', *config.NOSTR_RELAYS]


def test_comment_is_truncated_to_endpoint_limit():
    event, _ = build_zap_request(ZapTarget(pubkey=RECIPIENT), ENDPOINT, amount_sats=1,
                                 comment='a much longer comment')
    assert event['content'] == 'a much lon'


def test_override_tags_replace_defaults():
    event, _ = build_zap_request(ZapTarget(pubkey=RECIPIENT), ENDPOINT, amount_sats=1,
                                 override_tags=[['t', 'custom'], ['t', 'second'], ['client', 'pubzap']])
    assert [t for t in event['tags'] if t[0] == 't'] == [['t', 'custom'], ['t', 'second']]
    assert tag(event, 'client') == ['client', 'pubzap']
    assert tag(event, 'p') == ['p', RECIPIENT]


def test_endpoint_without_nostr_support_is_rejected():
    plain = PaymentEndpoint(address='bob@example.com', callback_url='https://example.com/cb',
                            min_sendable=1000, max_sendable=10_000_000, supports_protocol_payments=False)
    with pytest.raises(ProtocolUnsupported):
        build_zap_request(ZapTarget(pubkey=RECIPIENT), plain, amount_sats=1)


def test_amount_below_post_minimum_is_rejected_before_building():
    target = ZapTarget(pubkey=RECIPIENT, zap_min_msat=5000)
    with pytest.raises(AmountOutOfRange):
        build_zap_request(target, ENDPOINT, amount_sats=2)
