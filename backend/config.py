import pathlib
import configparser
from typing import List

config_path = pathlib.Path(__file__).parent.absolute() / "settings.ini"
user_config_path = pathlib.Path(__file__).parent.absolute() / "data/user_settings.ini"

config = configparser.ConfigParser()
config.read([config_path, user_config_path])


def update_config(section, option, value):
    """Persist a user override into data/user_settings.ini."""
    user_config = configparser.ConfigParser()
    user_config.read(user_config_path)
    if not user_config.has_section(section):
        user_config.add_section(section)
    user_config.set(section, option.lower(), str(value))
    user_config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(user_config_path, 'w') as f:
        user_config.write(f)
    config.read([config_path, user_config_path])


# Used when settings.ini is not installed next to this module
DEFAULT_RELAYS = ['wss://relay.damus.io', 'wss://relay.primal.net', 'wss://nos.lol']


def get_relay_list(parser=None) -> List[str]:
    """Get list of relays from config, falling back to DEFAULT_RELAYS."""
    parser = config if parser is None else parser
    try:
        relay_string = parser.get('NOSTR', 'relays')
    except (configparser.NoSectionError, configparser.NoOptionError):
        return list(DEFAULT_RELAYS)
    relays = [relay.strip() for relay in relay_string.split(',') if relay.strip()]
    return relays or list(DEFAULT_RELAYS)


def _getint(section, option, default):
    try:
        return config.getint(section, option)
    except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
        return default


def _getfloat(section, option, default):
    try:
        return config.getfloat(section, option)
    except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
        return default


NOSTR_RELAYS = get_relay_list()
APP_TAG = config.get('NOSTR', 'app_tag', fallback='pubpay')

# Zap request defaults (msat unless named otherwise)
DEFAULT_ZAP_MSAT = _getint('ZAP', 'default_zap_msat', 1000)
MAX_ZAP_SATS = _getint('ZAP', 'max_zap_sats', 21_000_000)
HTTP_TIMEOUT = _getfloat('ZAP', 'http_timeout', 10.0)

# Wallet connect timings in seconds
NWC_RPC_TIMEOUT = _getfloat('NWC', 'rpc_timeout', 60.0)
NWC_INFO_TIMEOUT = _getfloat('NWC', 'info_timeout', 10.0)
NWC_PUBLISH_TIMEOUT = _getfloat('NWC', 'publish_timeout', 10.0)

VALIDATION_CACHE_TTL = _getfloat('CACHE', 'validation_ttl', 300.0)

EXTERNAL_SIGNER_WAIT_TIMEOUT = _getfloat('SIGNER', 'external_wait_timeout', 120.0)
CLIPBOARD_RETRIES = _getint('SIGNER', 'clipboard_retries', 10)
CLIPBOARD_RETRY_DELAY = _getfloat('SIGNER', 'clipboard_retry_delay', 0.3)

DATA_DIR = config.get('STORAGE', 'data_dir', fallback='data')
