import config
import asyncio
import threading
import os
import logging
import importlib
from errors import AmountOutOfRange
from models import SignInMethod, StorageKey, ZapStatus, ZapTarget
from socketio_logger import init_socketio, get_socketio_logger, emit_event
from kv_store import EncryptedFileStore
from lnurl import LightningAddressResolver, validate_address_format
from nip05 import Nip05Validator
from nostr_crypto import normalize_secret, normalize_pubkey, public_key_from_secret
from nwc_client import NWCClient
from nwc_storage import NWCStorage
from relay_pool import RelayPool
from secret_storage import encrypt_private_key
from signers import select_signer, signer_from_store
from validation_cache import ValidationCache
from zap_dispatcher import ZapDispatcher
from zap_request import parse_amount_sats
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS


BASE_DIR = os.path.dirname(os.path.abspath(__file__))
FRONTEND_DIR = os.path.join(os.path.dirname(BASE_DIR), 'frontend', 'build')

app = Flask(__name__, static_folder=FRONTEND_DIR)
CORS(app, resources={r"/*": {"origins": "*"}}, supports_credentials=True)
socketio = init_socketio(app)

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
socketio_logger = get_socketio_logger()

store = EncryptedFileStore(os.path.join(BASE_DIR, config.DATA_DIR))
nwc_storage = NWCStorage(store)
validation_cache = ValidationCache(store=store)
resolver = LightningAddressResolver(cache=validation_cache)
nip05_validator = Nip05Validator(cache=validation_cache)
relay_pool = RelayPool()

# All engine coroutines run on one loop so the relay pool is shared
engine_loop = asyncio.new_event_loop()
threading.Thread(target=engine_loop.run_forever, name='zap-engine', daemon=True).start()


def run_engine(coro, timeout=None):
    """Run a coroutine on the engine loop and block this request thread for the result."""
    return asyncio.run_coroutine_threadsafe(coro, engine_loop).result(timeout)


def launch_external_signer(uri):
    """The browser owns the device; it opens the nostrsigner: URI for us."""
    if not emit_event('external_signer', {'uri': uri}):
        raise RuntimeError("No connected client to open the external signer")


def current_signer(data):
    if data.get('anonymous'):
        return select_signer(SignInMethod.ANONYMOUS)
    return signer_from_store(store, launcher=launch_external_signer, password=data.get('password'))


def current_nwc_client():
    session = nwc_storage.active_session()
    return NWCClient(session, pool=relay_pool) if session else None


def build_dispatcher(signer):
    return ZapDispatcher(resolver, signer, nwc_client=current_nwc_client(), relays=config.NOSTR_RELAYS)


def outcome_response(outcome):
    body = outcome.to_dict()
    if outcome.status is ZapStatus.FAILED:
        return jsonify(body), 400
    return jsonify(body), 200


def reload_config():
    """ Reload the settings by reloading the config module """
    importlib.reload(config)


#Settings Route(s)

@app.route('/api/settings', methods=['GET', 'POST'])
def settings():
    try:
        if request.method == 'POST':
            data = request.json
            for key, value in data.items():
                section, _, option = key.partition('_')
                if config.config.has_option(section, option.lower()):
                    config.update_config(section, option, str(value))
            reload_config()
            return jsonify({"message": "Settings updated and applied successfully!"})

        # GET method
        reload_config()
        settings_dict = {}
        for section in config.config.sections():
            for option in config.config.options(section):
                value = config.config.get(section, option)
                if value.isdigit():
                    value = int(value)
                elif value.replace('.', '', 1).isdigit():
                    value = float(value)
                settings_dict[f"{section.upper()}_{option.upper()}"] = value
        return jsonify(settings_dict)

    except Exception as e:
        logger.exception(f"Error handling settings request: {e}")
        return jsonify({"error": str(e)}), 500


#Sign-in handling

@app.route('/api/signin', methods=['GET', 'POST', 'DELETE'])
def manage_signin():
    if request.method == 'POST':
        data = request.get_json() or {}
        method = data.get('method')
        try:
            SignInMethod(method)
        except ValueError:
            return jsonify({'success': False, 'message': f'Unknown sign-in method: {method}'}), 400

        if data.get('pubkey'):
            try:
                store.set(StorageKey.PUBLIC_KEY, normalize_pubkey(data['pubkey']))
            except Exception:
                return jsonify({'success': False, 'message': 'Invalid public key'}), 400
        store.set(StorageKey.SIGN_IN_METHOD, method)
        socketio_logger.info(f"[SIGNER] Signed in with {method}")
        return jsonify({'success': True, 'method': method})

    elif request.method == 'GET':
        return jsonify({
            'success': True,
            'method': store.get(StorageKey.SIGN_IN_METHOD),
            'pubkey': store.get(StorageKey.PUBLIC_KEY),
        })

    elif request.method == 'DELETE':
        for key in (StorageKey.SIGN_IN_METHOD, StorageKey.PUBLIC_KEY, StorageKey.PRIVATE_KEY,
                    StorageKey.ENCRYPTED_PRIVATE_KEY, StorageKey.SIGN_ZAP_EVENT):
            store.remove(key)
        return jsonify({'success': True, 'message': 'Signed out'})


#Secure NSEC Handling API

@app.route('/api/nsec', methods=['GET', 'POST', 'DELETE'])
def manage_nsec():
    if request.method == 'POST':
        data = request.get_json() or {}
        nsec = data.get('nsec')
        if not nsec:
            return jsonify({'success': False, 'message': 'NSEC is required'}), 400

        try:
            secret = normalize_secret(nsec)
        except Exception:
            return jsonify({'success': False, 'message': 'Invalid NSEC format'}), 400

        store.set(StorageKey.ENCRYPTED_PRIVATE_KEY, encrypt_private_key(secret, data.get('password')))
        store.remove(StorageKey.PRIVATE_KEY)
        store.set(StorageKey.PUBLIC_KEY, public_key_from_secret(secret))
        store.set(StorageKey.SIGN_IN_METHOD, SignInMethod.NSEC.value)
        return jsonify({'success': True, 'message': 'NSEC stored successfully'})

    elif request.method == 'GET':
        has_nsec = bool(store.get(StorageKey.ENCRYPTED_PRIVATE_KEY) or store.get(StorageKey.PRIVATE_KEY))
        signer = select_signer(SignInMethod.NSEC, store=store)
        return jsonify({
            'success': True,
            'has_nsec': has_nsec,
            'requires_password': has_nsec and getattr(signer, 'requires_password', False),
        })

    elif request.method == 'DELETE':
        store.remove(StorageKey.ENCRYPTED_PRIVATE_KEY)
        store.remove(StorageKey.PRIVATE_KEY)
        if store.get(StorageKey.SIGN_IN_METHOD) == SignInMethod.NSEC.value:
            store.remove(StorageKey.SIGN_IN_METHOD)
        return jsonify({'success': True, 'message': 'NSEC cleared successfully'})


#--- Begin Zap and NWC ----

@app.route('/api/nwc', methods=['GET', 'POST', 'DELETE'])
def manage_nwc():
    """Manage saved NWC connections."""
    if request.method == 'POST':
        data = request.get_json() or {}
        nwc_uri = data.get('nwc_uri')
        if not nwc_uri:
            return jsonify({'success': False, 'message': 'NWC URI is required'}), 400
        try:
            record = nwc_storage.store_nwc_connection(nwc_uri, label=data.get('label') or 'My Wallet')
        except ValueError as e:
            return jsonify({'success': False, 'message': str(e)}), 400
        return jsonify({'success': True, 'id': record['id'], 'message': 'NWC connection stored successfully'})

    elif request.method == 'GET':
        active = nwc_storage.get_active_connection()
        session = nwc_storage.active_session()
        # Return safe info (no secrets)
        return jsonify({
            'success': True,
            'has_nwc': session is not None,
            'active_id': active['id'] if active else None,
            'connections': [{'id': c['id'], 'label': c.get('label'), 'capabilities': c.get('capabilities')}
                            for c in nwc_storage.list_connections()],
            'connection_info': {
                'relays': list(session.relays),
                'wallet_pubkey_preview': session.wallet_pubkey[:8] + '...',
                'connected': True,
            } if session else None,
        })

    elif request.method == 'DELETE':
        connection_id = (request.get_json(silent=True) or {}).get('id')
        if connection_id:
            nwc_storage.delete_connection(connection_id)
        else:
            nwc_storage.clear_nwc_connection()
        return jsonify({'success': True, 'message': 'NWC connection cleared successfully'})


@app.route('/api/nwc/active', methods=['POST'])
def set_active_nwc():
    connection_id = (request.get_json() or {}).get('id')
    try:
        nwc_storage.set_active(connection_id)
    except KeyError:
        return jsonify({'success': False, 'message': 'Unknown connection'}), 404
    return jsonify({'success': True, 'active_id': connection_id})


@app.route('/api/test_nwc', methods=['POST'])
def test_nwc_connection():
    """Test an NWC connection string and store it when the wallet answers."""
    data = request.get_json() or {}
    nwc_uri = data.get('nwc_uri')
    if not nwc_uri:
        return jsonify({'success': False, 'message': 'NWC URI is required'}), 400

    try:
        client = NWCClient(nwc_uri, pool=relay_pool)
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e), 'stored': False}), 400

    try:
        test_result = run_engine(client.test_connection())
    except Exception as e:
        socketio_logger.error(f"[NWC] Error testing connection: {e}")
        return jsonify({'success': False, 'message': f'Connection test failed: {e}', 'stored': False}), 500

    if test_result.get('success'):
        socketio_logger.info("[NWC] Connection test passed, storing connection")
        nwc_storage.store_nwc_connection(
            nwc_uri,
            label=data.get('label') or 'My Wallet',
            capabilities={'methods': test_result['capabilities'],
                          'notifications': test_result['notifications']},
        )
        test_result['stored'] = True
        test_result['message'] = test_result['message'] + ' Connection stored securely.'
    else:
        socketio_logger.error("[NWC] Connection test failed, not storing")
        test_result['stored'] = False
    return jsonify(test_result)


@app.route('/api/balance', methods=['GET'])
def get_balance():
    client = current_nwc_client()
    if client is None:
        return jsonify({'success': False, 'message': 'No Lightning wallet connected'}), 400
    response = run_engine(client.get_balance())
    if not response.ok:
        return jsonify({'success': False, 'error': response.error.kind.value,
                        'message': response.error.message}), 400
    return jsonify({'success': True, 'balance_msat': response.result.get('balance')})


@app.route('/api/payable', methods=['GET'])
def check_payable():
    address = request.args.get('address', '')
    valid, error = validate_address_format(address)
    if not valid:
        return jsonify({'success': True, 'payable': False, 'message': error})
    return jsonify({'success': True, 'payable': run_engine(resolver.is_payable(address))})


@app.route('/api/nip05', methods=['GET'])
def check_nip05():
    nip05 = request.args.get('nip05', '')
    pubkey = request.args.get('pubkey')
    return jsonify({'success': True, 'valid': run_engine(nip05_validator.validate(nip05, pubkey))})


@app.route('/api/send_zap', methods=['POST'])
def send_zap():
    """Zap a note or profile: resolve, sign, fetch invoice, pay or present."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"success": False, "message": "Invalid request format"}), 400

    try:
        if data.get('event'):
            target = ZapTarget.from_event(data['event'])
        else:
            target = ZapTarget(
                pubkey=normalize_pubkey(data.get('recipient_pubkey', '')),
                event_id=data.get('note_id'),
                address_override=data.get('zap_lnurl'),
            )
    except Exception as e:
        socketio_logger.error(f"[ZAP] Invalid zap target: {e}")
        return jsonify({"success": False, "message": "Recipient pubkey is required"}), 400

    profile = data.get('profile') or {'lud16': data.get('recipient_lud16', '')}
    try:
        amount_sats = parse_amount_sats(data.get('amount_sats'))
    except AmountOutOfRange:
        return jsonify({"success": False, "message": "Zap amount must be a whole number of sats"}), 400

    signer = current_signer(data)
    socketio_logger.info(f"[ZAP] Zapping {target.pubkey[:8]} with {signer.method.value} signer")
    dispatcher = build_dispatcher(signer)
    outcome = run_engine(dispatcher.zap(target, profile, amount_sats=amount_sats, comment=data.get('message', '')))
    return outcome_response(outcome)


@app.route('/api/signer/resume', methods=['POST'])
def resume_signer():
    """Called when the app returns to the foreground with the signer's clipboard content."""
    data = request.get_json() or {}
    clipboard = data.get('clipboard', '')
    signer = signer_from_store(store, launcher=launch_external_signer)
    dispatcher = build_dispatcher(signer)
    outcome = run_engine(dispatcher.resume_external(lambda: clipboard))
    return outcome_response(outcome)


@app.route('/api/signer/pending', methods=['GET', 'DELETE'])
def pending_signature():
    signer = select_signer(SignInMethod.EXTERNAL_SIGNER, store=store, launcher=launch_external_signer)
    pending = signer.pending() if hasattr(signer, 'pending') else None
    if request.method == 'DELETE':
        if hasattr(signer, 'cancel'):
            signer.cancel()
        return jsonify({'success': True, 'message': 'External signing cancelled'})
    return jsonify({
        'success': True,
        'pending': pending is not None,
        'expires_at': pending.expires_at if pending else None,
        'event_id': pending.event.get('id') if pending else None,
    })


# Static file routes
@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def serve_static(path):
    if path and os.path.exists(os.path.join(app.static_folder, path)):
        return send_from_directory(app.static_folder, path)
    return send_from_directory(app.static_folder, 'index.html')


if __name__ == '__main__':

    socketio.run(app, debug=True, host='0.0.0.0', allow_unsafe_werkzeug=True)
