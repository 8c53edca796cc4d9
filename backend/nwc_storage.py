import time
import secrets
import logging

from models import StorageKey
from nwc_client import parse_connection_string
from socketio_logger import get_socketio_logger

socketio_logger = get_socketio_logger()


class NWCStorage:
    """Saved wallet connections: a labelled list plus the id of the active one."""

    def __init__(self, store):
        self.store = store
        self.migrate_legacy()

    def migrate_legacy(self):
        """Turn a single walletConnectionString from older versions into a saved connection."""
        legacy = self.store.get(StorageKey.WALLET_CONNECTION_STRING)
        if not legacy or self.list_connections():
            return
        try:
            parse_connection_string(legacy)
        except ValueError as e:
            logging.warning(f"[NWC] Not migrating unreadable legacy connection: {e}")
            return
        connection = self._record(legacy, 'My Wallet', f"migrated-{int(time.time() * 1000)}")
        self._save_all([connection])
        self.store.set(StorageKey.NWC_ACTIVE_CONNECTION_ID, connection['id'])
        logging.info("[NWC] Migrated legacy wallet connection")

    @staticmethod
    def _record(uri, label, connection_id=None, capabilities=None):
        return {
            'id': connection_id or f"nwc-{int(time.time() * 1000)}-{secrets.token_hex(4)}",
            'label': label,
            'uri': uri,
            'capabilities': capabilities,
            'createdAt': int(time.time() * 1000),
        }

    def list_connections(self):
        connections = self.store.get_json(StorageKey.NWC_CONNECTIONS, default=[])
        return connections if isinstance(connections, list) else []

    def _save_all(self, connections):
        self.store.set_json(StorageKey.NWC_CONNECTIONS, connections)

    def store_nwc_connection(self, nwc_uri, label='My Wallet', capabilities=None, activate=True):
        """
        Validate and save a connection string.

        Returns:
            the saved record

        Raises:
            ValueError: the connection string does not parse
        """
        try:
            parse_connection_string(nwc_uri)
        except ValueError as e:
            socketio_logger.error(f"[NWC] Error storing connection: {e}")
            raise

        connections = self.list_connections()
        existing = next((c for c in connections if c.get('uri') == nwc_uri), None)
        if existing:
            existing['label'] = label or existing.get('label')
            if capabilities is not None:
                existing['capabilities'] = capabilities
            record = existing
        else:
            record = self._record(nwc_uri, label, capabilities=capabilities)
            connections.append(record)
        self._save_all(connections)

        if activate:
            self.set_active(record['id'])
        logging.info(f"[NWC] Saved connection '{record['label']}'")
        return record

    def delete_connection(self, connection_id):
        connections = [c for c in self.list_connections() if c.get('id') != connection_id]
        self._save_all(connections)
        if self.store.get(StorageKey.NWC_ACTIVE_CONNECTION_ID) == connection_id:
            self.store.remove(StorageKey.NWC_ACTIVE_CONNECTION_ID)

    def set_active(self, connection_id):
        if connection_id is None:
            self.store.remove(StorageKey.NWC_ACTIVE_CONNECTION_ID)
            return
        if not any(c.get('id') == connection_id for c in self.list_connections()):
            raise KeyError(connection_id)
        self.store.set(StorageKey.NWC_ACTIVE_CONNECTION_ID, connection_id)

    def get_active_connection(self):
        active_id = self.store.get(StorageKey.NWC_ACTIVE_CONNECTION_ID)
        if not active_id:
            return None
        return next((c for c in self.list_connections() if c.get('id') == active_id), None)

    def active_session(self):
        """Parsed session for the active connection, or None when none is usable."""
        connection = self.get_active_connection()
        if not connection:
            return None
        try:
            return parse_connection_string(connection['uri'])
        except (KeyError, ValueError) as e:
            logging.error(f"[NWC] Active connection is unusable: {e}")
            return None

    def clear_nwc_connection(self):
        """Remove every saved connection."""
        self.store.remove(StorageKey.NWC_CONNECTIONS)
        self.store.remove(StorageKey.NWC_ACTIVE_CONNECTION_ID)
        self.store.remove(StorageKey.WALLET_CONNECTION_STRING)
        return True
