import os
import json
import logging
import threading
from cryptography.fernet import Fernet
from secret_storage import derive_key, get_system_data


class KeyValueStore:
    """Synchronous string key-value store the engine persists state into."""

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def remove(self, key):
        raise NotImplementedError

    def get_json(self, key, default=None):
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logging.warning(f"[STORE] Ignoring unreadable value under '{key}'")
            return default

    def set_json(self, key, value):
        self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    def __init__(self, initial=None):
        self._data = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def remove(self, key):
        with self._lock:
            self._data.pop(key, None)


class EncryptedFileStore(KeyValueStore):
    """
    Fernet-encrypted JSON file under data_dir, keyed to this machine.

    The whole map is rewritten on every change; the store holds a handful of
    small values.
    """

    def __init__(self, data_dir, name='.pubzap_store'):
        self.storage_path = os.path.join(data_dir, name)
        self._lock = threading.Lock()
        self._ensure_key()

    def _ensure_key(self):
        """Create or load encryption key."""
        key_path = self.storage_path + '_key'
        if not os.path.exists(key_path):
            key = derive_key(get_system_data(), b'pubzap_kv_storage')
            os.makedirs(os.path.dirname(key_path), exist_ok=True)
            with open(key_path, 'wb') as f:
                f.write(key)
        else:
            with open(key_path, 'rb') as f:
                key = f.read()

        self.fernet = Fernet(key)

    def _load(self):
        if not os.path.exists(self.storage_path):
            return {}
        with open(self.storage_path, 'rb') as f:
            encrypted_data = f.read()
        return json.loads(self.fernet.decrypt(encrypted_data))

    def _save(self, data):
        encrypted_data = self.fernet.encrypt(json.dumps(data).encode())
        os.makedirs(os.path.dirname(self.storage_path), exist_ok=True)
        tmp_path = self.storage_path + '.tmp'
        with open(tmp_path, 'wb') as f:
            f.write(encrypted_data)
        os.replace(tmp_path, self.storage_path)

    def get(self, key):
        with self._lock:
            return self._load().get(key)

    def set(self, key, value):
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key):
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)

    def clear(self):
        with self._lock:
            if os.path.exists(self.storage_path):
                os.remove(self.storage_path)
