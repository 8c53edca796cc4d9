import os
import json
import base64
import platform
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KDF_ITERATIONS = 100000


def get_system_data():
    """Get system-specific data for device-bound key derivation."""
    machine_id_path = '/etc/machine-id'
    if os.path.exists(machine_id_path):
        with open(machine_id_path, 'r') as f:
            return f.read().strip()

    if platform.system() == 'Windows':
        return platform.node()
    try:
        return os.uname().nodename
    except AttributeError:
        return platform.node()


def derive_key(material, salt):
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(material.encode()))


def derive_fernet(material, salt):
    return Fernet(derive_key(material, salt))


def encrypt_private_key(secret, password=None):
    """
    Encrypt a secret key for the key-value store.

    Without a password the key is bound to this device (machine id); with a
    password the user must supply it again before signing.

    Returns:
        JSON string blob safe to persist
    """
    salt = os.urandom(16)
    mode = 'password' if password else 'device'
    fernet = derive_fernet(password if password else get_system_data(), salt)
    return json.dumps({
        'mode': mode,
        'salt': base64.b64encode(salt).decode('ascii'),
        'token': fernet.encrypt(secret.encode()).decode('ascii'),
    })


def requires_password(blob):
    try:
        return json.loads(blob).get('mode') == 'password'
    except (TypeError, ValueError):
        return False


def decrypt_private_key(blob, password=None):
    """
    Decrypt a blob produced by encrypt_private_key.

    Raises:
        ValueError: malformed blob, missing password or wrong password
    """
    try:
        data = json.loads(blob)
        salt = base64.b64decode(data['salt'])
        token = data['token'].encode('ascii')
    except (TypeError, ValueError, KeyError) as e:
        raise ValueError(f"Stored key is not readable: {e}")

    if data.get('mode') == 'password':
        if not password:
            raise ValueError("Password required to unlock the stored key")
        material = password
    else:
        material = get_system_data()

    try:
        return derive_fernet(material, salt).decrypt(token).decode()
    except InvalidToken:
        raise ValueError("The password you entered is incorrect")
