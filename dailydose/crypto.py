# dailydose/crypto.py
# AES-256-GCM sealing for the local database, and the key that seals it.
# On Android the raw key is wrapped with an RSA key pair that lives in the
# AndroidKeyStore; elsewhere it is kept as a plain key file.

import os
import uuid
import logging
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

try:
    from jnius import autoclass
except Exception:
    autoclass = None

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32
KEYSTORE_ALIAS = "dailydose_key_v1"
_RSA_TRANSFORM = "RSA/ECB/OAEPWithSHA-256AndMGF1Padding"

_KEY_LOCK = RLock()


def on_android() -> bool:
    return autoclass is not None and "ANDROID_ARGUMENT" in os.environ


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < NONCE_SIZE:
        raise InvalidTag("ciphertext too short")
    return AESGCM(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)


# -------------------------
# AndroidKeyStore wrapping
# -------------------------
def _keystore():
    KeyStore = autoclass("java.security.KeyStore")
    ks = KeyStore.getInstance("AndroidKeyStore")
    ks.load(None)
    if not ks.containsAlias(KEYSTORE_ALIAS):
        KeyPairGenerator = autoclass("java.security.KeyPairGenerator")
        KeyProperties = autoclass("android.security.keystore.KeyProperties")
        SpecBuilder = autoclass("android.security.keystore.KeyGenParameterSpec$Builder")
        purposes = int(KeyProperties.PURPOSE_ENCRYPT) | int(KeyProperties.PURPOSE_DECRYPT)
        spec = (SpecBuilder(KEYSTORE_ALIAS, purposes)
                .setDigests([KeyProperties.DIGEST_SHA256])
                .setEncryptionPaddings([KeyProperties.ENCRYPTION_PADDING_RSA_OAEP])
                .build())
        kpg = KeyPairGenerator.getInstance(KeyProperties.KEY_ALGORITHM_RSA, "AndroidKeyStore")
        kpg.initialize(spec)
        kpg.generateKeyPair()
        logger.info("created keystore alias %s", KEYSTORE_ALIAS)
    return ks


def _rsa(mode_name: str, key_obj, data: bytes) -> bytes:
    Cipher = autoclass("javax.crypto.Cipher")
    cipher = Cipher.getInstance(_RSA_TRANSFORM)
    cipher.init(getattr(Cipher, mode_name), key_obj)
    return bytes(cipher.doFinal(data))


def wrap_key(raw_key: bytes) -> bytes:
    ks = _keystore()
    pub = ks.getCertificate(KEYSTORE_ALIAS).getPublicKey()
    return _rsa("ENCRYPT_MODE", pub, raw_key)


def unwrap_key(wrapped: bytes) -> bytes:
    ks = _keystore()
    priv = ks.getEntry(KEYSTORE_ALIAS, None).getPrivateKey()
    return _rsa("DECRYPT_MODE", priv, wrapped)


# -------------------------
# Key file
# -------------------------
class KeyUnavailableError(RuntimeError):
    """A key file exists but could not be read back into a key."""


def _read_key(key_path: Path) -> Optional[bytes]:
    if not key_path.exists():
        return None
    blob = key_path.read_bytes()
    # never regenerate over an existing file: the sealed db would be lost
    if on_android():
        try:
            k = unwrap_key(blob)
        except Exception as e:
            raise KeyUnavailableError(f"could not unwrap {key_path}: {e}") from e
        if len(k) != KEY_SIZE:
            raise KeyUnavailableError(f"unwrapped key from {key_path} has {len(k)} bytes")
        return k
    if len(blob) < KEY_SIZE:
        raise KeyUnavailableError(f"key file {key_path} is truncated ({len(blob)} bytes)")
    return blob[:KEY_SIZE]


def _write_key(key_path: Path, key: bytes):
    if on_android():
        try:
            atomic_write_bytes(key_path, wrap_key(key))
            logger.info("key stored: android keystore")
            return
        except Exception:
            logger.exception("key wrap failed; storing key file")
    atomic_write_bytes(key_path, key)
    logger.info("key stored: file")


def load_or_create_key(key_path: Path) -> bytes:
    with _KEY_LOCK:
        key = _read_key(key_path)
        if key:
            return key
        key = AESGCM.generate_key(bit_length=256)
        _write_key(key_path, key)
        return key
