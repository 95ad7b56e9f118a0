"""AES-256-CBC envelope used for secrets stored in the storage table.

A protected value is ``base64(json({"iv": b64, "value": b64, "mac": hex}))``
where ``mac`` is HMAC-SHA256 over ``iv + value`` keyed with the same secret.
"""

import base64
import hashlib
import hmac
import json
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from common.exceptions import ConfigurationError

_BLOCK_SIZE_BITS = 128


def _key_bytes(key: str) -> bytes:
    raw = key.encode("utf-8")
    if len(raw) != 32:
        raise ConfigurationError(
            "Storage config encryption key must be 32 bytes",
            details={"length": len(raw)},
        )
    return raw


def _mac(iv_b64: str, value_b64: str, key: bytes) -> str:
    return hmac.new(key, (iv_b64 + value_b64).encode("utf-8"), hashlib.sha256).hexdigest()


def encrypt_field(plain_text: str, key: str) -> str:
    """Encrypt a value into the stored envelope format."""
    key_raw = _key_bytes(key)
    iv = os.urandom(16)

    padder = padding.PKCS7(_BLOCK_SIZE_BITS).padder()
    padded = padder.update(plain_text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key_raw), modes.CBC(iv)).encryptor()
    cipher_text = encryptor.update(padded) + encryptor.finalize()

    iv_b64 = base64.b64encode(iv).decode("ascii")
    value_b64 = base64.b64encode(cipher_text).decode("ascii")
    envelope = {"iv": iv_b64, "value": value_b64, "mac": _mac(iv_b64, value_b64, key_raw)}
    return base64.b64encode(json.dumps(envelope).encode("utf-8")).decode("ascii")


def decrypt_field(cipher_text: str, key: str) -> str:
    """Decrypt a stored envelope back to plain text.

    Raises:
        ConfigurationError: the key is unusable or the value is not a valid
            envelope.
    """
    key_raw = _key_bytes(key)
    try:
        envelope = json.loads(base64.b64decode(cipher_text).decode("utf-8"))
        iv = base64.b64decode(envelope["iv"])
        encrypted = base64.b64decode(envelope["value"])

        decryptor = Cipher(algorithms.AES(key_raw), modes.CBC(iv)).decryptor()
        padded = decryptor.update(encrypted) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_SIZE_BITS).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, KeyError, TypeError) as e:
        raise ConfigurationError(f"Error decrypting storage field: {e}") from e
