"""AES envelopes for API responses that carry patient documents.

The browser client decrypts responses with CryptoJS using a shared passphrase,
so payloads use the OpenSSL "passphrase" format CryptoJS produces by default:

* an 8 byte random salt, announced by the ``Salted__`` magic prefix;
* key and IV derived from passphrase + salt with MD5 ``EVP_BytesToKey``;
* AES-256-CBC with PKCS#7 padding;
* the whole blob base64 encoded.

MD5 is what the client library uses for key derivation and cannot be swapped
without breaking compatibility.  The envelope exists to keep document bodies
out of browser caches and logs, not as a substitute for TLS.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from typing import Any, Dict, Mapping, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from kebilo.time_utils import utc_now

_MAGIC = b"Salted__"
_SALT_SIZE = 8
_KEY_SIZE = 32
_IV_SIZE = 16


def _evp_bytes_to_key(secret: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < _KEY_SIZE + _IV_SIZE:
        block = hashlib.md5(block + secret + salt).digest()
        derived += block
    return derived[:_KEY_SIZE], derived[_KEY_SIZE : _KEY_SIZE + _IV_SIZE]


def _require_secret(secret: str) -> bytes:
    if not secret:
        raise ValueError("Encryption secret not configured")
    return secret.encode("utf-8")


def encrypt_payload(payload: Any, secret: str) -> str:
    """Serialise *payload* to JSON and encrypt it for the browser client."""

    key_material = _require_secret(secret)
    serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    salt = os.urandom(_SALT_SIZE)
    key, iv = _evp_bytes_to_key(key_material, salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(serialized.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(_MAGIC + salt + ciphertext).decode("ascii")


def decrypt_payload(ciphertext: str, secret: str) -> Any:
    """Return the JSON value encrypted by :func:`encrypt_payload`.

    ``ValueError`` is raised when the secret is wrong or the data is corrupt.
    """

    key_material = _require_secret(secret)
    try:
        blob = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Encrypted payload contained invalid base64") from exc
    if not blob.startswith(_MAGIC) or len(blob) < len(_MAGIC) + _SALT_SIZE + _IV_SIZE:
        raise ValueError("Encrypted payload is missing the salt header")

    salt = blob[len(_MAGIC) : len(_MAGIC) + _SALT_SIZE]
    body = blob[len(_MAGIC) + _SALT_SIZE :]
    if len(body) % _IV_SIZE:
        raise ValueError("Encrypted payload has an invalid length")
    key, iv = _evp_bytes_to_key(key_material, salt)

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return json.loads(plaintext.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Failed to decrypt data - invalid secret or corrupted data") from exc


def encrypted_envelope(payload: Any, secret: str, route_marker: str = "") -> Dict[str, Any]:
    """Wrap *payload* in the ``{encrypted: true, data}`` response envelope."""

    envelope: Dict[str, Any] = {
        "encrypted": True,
        "data": encrypt_payload(payload, secret),
        "timestamp": utc_now().isoformat(),
    }
    if route_marker:
        envelope["route_marker"] = route_marker
    return envelope


def open_envelope(response: Mapping[str, Any], secret: str) -> Any:
    """Decrypt an envelope, passing non-encrypted responses through unchanged."""

    if response.get("encrypted") and response.get("data"):
        return decrypt_payload(response["data"], secret)
    return response


__all__ = [
    "decrypt_payload",
    "encrypt_payload",
    "encrypted_envelope",
    "open_envelope",
]
