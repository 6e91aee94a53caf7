"""
AES-256-GCM helpers.

Token format: VERSION (1 byte) + NONCE (12 bytes) + CIPHERTEXT (incl. 16 byte tag),
urlsafe-base64 encoded for storage in text columns.

The master key (ENCRYPTION_MASTER_KEY, falling back to SECRET_KEY) is stretched
with PBKDF2-HMAC-SHA256 and used to wrap per-company data keys and to protect
sensitive integration settings (BI tool passwords, client secrets ...).
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

AES_KEY_SIZE = 32
NONCE_SIZE = 12
PBKDF2_ITERATIONS = 310_000
VERSION_AES256_GCM = b"\x01"

SENSITIVE_MARKERS = ("password", "secret", "key", "token")


class EncryptionError(ValueError):
    pass


class DecryptionError(EncryptionError):
    pass


@lru_cache(maxsize=8)
def derive_master_key(master_secret: str) -> bytes:
    if not master_secret:
        raise EncryptionError("ENCRYPTION_MASTER_KEY (or SECRET_KEY) must be set")
    raw = master_secret.encode("utf-8")
    salt = hashlib.sha256(b"ERP_AES256_SALT_V1" + raw).digest()[:16]
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=AES_KEY_SIZE, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(raw)


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def encrypt_bytes(key: bytes, data: bytes, associated_data: bytes | None = None) -> str:
    if len(key) != AES_KEY_SIZE:
        raise EncryptionError(f"AES-256 requires a {AES_KEY_SIZE}-byte key")
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, data, associated_data)
    return base64.urlsafe_b64encode(VERSION_AES256_GCM + nonce + ciphertext).decode("ascii")


def decrypt_bytes(key: bytes, token: str, associated_data: bytes | None = None) -> bytes:
    if len(key) != AES_KEY_SIZE:
        raise EncryptionError(f"AES-256 requires a {AES_KEY_SIZE}-byte key")
    try:
        blob = base64.urlsafe_b64decode(token.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, AttributeError):
        raise DecryptionError("Ciphertext is not valid base64")
    if len(blob) < 1 + NONCE_SIZE + 16 or blob[:1] != VERSION_AES256_GCM:
        raise DecryptionError("Unsupported ciphertext format")
    nonce, ciphertext = blob[1 : 1 + NONCE_SIZE], blob[1 + NONCE_SIZE :]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        raise DecryptionError("Decryption failed: wrong key or tampered data")


def encrypt_text(key: bytes, plaintext: str) -> str:
    return encrypt_bytes(key, plaintext.encode("utf-8"))


def decrypt_text(key: bytes, token: str) -> str:
    return decrypt_bytes(key, token).decode("utf-8")


def wrap_key(master_secret: str, data_key: bytes) -> str:
    return encrypt_bytes(derive_master_key(master_secret), data_key, b"data-key")


def unwrap_key(master_secret: str, wrapped: str) -> bytes:
    return decrypt_bytes(derive_master_key(master_secret), wrapped, b"data-key")


def is_sensitive(field_name: str) -> bool:
    name = field_name.lower()
    return any(marker in name for marker in SENSITIVE_MARKERS)


def seal_config(master_secret: str, config: dict) -> dict:
    """Encrypt sensitive string values of a settings dict (keys kept readable)."""
    key = derive_master_key(master_secret)
    out = {}
    for k, v in config.items():
        if is_sensitive(k) and isinstance(v, str) and v:
            out[k] = {"enc": encrypt_text(key, v)}
        else:
            out[k] = v
    return out


def open_config(master_secret: str, sealed: dict) -> dict:
    key = derive_master_key(master_secret)
    out = {}
    for k, v in (sealed or {}).items():
        if isinstance(v, dict) and set(v) == {"enc"}:
            out[k] = decrypt_text(key, v["enc"])
        else:
            out[k] = v
    return out
