"""
Field encryption and password hashing for the vault.

Secret values and notes are sealed one field at a time so every other column
stays searchable. Each call to ``encrypt`` draws a fresh IV from ``os.urandom``
and stores it in front of the ciphertext:

    base64( IV | ciphertext )

Only the static key is needed to open a blob again. The key is derived once
from the configured master secret and never leaves this module.
"""
import base64
import binascii
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from werkzeug.security import generate_password_hash, check_password_hash

from errors import ConfigurationError, DecryptError, EncryptionError

logger = logging.getLogger(__name__)

DEFAULT_CIPHER = "aes-256-cbc"
DEFAULT_HASH_METHOD = "pbkdf2:sha256:600000"


def derive_key(secret: str) -> bytes:
    """SHA-256 of the master secret: a 32-byte key for AES-256."""
    if not secret:
        raise ConfigurationError("VAULT_MASTER_SECRET is not set")
    return hashlib.sha256(secret.encode()).digest()


def _pack(iv: bytes, ct: bytes) -> str:
    return base64.b64encode(iv + ct).decode()


def _unpack(blob: str, iv_length: int) -> tuple[bytes, bytes]:
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptError("Ciphertext is not valid base64") from e
    if len(raw) <= iv_length:
        raise DecryptError("Ciphertext is truncated")
    return raw[:iv_length], raw[iv_length:]


class _AesCbc:
    iv_length = 16

    def __init__(self, key: bytes):
        self._key = key

    def encrypt(self, plaintext: bytes) -> str:
        iv = os.urandom(self.iv_length)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        return _pack(iv, encryptor.update(padded) + encryptor.finalize())

    def decrypt(self, blob: str) -> bytes:
        iv, ct = _unpack(blob, self.iv_length)
        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ct) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptError("Bad padding or block length") from e


class _AesGcm:
    iv_length = 12

    def __init__(self, key: bytes):
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: bytes) -> str:
        nonce = os.urandom(self.iv_length)
        return _pack(nonce, self._aead.encrypt(nonce, plaintext, None))

    def decrypt(self, blob: str) -> bytes:
        nonce, ct = _unpack(blob, self.iv_length)
        try:
            return self._aead.decrypt(nonce, ct, None)
        except InvalidTag as e:
            raise DecryptError("Authentication tag mismatch") from e


class _Fernet:
    # Fernet tokens embed their own 16-byte IV and HMAC.
    iv_length = 16

    def __init__(self, key: bytes):
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, plaintext: bytes) -> str:
        return self._fernet.encrypt(plaintext).decode()

    def decrypt(self, blob: str) -> bytes:
        try:
            return self._fernet.decrypt(blob.encode())
        except (InvalidToken, AttributeError) as e:
            raise DecryptError("Invalid Fernet token") from e


CIPHERS = {
    "aes-256-cbc": _AesCbc,
    "aes-256-gcm": _AesGcm,
    "fernet": _Fernet,
}


class EncryptionService:
    """Encrypts vault fields and hashes login passwords.

    Knows nothing about users or records: it only turns bytes into storable
    text and back.
    """

    def __init__(self, master_secret: str, cipher: str = DEFAULT_CIPHER,
                 hash_method: str = DEFAULT_HASH_METHOD):
        cipher_cls = CIPHERS.get((cipher or "").lower())
        if cipher_cls is None:
            raise ConfigurationError(f"Unsupported VAULT_CIPHER: {cipher!r}")
        self.cipher_name = cipher.lower()
        self.hash_method = hash_method
        self._cipher = cipher_cls(derive_key(master_secret))
        logger.debug("Encryption service ready (cipher=%s)", self.cipher_name)

    @property
    def iv_length(self) -> int:
        return self._cipher.iv_length

    def encrypt(self, plaintext: bytes) -> str:
        try:
            return self._cipher.encrypt(plaintext)
        except (ValueError, TypeError) as e:
            raise EncryptionError() from e

    def decrypt(self, blob: str) -> bytes:
        if not isinstance(blob, str):
            raise DecryptError("Ciphertext must be text")
        return self._cipher.decrypt(blob)

    def encrypt_text(self, value: str) -> str:
        return self.encrypt(value.encode("utf-8"))

    def decrypt_text(self, blob: str) -> str:
        try:
            return self.decrypt(blob).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptError("Plaintext is not UTF-8") from e

    # ---------- Passwords ----------
    def hash_password(self, password: str) -> str:
        return generate_password_hash(password, method=self.hash_method)

    def verify_password(self, password: str, pw_hash: str) -> bool:
        if not pw_hash:
            return False
        try:
            return check_password_hash(pw_hash, password)
        except (ValueError, TypeError):
            return False
