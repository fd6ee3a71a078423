class VaultError(Exception):
    """Base class for every failure the vault reports."""

    message = "Something went wrong"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(VaultError):
    message = "Invalid input"


class AuthError(VaultError):
    message = "Not authenticated"


class NotFoundOrForbidden(VaultError):
    # Missing and not-owned records are reported the same way.
    message = "Entry not found"


class StorageError(VaultError):
    message = "Storage failure"


class CryptoError(VaultError):
    message = "Stored data could not be read"


class EncryptionError(CryptoError):
    message = "Encryption failed"


class DecryptError(CryptoError):
    message = "Decryption failed"


class ConfigurationError(RuntimeError):
    """Unrecoverable misconfiguration detected at startup."""
