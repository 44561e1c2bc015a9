# FILE: keyforge/errors.py
from __future__ import annotations


class KeyManagementError(Exception):
    """Base error for keyforge."""


class NotFoundError(KeyManagementError, LookupError):
    """Unknown key id (or alias, see AliasNotFoundError)."""


class AliasNotFoundError(NotFoundError):
    pass


class KeyRetiredError(KeyManagementError):
    """Signing or rotation attempted on a key that is no longer active."""


class NotManagedError(KeyManagementError):
    """The manager holds no entry for the key."""


class QuotaExceededError(KeyManagementError):
    pass


class UnsupportedKeySpecError(KeyManagementError):
    pass


class InvalidEncodingError(KeyManagementError):
    """Public key material could not be parsed from the DER buffer."""


class BackendUnavailableError(KeyManagementError):
    """Transport, auth or other failure inside the signing backend."""


__all__ = [
    "KeyManagementError",
    "NotFoundError",
    "AliasNotFoundError",
    "KeyRetiredError",
    "NotManagedError",
    "QuotaExceededError",
    "UnsupportedKeySpecError",
    "InvalidEncodingError",
    "BackendUnavailableError",
]
