"""Encryption of customs API tokens at rest (Fernet)."""

from cryptography.fernet import Fernet, InvalidToken

from customs_sync.config import Settings
from customs_sync.sync_engine.errors import CredentialError


def _get_fernet(settings: Settings) -> Fernet:
    if not settings.encryption_key:
        raise CredentialError("Encryption key is not configured")
    try:
        return Fernet(settings.encryption_key.encode("utf-8"))
    except ValueError as e:
        raise CredentialError("Encryption key is invalid") from e


def encrypt_token(settings: Settings, token: str) -> str:
    return _get_fernet(settings).encrypt(token.encode("utf-8")).decode("ascii")


def decrypt_token(settings: Settings, ciphertext: str | None) -> str:
    if not ciphertext:
        raise CredentialError("Customs token is not set for this company")
    try:
        return _get_fernet(settings).decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise CredentialError(
            "Customs token cannot be decrypted; update it in the company settings"
        ) from e
