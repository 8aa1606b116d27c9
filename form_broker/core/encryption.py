"""Encryption utilities for OAuth tokens at rest."""

from cryptography.fernet import Fernet, InvalidToken

from form_broker.core.config import settings


_fernet: Fernet | None = None
_ENCRYPTED_PREFIX = "enc:"


def encryption_enabled() -> bool:
    return bool(settings.TOKEN_ENCRYPTION_KEY)


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.TOKEN_ENCRYPTION_KEY:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.TOKEN_ENCRYPTION_KEY.encode())
    return _fernet


def reset_fernet() -> None:
    """Drop the cached Fernet instance (key rotation, tests)."""
    global _fernet
    _fernet = None


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage; passthrough when no key is configured."""
    if not token or not encryption_enabled():
        return token
    if token.startswith(_ENCRYPTED_PREFIX):
        return token
    encrypted = get_fernet().encrypt(token.encode()).decode()
    return f"{_ENCRYPTED_PREFIX}{encrypted}"


def decrypt_token(value: str) -> str:
    """Decrypt a stored token. Values without the prefix were stored in plain text."""
    if not value or not value.startswith(_ENCRYPTED_PREFIX):
        return value
    payload = value[len(_ENCRYPTED_PREFIX) :]
    try:
        return get_fernet().decrypt(payload.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")
