# ===== calsync/utils/encryption.py =====
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from calsync.core.exceptions import ConfigurationError


# Generate a key once and store it in your .env:
#   python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"


def get_cipher(key: Union[str, bytes]) -> Fernet:
    """Get Fernet cipher instance for an explicitly supplied key"""
    if not key:
        raise ConfigurationError("Calendar encryption key is not configured")
    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        return Fernet(key_bytes)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid calendar encryption key: {exc}")


def encrypt_token(cipher: Fernet, token: Optional[str]) -> Optional[bytes]:
    """Encrypt a token string"""
    if not token:
        return None
    return cipher.encrypt(token.encode())


def decrypt_token(cipher: Fernet, encrypted_token: Optional[bytes]) -> Optional[str]:
    """Decrypt a token"""
    if not encrypted_token:
        return None
    try:
        return cipher.decrypt(bytes(encrypted_token)).decode()
    except InvalidToken:
        raise ConfigurationError("Token decryption failed; was the encryption key rotated?")
