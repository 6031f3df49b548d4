from cryptography.fernet import Fernet, InvalidToken
from app.core.config import settings
import base64
import logging

logger = logging.getLogger(__name__)

_generated_key = None


def get_encryption_key() -> bytes:
    """Get the Fernet key used for provider API keys at rest"""
    global _generated_key
    if settings.ENCRYPTION_KEY:
        key = settings.ENCRYPTION_KEY
        # A Fernet key is 32 bytes urlsafe-base64 encoded = 44 chars
        if len(key) == 44:
            return key.encode()
        try:
            return base64.urlsafe_b64encode(base64.b64decode(key))
        except Exception as e:
            raise ValueError(f"Invalid ENCRYPTION_KEY format: {str(e)}")
    # Development only: generate a process-wide key once
    if _generated_key is None:
        _generated_key = Fernet.generate_key()
        logger.warning("[ENCRYPTION] ENCRYPTION_KEY not set, using a generated key. Stored API keys will not survive a restart.")
    return _generated_key


def encrypt_token(token: str) -> str:
    """Encrypt a provider credential for storage"""
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt a stored provider credential.

    Raises ValueError when the stored value cannot be decrypted with the
    current key (key rotated or value corrupted).
    """
    f = Fernet(get_encryption_key())
    try:
        return f.decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        raise ValueError("Stored credential could not be decrypted with the configured ENCRYPTION_KEY")
