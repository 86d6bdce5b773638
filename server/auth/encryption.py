import logging

from core.config import settings
from core.errors import CredentialDecryptionFailed
from core.logging_setup import log_step
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

LOG_STEP = "TOKEN-CIPHER"


def build_cipher(keys: str) -> MultiFernet:
    """
    Builds the cipher for stored provider tokens from a comma-separated key
    list. The first key encrypts; every listed key can decrypt, so a new key
    can be put in front while rows written under the old one stay readable.
    """
    parts = [key.strip() for key in keys.split(",") if key.strip()]
    if not parts:
        raise ValueError("ENCRYPTION_KEY is not set in settings.")
    return MultiFernet([Fernet(key.encode()) for key in parts])


try:
    _cipher = build_cipher(settings.ENCRYPTION_KEY)
except ValueError as e:
    with log_step(LOG_STEP):
        logger.error(f"Failed to initialize token cipher: {e}. Is ENCRYPTION_KEY valid?")
    raise


def encrypt(plaintext: str, cipher: MultiFernet | None = None) -> str:
    return (cipher or _cipher).encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str, cipher: MultiFernet | None = None) -> str:
    try:
        return (cipher or _cipher).decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        with log_step(LOG_STEP):
            logger.error("Stored token could not be decrypted with any configured key.")
        raise CredentialDecryptionFailed()


def encrypt_optional(plaintext: str | None) -> str | None:
    return encrypt(plaintext) if plaintext else None


def decrypt_optional(ciphertext: str | None) -> str | None:
    return decrypt(ciphertext) if ciphertext else None
