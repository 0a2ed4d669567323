"""
At-rest encryption for chat message text.

Each trip gets its own Fernet key derived with PBKDF2 from a service secret and
the trip id, so a leaked row from one trip cannot be read with another trip's key.
"""
import base64
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

CHAT_ENCRYPTION_SECRET = os.getenv("CHAT_ENCRYPTION_SECRET", "trip-chat-dev-secret")
KDF_ITERATIONS = 100_000


@lru_cache(maxsize=256)
def _trip_fernet(trip_id: str, secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=f"trip:{trip_id}".encode(),
        iterations=KDF_ITERATIONS,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    return Fernet(key)


def encrypt_message(message: str, trip_id: str) -> str:
    """Encrypt message text with the trip key"""
    return _trip_fernet(trip_id, CHAT_ENCRYPTION_SECRET).encrypt(message.encode()).decode()


def decrypt_message(ciphertext: str, trip_id: str) -> str:
    """
    Decrypt message text with the trip key.

    Rows that cannot be decrypted (legacy plaintext, rotated secret) are
    returned unchanged so history stays readable.
    """
    try:
        return _trip_fernet(trip_id, CHAT_ENCRYPTION_SECRET).decrypt(ciphertext.encode()).decode()
    except (InvalidToken, ValueError) as e:
        logger.warning(f"Could not decrypt message for trip {trip_id}: {e!r}")
        return ciphertext
