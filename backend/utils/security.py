import os
import base64
import string
import secrets
import logging

from cryptography.fernet import Fernet, InvalidToken

import config  # noqa: F401  (loads .env before ENCRYPTION_KEY is read)

# Set up logging
logger = logging.getLogger(__name__)

# Encryption key
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", None)
if not ENCRYPTION_KEY:
    # Generate a key and warn if not found
    ENCRYPTION_KEY = base64.urlsafe_b64encode(os.urandom(32)).decode()
    logger.warning("ENCRYPTION_KEY not found in environment. Generated a temporary key.")
    logger.warning("Stored tokens will be unreadable after restart. Set the ENCRYPTION_KEY environment variable.")

# Initialize Fernet for symmetric encryption
fernet = Fernet(ENCRYPTION_KEY.encode() if isinstance(ENCRYPTION_KEY, str) else ENCRYPTION_KEY)

PASSWORD_SYMBOLS = "!@#$%^&*-_"


def encrypt_value(value: str) -> str:
    """Encrypt a value for secure storage."""
    if not value:
        return ""

    try:
        encrypted = fernet.encrypt(value.encode())
        return encrypted.decode()
    except Exception as e:
        logger.error("Encryption error: %s", str(e))
        raise


def decrypt_value(encrypted_value: str) -> str:
    """Decrypt a value from secure storage."""
    if not encrypted_value:
        return ""

    try:
        decrypted = fernet.decrypt(encrypted_value.encode())
        return decrypted.decode()
    except InvalidToken:
        logger.error("Decryption error: value was encrypted with a different key")
        raise


def generate_initial_password(length: int = 20) -> str:
    """Generate a random password with at least one character of every class.

    The platform rejects passwords lacking upper case, lower case, digits or
    symbols, so one of each is drawn before filling the rest.
    """
    if length < 8:
        raise ValueError("Password length must be at least 8")

    alphabet = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
    chars = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SYMBOLS),
    ]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
