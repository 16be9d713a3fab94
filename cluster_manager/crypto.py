"""
Encryption of cluster credentials at rest.

Cluster passwords are stored as Fernet tokens in the control-plane store and
decrypted only when a connection to the cluster is opened.
"""

import base64
import logging
import os
import secrets
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "CLUSTER_ENCRYPTION_KEY"
SECRET_ENV = "CLUSTER_MANAGER_SECRET"
SALT_ENV = "CLUSTER_ENCRYPTION_SALT"


class CredentialEncryption:
    """Encrypts and decrypts cluster passwords."""

    def __init__(self, key: Optional[str] = None):
        """
        Initialize encryption with a key.

        Args:
            key: Base64 encoded Fernet key. If None, read from environment.
        """
        if key:
            self.cipher = Fernet(key.encode())
        else:
            self.cipher = self._get_cipher()

    def _get_cipher(self) -> Fernet:
        """Build the cipher from the environment."""
        encryption_key = os.getenv(ENCRYPTION_KEY_ENV)
        if encryption_key:
            try:
                return Fernet(encryption_key.encode())
            except Exception as e:
                logger.error(f"Invalid {ENCRYPTION_KEY_ENV}: {e}")

        # Derive key from secret + salt if no direct key
        password = os.getenv(SECRET_ENV)
        if not password:
            error_msg = f"{ENCRYPTION_KEY_ENV} or {SECRET_ENV} is required for encryption"
            logger.error(error_msg)
            raise ValueError(error_msg)

        salt = os.getenv(SALT_ENV)
        if not salt:
            error_msg = f"{SALT_ENV} environment variable is required for encryption"
            logger.error(error_msg)
            raise ValueError(error_msg)

        if len(salt) < 16:
            error_msg = f"{SALT_ENV} must be at least 16 characters long"
            logger.error(error_msg)
            raise ValueError(error_msg)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))

        logger.warning(f"Using derived encryption key. Set {ENCRYPTION_KEY_ENV} for production.")
        return Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret.

        Returns:
            Fernet token (URL-safe base64 text)
        """
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a secret.

        Raises:
            ValueError: Empty token, or not a token for this key
        """
        if not token:
            raise ValueError("Empty token provided")
        try:
            return self.cipher.decrypt(token.encode()).decode()
        except InvalidToken as e:
            logger.error("Credential decryption failed: token invalid for current key")
            raise ValueError("Credential token cannot be decrypted with the current key") from e


def generate_password(num_bytes: int = 32) -> str:
    """Random hex password."""
    return secrets.token_hex(num_bytes)


def generate_credentials(cluster_id: str) -> Tuple[str, str, str, str]:
    """
    Admin and read-only credentials for a new cluster.

    Returns:
        (admin_username, admin_password, readonly_username, readonly_password)
    """
    suffix = cluster_id.replace("-", "")[:8]
    return (
        f"cluster_admin_{suffix}",
        generate_password(),
        f"cluster_readonly_{suffix}",
        generate_password(),
    )
