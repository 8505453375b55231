# bills_app/Sync/Secrets_Vault.py
# Description: In-memory unlock session used to encrypt and decrypt stored secrets.
#
# Imports
import base64
import binascii
import hmac
import os
import threading
from typing import Any, Dict, Optional
#
# 3rd-party Libraries
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from loguru import logger
#
# Local Imports
from bills_app.Constants import CREDENTIAL_ALGO
#
########################################################################################################################
#
# Functions:

SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32
IV_LENGTH = 12


class VaultLockedError(Exception):
    """Raised when a secret operation is attempted with no unlock session."""
    pass


class VaultDecryptError(Exception):
    """Raised when a payload does not decrypt with the session key."""
    pass


class VaultPasswordError(Exception):
    """Raised when the application password does not match the stored record."""
    pass


class SecretVault:
    """
    Holds the session key derived from the user's password.

    The key only lives in memory: after `lock()` (or a restart) nothing stored
    encrypted can be read until `unlock()` is called again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._session_key: Optional[bytes] = None

    @property
    def is_unlocked(self) -> bool:
        return self._session_key is not None

    @staticmethod
    def derive_key(password: str, salt_hex: str) -> bytes:
        try:
            salt = bytes.fromhex(salt_hex)
        except ValueError as e:
            raise ValueError(f"Salt must be hex encoded: {e}") from e
        kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(password.encode("utf-8"))

    def unlock(self, password: str, salt_hex: str) -> None:
        key = self.derive_key(password, salt_hex)
        with self._lock:
            self._session_key = key
        logger.info("Secret vault unlocked.")

    def unlock_with_security(self, password: str, security: Dict[str, Any]) -> None:
        """Unlocks with the password checked against the stored {hasPassword, salt, hash} record."""
        salt, expected = security.get("salt"), security.get("hash")
        if not security.get("hasPassword") or not salt or not expected:
            raise VaultPasswordError("No application password is configured.")
        key = self.derive_key(password, salt)
        if not hmac.compare_digest(key.hex(), str(expected)):
            raise VaultPasswordError("Invalid password.")
        with self._lock:
            self._session_key = key
        logger.info("Secret vault unlocked.")

    def lock(self) -> None:
        with self._lock:
            self._session_key = None
        logger.info("Secret vault locked.")

    def _require_key(self) -> bytes:
        with self._lock:
            key = self._session_key
        if key is None:
            raise VaultLockedError("LOCKED")
        return key

    def encrypt(self, plain_text: str) -> Dict[str, str]:
        key = self._require_key()
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        payload = AESGCM(key).encrypt(iv, plain_text.encode("utf-8"), None)
        return {
            "iv": base64.b64encode(iv).decode("ascii"),
            "cipherText": base64.b64encode(payload).decode("ascii"),
            "algo": CREDENTIAL_ALGO,
        }

    def decrypt(self, iv_b64: str, cipher_text_b64: str) -> str:
        key = self._require_key()
        try:
            iv = base64.b64decode(iv_b64, validate=True)
            payload = base64.b64decode(cipher_text_b64, validate=True)
            return AESGCM(key).decrypt(iv, payload, None).decode("utf-8")
        except (binascii.Error, InvalidTag, ValueError) as e:
            raise VaultDecryptError(f"Could not decrypt secret: {type(e).__name__}") from e

#
# End of bills_app/Sync/Secrets_Vault.py
########################################################################################################################
