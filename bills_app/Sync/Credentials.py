# bills_app/Sync/Credentials.py
# Description: Resolves the stored sync endpoint into a usable URL/secret pair.
#
# Imports
import json
from typing import Optional
#
# 3rd-party Libraries
import jwt
from loguru import logger
from pydantic import ValidationError, SecretStr
#
# Local Imports
from bills_app.Constants import ELEVATED_ROLES, ELEVATED_KEY_PREFIXES
from bills_app.DB.Bills_DB import Database
from .exceptions import NotConfiguredError, SyncLockedError, CredentialError, UnauthorizedError
from .schemas import (
    ConflictPolicy, EndpointConfig, PlaintextCredential, EncryptedCredential, StoredCredential,
    StoredCredentialAdapter,
)
from .Secrets_Vault import SecretVault, VaultLockedError, VaultDecryptError
#
########################################################################################################################
#
# Functions:

def parse_stored_credential(payload: Optional[str]) -> Optional[StoredCredential]:
    """Parses the JSON credential payload from the settings row. Returns None when malformed."""
    if not payload:
        return None
    try:
        return StoredCredentialAdapter.validate_json(payload)
    except ValidationError as e:
        logger.warning(f"Stored sync credential is malformed ({e.error_count()} validation errors); treating sync as not configured.")
        return None


def build_credential_payload(secret: str, vault: SecretVault) -> str:
    """Encrypts the secret when a vault session is active, otherwise stores it as plaintext."""
    if vault.is_unlocked:
        encrypted = vault.encrypt(secret)
        credential = EncryptedCredential(iv=encrypted["iv"], cipher_text=encrypted["cipherText"], algo=encrypted["algo"])
    else:
        logger.warning("Vault is locked; storing the sync credential unencrypted.")
        credential = PlaintextCredential(plain_text=secret)
    return json.dumps(credential.model_dump(by_alias=True))


def get_credential_role(secret: str) -> Optional[str]:
    """Reads the role claim of a JWT style key without verifying its signature."""
    try:
        claims = jwt.decode(secret, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    role = claims.get("role") if isinstance(claims, dict) else None
    return role if isinstance(role, str) else None


def is_elevated_credential(secret: str) -> bool:
    if secret.startswith(ELEVATED_KEY_PREFIXES):
        return True
    return get_credential_role(secret) in ELEVATED_ROLES


class CredentialResolver:
    """Turns the endpoint settings stored on the local setting row into an EndpointConfig."""

    def __init__(self, db: Database, vault: SecretVault):
        self.db = db
        self.vault = vault

    def resolve(self) -> Optional[EndpointConfig]:
        """
        Returns the resolved endpoint, or None when sync is not configured or disabled.

        Raises:
            SyncLockedError: the credential is encrypted and the vault is locked.
            CredentialError: the credential does not decrypt with the current session.
        """
        settings = self.db.get_sync_settings()
        if not settings["url"] or not settings["credential"] or not settings["enabled"]:
            logger.debug("Sync endpoint incomplete or disabled.")
            return None

        credential = parse_stored_credential(settings["credential"])
        if credential is None:
            return None

        if isinstance(credential, PlaintextCredential):
            secret = credential.plain_text
        else:
            if not self.vault.is_unlocked:
                raise SyncLockedError("Sync credential is encrypted and the vault is locked.")
            try:
                secret = self.vault.decrypt(credential.iv, credential.cipher_text)
            except VaultLockedError as e:
                raise SyncLockedError("Sync credential is encrypted and the vault is locked.") from e
            except VaultDecryptError as e:
                logger.error(f"Stored sync credential could not be decrypted: {e}")
                raise CredentialError("Stored sync credential could not be decrypted with the current session.") from e

        try:
            policy = ConflictPolicy(settings["conflict_policy"])
        except ValueError:
            logger.warning(f"Unknown conflict policy '{settings['conflict_policy']}', using cloud_wins.")
            policy = ConflictPolicy.CLOUD_WINS

        return EndpointConfig(url=settings["url"], secret=SecretStr(secret), enabled=True, conflict_policy=policy)

    def resolve_required(self) -> EndpointConfig:
        config = self.resolve()
        if config is None:
            raise NotConfiguredError("Sync is not configured or disabled.")
        return config

    @staticmethod
    def require_elevated(config: EndpointConfig) -> None:
        """Refuses destructive remote operations unless the credential carries an elevated role."""
        if not is_elevated_credential(config.secret.get_secret_value()):
            raise UnauthorizedError("This operation requires a service role key.")

#
# End of bills_app/Sync/Credentials.py
########################################################################################################################
