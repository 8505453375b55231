# bills_app/Sync/Sync_Service.py
# Description: Invocation surface for the UI / CLI. Every call returns a plain dict: a result or {"error": {...}}.
#
# Imports
from typing import Any, Callable, Dict, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from bills_app.DB.Bills_DB import Database
from .Credentials import build_credential_payload, parse_stored_credential
from .exceptions import SyncError, SyncLockedError, CredentialError
from .schemas import ConflictPolicy, EncryptedCredential, SyncStatus, SyncStrategy
from .Secrets_Vault import SecretVault, VaultDecryptError
from .Sync_Engine import SyncOrchestrator
#
########################################################################################################################
#
# Functions:

def _error(code: str, message: str) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message}}


class SyncService:
    def __init__(self, db: Database, vault: SecretVault, orchestrator: Optional[SyncOrchestrator] = None):
        self.db = db
        self.vault = vault
        self.orchestrator = orchestrator if orchestrator is not None else SyncOrchestrator(db, vault)

    def _guard(self, operation: str, fallback_code: str, func: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return func()
        except SyncError as e:
            logger.warning(f"{operation} failed: [{e.code}] {e}")
            return {"error": e.to_dict()}
        except Exception as e:
            logger.error(f"{operation} failed unexpectedly: {e}", exc_info=True)
            return _error(fallback_code, str(e) or type(e).__name__)

    # --- Status ---
    def get_sync_status(self) -> Dict[str, Any]:
        def _status():
            settings = self.db.get_sync_settings()
            locked = False
            try:
                configured = self.orchestrator.resolver.resolve() is not None
            except SyncLockedError:
                configured, locked = True, True
            except CredentialError:
                configured = False
            try:
                policy = ConflictPolicy(settings["conflict_policy"])
            except ValueError:
                policy = ConflictPolicy.CLOUD_WINS
            status = SyncStatus(
                configured=configured,
                enabled=configured and settings["enabled"],
                locked=locked,
                conflict_policy=policy,
                last_sync_at=settings["last_sync_at"],
            )
            return status.model_dump(by_alias=True, mode="json")
        return self._guard("getSyncStatus", "SYNC_STATUS_ERROR", _status)

    # --- Runs ---
    def _run(self, strategy: SyncStrategy) -> Dict[str, Any]:
        def _execute():
            result = self.orchestrator.run(strategy)
            return {"ok": True, **result.model_dump(by_alias=True, mode="json")}
        return self._guard(f"sync {strategy.value}", "SYNC_RUN_ERROR", _execute)

    def run_full_sync(self) -> Dict[str, Any]:
        return self._run(SyncStrategy.FULL)

    def run_merge_pull(self) -> Dict[str, Any]:
        return self._run(SyncStrategy.MERGE_PULL)

    def run_merge_push(self) -> Dict[str, Any]:
        return self._run(SyncStrategy.MERGE_PUSH)

    def run_force_pull(self) -> Dict[str, Any]:
        return self._run(SyncStrategy.FORCE_PULL)

    def run_force_push(self) -> Dict[str, Any]:
        return self._run(SyncStrategy.FORCE_PUSH)

    # --- Settings ---
    def set_conflict_policy(self, policy: str) -> Dict[str, Any]:
        try:
            parsed = ConflictPolicy(policy)
        except ValueError:
            return _error("SYNC_POLICY_ERROR", f"Invalid conflict policy: {policy!r}")

        def _save():
            self.db.set_conflict_policy(parsed.value)
            logger.info(f"Conflict policy set to {parsed.value}")
            return {"ok": True, "conflictPolicy": parsed.value}
        return self._guard("setConflictPolicy", "SYNC_POLICY_ERROR", _save)

    def save_endpoint(self, url: Optional[str], key: Optional[str], enabled: bool) -> Dict[str, Any]:
        """Stores the endpoint; the key is encrypted when the vault is unlocked."""
        def _save():
            payload = build_credential_payload(key, self.vault) if key else None
            self.db.save_sync_endpoint(url or None, payload, bool(enabled))
            self.orchestrator.reset_connection()
            return {"ok": True, "encrypted": bool(payload) and self.vault.is_unlocked}
        return self._guard("saveEndpoint", "SYNC_SETTINGS_ERROR", _save)

    def get_endpoint(self) -> Dict[str, Any]:
        def _load():
            settings = self.db.get_sync_settings()
            credential = parse_stored_credential(settings["credential"])
            key = None
            if credential is not None:
                if isinstance(credential, EncryptedCredential):
                    if not self.vault.is_unlocked:
                        raise SyncLockedError("Sync credential is encrypted and the vault is locked.")
                    try:
                        key = self.vault.decrypt(credential.iv, credential.cipher_text)
                    except VaultDecryptError as e:
                        raise CredentialError("Stored sync credential could not be decrypted.") from e
                else:
                    key = credential.plain_text
            return {
                "url": settings["url"],
                "key": key,
                "enabled": settings["enabled"],
                "lastSyncAt": settings["last_sync_at"],
            }
        return self._guard("getEndpoint", "SYNC_SETTINGS_ERROR", _load)

    # --- Realtime ---
    def start_realtime(self) -> Dict[str, Any]:
        def _start():
            bridge = self.orchestrator.start_realtime()
            return {"ok": True, "running": bridge.running}
        return self._guard("startRealtime", "SYNC_RT_ERROR", _start)

    def stop_realtime(self) -> Dict[str, Any]:
        def _stop():
            self.orchestrator.stop_realtime()
            return {"ok": True, "running": False}
        return self._guard("stopRealtime", "SYNC_RT_ERROR", _stop)

    # --- Maintenance ---
    def diagnose(self) -> Dict[str, Any]:
        return self._guard("diagnose", "SYNC_DIAG_ERROR", lambda: {"ok": True, "report": self.orchestrator.diagnose()})

    def initialize_storage(self) -> Dict[str, Any]:
        return self._guard("initializeStorage", "SYNC_INIT_ERROR",
                           lambda: {"ok": True, **self.orchestrator.initialize_storage()})

#
# End of bills_app/Sync/Sync_Service.py
########################################################################################################################
