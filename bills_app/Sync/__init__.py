# bills_app/Sync/__init__.py
from .exceptions import (
    SyncError, NotConfiguredError, SyncLockedError, UnauthorizedError,
    CredentialError, TransactionFailure, RemoteError
)
from .schemas import (
    ConflictPolicy, SyncStrategy, EndpointConfig, SyncResult, SyncStatus,
    FileManifestEntry, ConfigDocument, PartialFailures
)
from .Secrets_Vault import SecretVault, VaultLockedError
from .Credentials import CredentialResolver
from .Remote_Client import RemoteHandle, RemoteConnector, SupabaseRemote
from .Table_Sync import TableReconciler, upsert_by_key
from .File_Sync import FileReconciler
from .Realtime_Bridge import RealtimeBridge, ChannelState
from .Sync_Engine import SyncOrchestrator
from .Sync_Service import SyncService

__all__ = [
    "SyncError", "NotConfiguredError", "SyncLockedError", "UnauthorizedError",
    "CredentialError", "TransactionFailure", "RemoteError",
    "ConflictPolicy", "SyncStrategy", "EndpointConfig", "SyncResult", "SyncStatus",
    "FileManifestEntry", "ConfigDocument", "PartialFailures",
    "SecretVault", "VaultLockedError",
    "CredentialResolver",
    "RemoteHandle", "RemoteConnector", "SupabaseRemote",
    "TableReconciler", "upsert_by_key",
    "FileReconciler",
    "RealtimeBridge", "ChannelState",
    "SyncOrchestrator",
    "SyncService",
]
