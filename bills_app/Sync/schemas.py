# bills_app/Sync/schemas.py
# Description: Pydantic models and enums shared by the sync engine.
#
# Imports
import threading
from enum import Enum
from typing import List, Optional, Dict, Any, Literal, Union
#
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, computed_field
#
# Local Imports
from bills_app.Constants import CREDENTIAL_ALGO, CONFIG_DOCUMENT_VERSION
#
########################################################################################################################
#
# Functions:

class ConflictPolicy(str, Enum):
    CLOUD_WINS = "cloud_wins"
    LOCAL_WINS = "local_wins"


class SyncStrategy(str, Enum):
    FULL = "full"
    MERGE_PULL = "merge_pull"
    MERGE_PUSH = "merge_push"
    FORCE_PULL = "force_pull"
    FORCE_PUSH = "force_push"


TransferDirection = Literal["upload", "download"]
FailureKind = Literal["row", "file"]
RealtimeEventType = Literal["INSERT", "UPDATE", "DELETE"]


# --- Stored credential payload (tagged variant) ---
class PlaintextCredential(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encrypted: Literal[False] = False
    plain_text: str = Field(alias="plainText", min_length=1)


class EncryptedCredential(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encrypted: Literal[True] = True
    iv: str
    cipher_text: str = Field(alias="cipherText")
    algo: str = CREDENTIAL_ALGO


StoredCredential = Union[PlaintextCredential, EncryptedCredential]
StoredCredentialAdapter = TypeAdapter(StoredCredential)


# --- Resolved endpoint ---
class EndpointConfig(BaseModel):
    """A resolved endpoint. The secret stays wrapped so it never shows up in reprs or logs."""
    model_config = ConfigDict(frozen=True)

    url: str
    secret: SecretStr
    enabled: bool = True
    conflict_policy: ConflictPolicy = ConflictPolicy.CLOUD_WINS

    @property
    def cache_key(self) -> tuple:
        return (self.url, self.secret.get_secret_value())


# --- Partial failures ---
class PartialFailure(BaseModel):
    kind: FailureKind
    target: str
    identifier: str
    message: str


class PartialFailures:
    """Thread-safe accumulator for per-row and per-file failures absorbed during a run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: List[PartialFailure] = []

    def record(self, kind: FailureKind, target: str, identifier: Any, error: Any) -> PartialFailure:
        failure = PartialFailure(kind=kind, target=target, identifier=str(identifier), message=str(error))
        with self._lock:
            self._items.append(failure)
        return failure

    def record_row(self, table: str, row_id: Any, error: Any) -> PartialFailure:
        return self.record("row", table, row_id, error)

    def record_file(self, target: str, path: str, error: Any) -> PartialFailure:
        return self.record("file", target, path, error)

    def items(self) -> List[PartialFailure]:
        with self._lock:
            return list(self._items)

    def count(self, kind: Optional[FailureKind] = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._items)
            return sum(1 for item in self._items if item.kind == kind)

    def __len__(self) -> int:
        return self.count()


# --- Results ---
class TableSyncResult(BaseModel):
    table: str
    pushed: int = 0
    pulled: int = 0


class FileSyncResult(BaseModel):
    uploaded: int = 0
    downloaded: int = 0


class SyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategy: Optional[SyncStrategy] = None
    pushed: int = 0
    pulled: int = 0
    files_uploaded: int = Field(0, alias="filesUploaded")
    files_downloaded: int = Field(0, alias="filesDownloaded")
    tables: List[TableSyncResult] = Field(default_factory=list)
    failures: List[PartialFailure] = Field(default_factory=list)
    last_sync_at: Optional[str] = Field(None, alias="lastSyncAt")

    @computed_field
    @property
    def failed(self) -> int:
        return len(self.failures)

    def add_table(self, table_result: TableSyncResult) -> None:
        self.tables.append(table_result)
        self.pushed += table_result.pushed
        self.pulled += table_result.pulled

    def add_files(self, file_result: FileSyncResult) -> None:
        self.files_uploaded += file_result.uploaded
        self.files_downloaded += file_result.downloaded


class SyncStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    configured: bool
    enabled: bool
    locked: bool = False
    conflict_policy: ConflictPolicy = Field(ConflictPolicy.CLOUD_WINS, alias="conflictPolicy")
    last_sync_at: Optional[str] = Field(None, alias="lastSyncAt")


# --- Files ---
class FileManifestEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    relative_path: str = Field(alias="relativePath")
    direction: TransferDirection
    overwrite: bool = False


class ConfigDocument(BaseModel):
    """The data-root pointer shared between machines through remote storage."""
    model_config = ConfigDict(populate_by_name=True)

    version: str = CONFIG_DOCUMENT_VERSION
    data_root: str = Field(alias="dataRoot", min_length=1)
    bills_folder: str = Field(alias="billsFolder")
    expenses_folder: str = Field(alias="expensesFolder")
    last_updated: str = Field(alias="lastUpdated")


# --- Realtime ---
class RealtimeEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table: str
    event_type: RealtimeEventType = Field(alias="eventType")
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)

#
# End of bills_app/Sync/schemas.py
########################################################################################################################
