# bills_app/Sync/Sync_Engine.py
# Description: Sequences credential resolution, connection, table and file reconciliation for one sync run.
#
# Imports
import threading
from typing import Any, Dict, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from bills_app.config import get_sync_setting
from bills_app.Constants import SYNC_TABLES
from bills_app.DB.Bills_DB import Database
from .Credentials import CredentialResolver
from .exceptions import RemoteError
from .File_Sync import FileReconciler
from .Realtime_Bridge import RealtimeBridge
from .Remote_Client import RemoteConnector, is_missing_table_error
from .schemas import PartialFailures, SyncResult, SyncStrategy
from .Secrets_Vault import SecretVault
from .Table_Sync import TableReconciler
#
########################################################################################################################
#
# Functions:

class SyncOrchestrator:
    """
    Runs one sync strategy end to end: resolve credentials, connect, reconcile the
    tables one after another (parents first), then the document files, and finally
    stamp last_sync_at. Systemic failures raise; per-row and per-file failures end up
    in SyncResult.failures.
    """

    def __init__(self, db: Database, vault: SecretVault, connector: Optional[RemoteConnector] = None,
                 file_workers: Optional[int] = None):
        self.db = db
        self.vault = vault
        self.resolver = CredentialResolver(db, vault)
        self.connector = connector if connector is not None else RemoteConnector()
        self.file_workers = file_workers if file_workers is not None else int(get_sync_setting("file_workers", 4))
        self._realtime: Optional[RealtimeBridge] = None
        self._realtime_lock = threading.Lock()

    def run(self, strategy: SyncStrategy) -> SyncResult:
        strategy = SyncStrategy(strategy)
        logger.info(f"Starting sync run: {strategy.value}")

        config = self.resolver.resolve_required()
        if strategy == SyncStrategy.FORCE_PUSH:
            # Checked locally, before anything touches the remote
            self.resolver.require_elevated(config)
        remote = self.connector.connect(config)

        failures = PartialFailures()
        tables = TableReconciler(self.db, remote, failures)
        result = SyncResult(strategy=strategy)

        if strategy == SyncStrategy.FULL:
            for table in SYNC_TABLES:
                result.add_table(tables.full(table, config.conflict_policy))
        elif strategy == SyncStrategy.MERGE_PULL:
            for table in SYNC_TABLES:
                result.add_table(tables.merge_pull(table))
        elif strategy == SyncStrategy.MERGE_PUSH:
            for table in SYNC_TABLES:
                result.add_table(tables.merge_push(table))
        elif strategy == SyncStrategy.FORCE_PULL:
            for table_result in tables.force_pull():
                result.add_table(table_result)
        elif strategy == SyncStrategy.FORCE_PUSH:
            for table_result in tables.force_push():
                result.add_table(table_result)

        files = FileReconciler(remote, failures, max_workers=self.file_workers)
        data_root = self.db.get_data_root()
        result.add_files(files.sync_document_tree(data_root, strategy, config.conflict_policy))
        files.sync_config_document(data_root, strategy)

        result.failures = failures.items()
        result.last_sync_at = self.db.update_last_sync_at()
        if result.failed:
            logger.warning(f"Sync run {strategy.value} finished with {result.failed} partial failure(s)")
        logger.info(
            f"Sync run {strategy.value} complete: pushed={result.pushed}, pulled={result.pulled}, "
            f"files uploaded={result.files_uploaded}, downloaded={result.files_downloaded}"
        )
        return result

    # --- Realtime ---
    @property
    def realtime(self) -> Optional[RealtimeBridge]:
        return self._realtime

    def start_realtime(self) -> RealtimeBridge:
        with self._realtime_lock:
            config = self.resolver.resolve_required()
            remote = self.connector.connect(config)
            if self._realtime is not None and self._realtime.remote is not remote:
                self._realtime.stop()
                self._realtime = None
            if self._realtime is None:
                self._realtime = RealtimeBridge(self.db, remote, SYNC_TABLES)
            self._realtime.start()
            return self._realtime

    def stop_realtime(self) -> None:
        with self._realtime_lock:
            if self._realtime is not None:
                self._realtime.stop()
                self._realtime = None

    def reset_connection(self) -> None:
        """Tears down realtime listening and drops the cached remote handle."""
        with self._realtime_lock:
            if self._realtime is not None:
                logger.info("Stopping realtime listener before dropping the remote connection.")
                self._realtime.stop()
                self._realtime = None
            self.connector.reset()

    # --- Diagnostics ---
    def diagnose(self) -> Dict[str, Any]:
        """Probes each syncable table and the storage bucket. Step failures land in the report."""
        report: Dict[str, Any] = {"steps": [], "configured": False}
        config = self.resolver.resolve_required()
        report["configured"] = True
        report["steps"].append("Config loaded")
        remote = self.connector.connect(config)
        report["steps"].append("Connected")

        for table in SYNC_TABLES:
            try:
                remote.probe_table(table)
                report[table] = {"ok": True}
            except RemoteError as e:
                report[table] = {"ok": False, "error": str(e), "missing": is_missing_table_error(e)}
        report["steps"].append("Tables checked")

        try:
            exists = remote.bucket_exists()
            report["storage"] = {"ok": exists, "note": f"Bucket {'found' if exists else 'missing'}"}
        except RemoteError as e:
            report["storage"] = {"ok": False, "error": str(e)}
        report["steps"].append("Storage checked")
        return report

    def initialize_storage(self) -> Dict[str, Any]:
        """Creates the storage bucket when it is missing."""
        config = self.resolver.resolve_required()
        remote = self.connector.connect(config)
        if remote.bucket_exists():
            logger.info("Storage bucket already exists.")
            return {"created": False}
        remote.create_bucket()
        logger.info("Storage bucket created.")
        return {"created": True}

#
# End of bills_app/Sync/Sync_Engine.py
########################################################################################################################
