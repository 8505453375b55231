# bills_app/Sync/File_Sync.py
# Description: Path-level reconciliation of the document tree with remote storage, plus the config document mirror.
#
# Imports
import mimetypes
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterable, List, Optional, Union
#
# 3rd-party Libraries
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from bills_app.Constants import DOCUMENT_CATEGORIES, CONFIG_DOCUMENT_FILENAME, CONFIG_DOCUMENT_REMOTE_KEY
from .exceptions import RemoteError
from .Remote_Client import RemoteHandle
from .schemas import (
    ConflictPolicy, ConfigDocument, FileManifestEntry, FileSyncResult, PartialFailures, SyncStrategy,
)
#
########################################################################################################################
#
# Functions:

# Storage error codes meaning the object is simply not there
_NOT_FOUND_CODES = frozenset({"404", "not_found", "NoSuchKey", "Object not found"})


def list_local_files(root: Union[str, Path]) -> List[str]:
    """All files under root as '/' separated paths relative to it. A missing root lists as empty."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def build_manifest(local_paths: Iterable[str], remote_paths: Iterable[str], strategy: SyncStrategy,
                   policy: ConflictPolicy = ConflictPolicy.CLOUD_WINS) -> List[FileManifestEntry]:
    """Decides which paths move in which direction. Presence alone decides; contents are not compared."""
    strategy = SyncStrategy(strategy)
    local_set, remote_set = set(local_paths), set(remote_paths)
    entries: List[FileManifestEntry] = []

    def _uploads(paths, overwrite):
        entries.extend(FileManifestEntry(relative_path=p, direction="upload", overwrite=overwrite) for p in sorted(paths))

    def _downloads(paths):
        entries.extend(FileManifestEntry(relative_path=p, direction="download") for p in sorted(paths))

    if strategy == SyncStrategy.FULL:
        _uploads(local_set - remote_set, overwrite=False)
        _downloads(remote_set - local_set)
        if ConflictPolicy(policy) == ConflictPolicy.LOCAL_WINS:
            _uploads(local_set & remote_set, overwrite=True)
    elif strategy == SyncStrategy.MERGE_PULL:
        _downloads(remote_set - local_set)
    elif strategy == SyncStrategy.MERGE_PUSH:
        _uploads(local_set - remote_set, overwrite=False)
    elif strategy == SyncStrategy.FORCE_PULL:
        _downloads(remote_set)
    elif strategy == SyncStrategy.FORCE_PUSH:
        _uploads(local_set, overwrite=True)
    return entries


def _content_type(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


class FileReconciler:
    """
    Moves document files between a local directory and a remote storage prefix.
    Transfers run on a bounded pool; a failed file is recorded and skipped.
    """

    def __init__(self, remote: RemoteHandle, failures: Optional[PartialFailures] = None, max_workers: int = 4):
        self.remote = remote
        self.failures = failures if failures is not None else PartialFailures()
        self.max_workers = max(1, int(max_workers))

    def list_remote_files(self, prefix: str) -> List[str]:
        prefix = prefix.strip("/")
        keys = self.remote.list_objects(prefix)
        return sorted(k[len(prefix) + 1:] for k in keys if k.startswith(f"{prefix}/"))

    @staticmethod
    def _local_target(local_root: Path, relative_path: str) -> Path:
        target = (local_root / relative_path).resolve()
        if not target.is_relative_to(local_root.resolve()):
            raise ValueError(f"Remote path escapes the document folder: {relative_path}")
        return target

    def _upload(self, local_root: Path, prefix: str, entry: FileManifestEntry) -> None:
        data = (local_root / entry.relative_path).read_bytes()
        self.remote.upload(f"{prefix}/{entry.relative_path}", data, overwrite=entry.overwrite,
                           content_type=_content_type(entry.relative_path))

    def _download(self, local_root: Path, prefix: str, entry: FileManifestEntry) -> None:
        target = self._local_target(local_root, entry.relative_path)
        data = self.remote.download(f"{prefix}/{entry.relative_path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def _transfer(self, local_root: Path, prefix: str, entry: FileManifestEntry) -> bool:
        try:
            if entry.direction == "upload":
                self._upload(local_root, prefix, entry)
            else:
                self._download(local_root, prefix, entry)
        except (RemoteError, OSError, ValueError) as e:
            logger.warning(f"Failed to {entry.direction} {prefix}/{entry.relative_path}: {e}")
            self.failures.record_file(prefix, entry.relative_path, e)
            return False
        logger.debug(f"{entry.direction}ed {prefix}/{entry.relative_path}")
        return True

    def sync_files(self, local_root: Union[str, Path], remote_prefix: str, strategy: SyncStrategy,
                   policy: ConflictPolicy = ConflictPolicy.CLOUD_WINS) -> FileSyncResult:
        local_root = Path(local_root)
        prefix = remote_prefix.strip("/")
        try:
            remote_paths = self.list_remote_files(prefix)
        except RemoteError as e:
            logger.warning(f"Could not list remote '{prefix}', skipping its files: {e}")
            self.failures.record_file(prefix, f"{prefix}/", e)
            return FileSyncResult()

        manifest = build_manifest(list_local_files(local_root), remote_paths, strategy, policy)
        result = FileSyncResult()
        if not manifest:
            logger.debug(f"No files to transfer for '{prefix}'")
            return result

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="file-sync") as pool:
            futures = {pool.submit(self._transfer, local_root, prefix, entry): entry for entry in manifest}
            for future in as_completed(futures):
                if not future.result():
                    continue
                if futures[future].direction == "upload":
                    result.uploaded += 1
                else:
                    result.downloaded += 1

        logger.info(f"Files '{prefix}': uploaded={result.uploaded}, downloaded={result.downloaded}")
        return result

    def sync_document_tree(self, data_root: Optional[Union[str, Path]], strategy: SyncStrategy,
                           policy: ConflictPolicy = ConflictPolicy.CLOUD_WINS) -> FileSyncResult:
        """Syncs every document category under data_root; no data root means nothing to do."""
        total = FileSyncResult()
        if not data_root:
            logger.info("No data root set; skipping file sync.")
            return total
        for category in DOCUMENT_CATEGORIES:
            category_result = self.sync_files(Path(data_root) / category, category, strategy, policy)
            total.uploaded += category_result.uploaded
            total.downloaded += category_result.downloaded
        return total

    # --- Config document ---
    def upload_config_document(self, data_root: Union[str, Path]) -> bool:
        path = Path(data_root) / CONFIG_DOCUMENT_FILENAME
        if not path.is_file():
            logger.debug(f"No local config document at {path}")
            return False
        try:
            self.remote.upload(CONFIG_DOCUMENT_REMOTE_KEY, path.read_bytes(), overwrite=True,
                               content_type="application/json")
        except (RemoteError, OSError) as e:
            logger.warning(f"Failed to upload config document: {e}")
            self.failures.record_file("config", CONFIG_DOCUMENT_REMOTE_KEY, e)
            return False
        return True

    def download_config_document(self, data_root: Union[str, Path]) -> Optional[ConfigDocument]:
        try:
            data = self.remote.download(CONFIG_DOCUMENT_REMOTE_KEY)
        except RemoteError as e:
            if e.remote_code in _NOT_FOUND_CODES:
                logger.debug("No remote config document yet.")
                return None
            logger.warning(f"Failed to download config document: {e}")
            self.failures.record_file("config", CONFIG_DOCUMENT_REMOTE_KEY, e)
            return None
        try:
            document = ConfigDocument.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Remote config document is invalid; keeping the local one: {e.error_count()} errors")
            self.failures.record_file("config", CONFIG_DOCUMENT_REMOTE_KEY, f"invalid config document: {e.error_count()} errors")
            return None
        path = Path(data_root) / CONFIG_DOCUMENT_FILENAME
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write config document to {path}: {e}")
            self.failures.record_file("config", str(path), e)
            return None
        return document

    def sync_config_document(self, data_root: Optional[Union[str, Path]], strategy: SyncStrategy) -> None:
        """Mirrors on full, uploads on force_push, downloads on force_pull; merges leave it alone."""
        if not data_root:
            return
        strategy = SyncStrategy(strategy)
        if strategy in (SyncStrategy.FULL, SyncStrategy.FORCE_PUSH):
            self.upload_config_document(data_root)
        if strategy in (SyncStrategy.FULL, SyncStrategy.FORCE_PULL):
            self.download_config_document(data_root)

#
# End of bills_app/Sync/File_Sync.py
########################################################################################################################
