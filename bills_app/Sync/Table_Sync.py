# bills_app/Sync/Table_Sync.py
# Description: Row-level reconciliation of one table between the local store and the remote service.
#
# Imports
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from bills_app.Constants import (
    SETTING_ROW_ID, TABLE_SETTING, FORCE_PULL_DELETE_ORDER, FORCE_PULL_INSERT_ORDER,
    FORCE_PUSH_DELETE_ORDER, FORCE_PUSH_INSERT_ORDER, OPTIONAL_REMOTE_TABLES,
)
from bills_app.DB.Bills_DB import Database, DatabaseError, InputError, get_table_schema, LOCAL_ONLY_SETTING_COLUMNS
from .exceptions import RemoteError, TransactionFailure
from .Remote_Client import RemoteHandle, is_missing_table_error
from .schemas import ConflictPolicy, PartialFailures, TableSyncResult
#
########################################################################################################################
#
# Functions:

T = TypeVar("T")
R = TypeVar("R")

_INSERT_BATCH_SIZE = 500

# Errors a single row write can raise on either side
ROW_WRITE_ERRORS = (RemoteError, DatabaseError, InputError)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parses ISO-8601 or SQLite 'YYYY-MM-DD HH:MM:SS' timestamps. Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamps_equal(left: Any, right: Any) -> bool:
    left_dt, right_dt = parse_timestamp(left), parse_timestamp(right)
    if left_dt is not None and right_dt is not None:
        return left_dt == right_dt
    return left == right


def upsert_by_key(store, table: str, row: Dict[str, Any], key: str = "id") -> str:
    """
    Writes `row` into `store` keyed on `key`: update first, insert when no row matched.
    `store` is anything with update_row/insert_row (the local Database or a RemoteHandle).
    Returns 'updated' or 'inserted'.
    """
    if row.get(key) is None:
        raise InputError(f"Row for {table} has no '{key}' value.")
    if store.update_row(table, row, key) > 0:
        return "updated"
    store.insert_row(table, row)
    return "inserted"


class TableReconciler:
    """
    Applies one sync strategy to a table. Per-row write failures are recorded in
    `failures` and skipped; fetch failures are systemic and propagate.
    """

    def __init__(self, db: Database, remote: RemoteHandle, failures: Optional[PartialFailures] = None):
        self.db = db
        self.remote = remote
        self.failures = failures if failures is not None else PartialFailures()

    def _fetch_both(self, local_fetch: Callable[[], T], remote_fetch: Callable[[], R]) -> Tuple[T, R]:
        # Local fetch stays on this thread: store connections are thread-local
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-fetch") as pool:
            remote_future = pool.submit(remote_fetch)
            local_result = local_fetch()
            remote_result = remote_future.result()
        return local_result, remote_result

    def _write_rows(self, table: str, rows: List[Dict[str, Any]], write: Callable[[Dict[str, Any]], Any],
                    key: str, direction: str) -> int:
        written = 0
        for row in rows:
            try:
                write(row)
                written += 1
                logger.debug(f"{direction} {table} row {row.get(key)}")
            except ROW_WRITE_ERRORS as e:
                logger.warning(f"Failed to {direction} {table} row {row.get(key)}: {e}")
                self.failures.record_row(table, row.get(key), e)
        return written

    def _insert_remote_rows(self, table: str, rows: List[Dict[str, Any]], key: str) -> int:
        """Batch insert; a failed batch is retried row by row so one bad row only costs itself."""
        inserted = 0
        for start in range(0, len(rows), _INSERT_BATCH_SIZE):
            batch = rows[start:start + _INSERT_BATCH_SIZE]
            try:
                inserted += self.remote.insert_rows(table, batch)
            except RemoteError as e:
                logger.warning(f"Batch insert into remote {table} failed ({e}); retrying row by row.")
                inserted += self._write_rows(table, batch, lambda r: self.remote.insert_row(table, r), key, "push")
        return inserted

    # --- full ---
    def full(self, table: str, policy: ConflictPolicy) -> TableSyncResult:
        policy = ConflictPolicy(policy)
        schema = get_table_schema(table)
        key = schema.key
        local_rows, remote_rows = self._fetch_both(
            lambda: self.db.fetch_all_rows(table),
            lambda: self.remote.select_all(table),
        )
        local_by_id = {row[key]: row for row in local_rows if row.get(key) is not None}
        remote_by_id = {row[key]: row for row in remote_rows if row.get(key) is not None}

        to_push: List[Dict[str, Any]] = []
        to_pull: List[Dict[str, Any]] = []
        for row_id in list(local_by_id) + [i for i in remote_by_id if i not in local_by_id]:
            local_row = local_by_id.get(row_id)
            remote_row = remote_by_id.get(row_id)
            if remote_row is None:
                to_push.append(local_row)
            elif local_row is None:
                to_pull.append(remote_row)
            elif timestamps_equal(local_row.get("updated_at"), remote_row.get("updated_at")):
                continue
            elif policy == ConflictPolicy.CLOUD_WINS:
                # The policy alone picks the direction, whichever timestamp is newer
                to_pull.append(remote_row)
            else:
                to_push.append(local_row)

        pushed = self._write_rows(
            table, [schema.to_remote(r) for r in to_push],
            lambda r: upsert_by_key(self.remote, table, r, key), key, "push",
        )
        pulled = self._write_rows(
            table, [schema.to_local(r) for r in to_pull],
            lambda r: upsert_by_key(self.db, table, r, key), key, "pull",
        )
        logger.info(f"Full sync of '{table}' ({policy.value}): pushed={pushed}, pulled={pulled}")
        return TableSyncResult(table=table, pushed=pushed, pulled=pulled)

    # --- merge ---
    def merge_pull(self, table: str) -> TableSyncResult:
        schema = get_table_schema(table)
        key = schema.key
        local_ids, remote_ids = self._fetch_both(
            lambda: self.db.fetch_ids(table, key),
            lambda: self.remote.select_ids(table, key),
        )
        local_set = set(local_ids)
        missing = [i for i in remote_ids if i not in local_set]
        if not missing:
            logger.info(f"Merge pull of '{table}': nothing to pull")
            return TableSyncResult(table=table)
        rows = self.remote.select_by_ids(table, missing, key)
        pulled = self._write_rows(
            table, [schema.to_local(r) for r in rows],
            lambda r: self.db.insert_row(table, r), key, "pull",
        )
        logger.info(f"Merge pull of '{table}': pulled={pulled}")
        return TableSyncResult(table=table, pulled=pulled)

    def merge_push(self, table: str) -> TableSyncResult:
        schema = get_table_schema(table)
        key = schema.key
        local_ids, remote_ids = self._fetch_both(
            lambda: self.db.fetch_ids(table, key),
            lambda: self.remote.select_ids(table, key),
        )
        remote_set = set(remote_ids)
        missing = [i for i in local_ids if i not in remote_set]
        if not missing:
            logger.info(f"Merge push of '{table}': nothing to push")
            return TableSyncResult(table=table)
        rows = [schema.to_remote(r) for r in self.db.fetch_rows_by_ids(table, missing, key)]
        pushed = self._insert_remote_rows(table, rows, key)
        logger.info(f"Merge push of '{table}': pushed={pushed}")
        return TableSyncResult(table=table, pushed=pushed)

    # --- force ---
    def _fetch_remote_snapshots(self) -> Dict[str, Optional[List[Dict[str, Any]]]]:
        snapshots: Dict[str, Optional[List[Dict[str, Any]]]] = {}
        for table in FORCE_PULL_INSERT_ORDER:
            try:
                snapshots[table] = self.remote.select_all(table)
            except RemoteError as e:
                if table in OPTIONAL_REMOTE_TABLES and is_missing_table_error(e):
                    logger.info(f"Remote has no '{table}' table; skipping it.")
                    snapshots[table] = None
                    continue
                raise
        return snapshots

    def _merge_setting_row(self, remote_setting: Dict[str, Any]) -> Dict[str, Any]:
        merged = get_table_schema(TABLE_SETTING).to_local(remote_setting)
        local_setting = self.db.get_setting_row()
        for column in LOCAL_ONLY_SETTING_COLUMNS:
            merged[column] = local_setting.get(column)
        merged["id"] = SETTING_ROW_ID
        return merged

    def force_pull(self) -> List[TableSyncResult]:
        """
        Replaces every local table with the remote snapshot inside one transaction.
        Raises TransactionFailure (local state untouched) if the replacement cannot commit.
        """
        snapshots = self._fetch_remote_snapshots()
        remote_settings = snapshots.get(TABLE_SETTING) or []
        replace_setting = bool(remote_settings)
        setting_row = self._merge_setting_row(remote_settings[0]) if replace_setting else None

        results: List[TableSyncResult] = []
        try:
            with self.db.transaction():
                for table in FORCE_PULL_DELETE_ORDER:
                    if table == TABLE_SETTING and not replace_setting:
                        continue
                    deleted = self.db.delete_all_rows(table)
                    logger.debug(f"Force pull: deleted {deleted} local rows from '{table}'")
                for table in FORCE_PULL_INSERT_ORDER:
                    if table == TABLE_SETTING:
                        if setting_row is not None:
                            self.db.insert_row(TABLE_SETTING, setting_row)
                        continue
                    rows = snapshots.get(table)
                    if rows is None:
                        continue
                    schema = get_table_schema(table)
                    for row in rows:
                        self.db.insert_row(table, schema.to_local(row))
                    results.append(TableSyncResult(table=table, pulled=len(rows)))
        except (DatabaseError, InputError) as e:
            logger.error(f"Force pull could not replace local tables; rolled back: {e}", exc_info=True)
            raise TransactionFailure(f"Force pull rolled back: {e}") from e

        logger.info("Force pull complete: " + ", ".join(f"{r.table}={r.pulled}" for r in results))
        return results

    def force_push(self) -> List[TableSyncResult]:
        """
        Replaces the remote tables with the local snapshot. Any remote failure aborts the
        remaining steps and propagates with the service's own code and message.
        """
        local_snapshots = {table: self.db.fetch_all_rows(table) for table in FORCE_PUSH_INSERT_ORDER}

        for table in FORCE_PUSH_DELETE_ORDER:
            try:
                self.remote.delete_all(table)
                logger.debug(f"Force push: cleared remote '{table}'")
            except RemoteError as e:
                if table in OPTIONAL_REMOTE_TABLES and is_missing_table_error(e):
                    logger.info(f"Remote has no '{table}' table; nothing to clear.")
                    continue
                logger.error(f"Force push aborted while clearing remote '{table}': {e}")
                raise

        results: List[TableSyncResult] = []
        for table in FORCE_PUSH_INSERT_ORDER:
            schema = get_table_schema(table)
            rows = [schema.to_remote(r) for r in local_snapshots[table]]
            pushed = 0
            for start in range(0, len(rows), _INSERT_BATCH_SIZE):
                try:
                    pushed += self.remote.insert_rows(table, rows[start:start + _INSERT_BATCH_SIZE])
                except RemoteError as e:
                    logger.error(f"Force push aborted while inserting into remote '{table}': {e}")
                    raise
            results.append(TableSyncResult(table=table, pushed=pushed))

        logger.info("Force push complete: " + ", ".join(f"{r.table}={r.pushed}" for r in results))
        return results

#
# End of bills_app/Sync/Table_Sync.py
########################################################################################################################
