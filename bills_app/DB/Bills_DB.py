# Bills_DB.py
#########################################
# Bills_DB Library
# Manages the local SQLite store for clients, invoices, expenses, automation rules
# and the single settings row. The store owns the authoritative row timestamps.
####
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
import threading
from typing import List, Dict, Any, Optional, Iterable, Tuple, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from bills_app.Constants import (
    SETTING_ROW_ID, TABLE_CLIENT, TABLE_INVOICE, TABLE_EXPENSE, TABLE_AUTOMATION_RULE, TABLE_SETTING,
    DEFAULT_CONFLICT_POLICY,
)
#
#######################################################################################################################
#
# Functions:

# --- Custom Exceptions ---
class DatabaseError(Exception):
    """Base exception for database related errors."""
    pass

class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


# --- Table Schemas ---
@dataclass(frozen=True)
class TableSchema:
    """
    Column layout of one syncable table.

    Rows cross the local/remote boundary through `to_local` / `to_remote`, which
    drop unknown columns and convert boolean columns (0/1 locally, true/false remotely).
    """
    name: str
    columns: Tuple[str, ...]
    key: str = "id"
    bool_columns: frozenset = field(default_factory=frozenset)

    def to_local(self, row: Dict[str, Any]) -> Dict[str, Any]:
        converted = {}
        for col in self.columns:
            if col not in row:
                continue
            value = row[col]
            if col in self.bool_columns and value is not None:
                value = 1 if value else 0
            converted[col] = value
        return converted

    def to_remote(self, row: Dict[str, Any]) -> Dict[str, Any]:
        converted = {}
        for col in self.columns:
            if col not in row:
                continue
            value = row[col]
            if col in self.bool_columns and value is not None:
                value = bool(value)
            converted[col] = value
        return converted


TABLE_SCHEMAS: Dict[str, TableSchema] = {
    TABLE_CLIENT: TableSchema(
        name=TABLE_CLIENT,
        columns=("id", "name", "email", "address", "phone", "hidden", "tax_id", "created_at", "updated_at"),
        bool_columns=frozenset({"hidden"}),
    ),
    TABLE_INVOICE: TableSchema(
        name=TABLE_INVOICE,
        columns=("id", "number", "client_id", "issue_date", "due_date", "expected_payment_date", "amount",
                 "currency", "status", "file_path", "folder_path", "description", "notes", "paid_at",
                 "created_at", "updated_at"),
    ),
    TABLE_EXPENSE: TableSchema(
        name=TABLE_EXPENSE,
        columns=("id", "invoice_id", "vendor", "category", "date", "amount", "currency", "file_path", "notes",
                 "created_at", "updated_at"),
    ),
    TABLE_AUTOMATION_RULE: TableSchema(
        name=TABLE_AUTOMATION_RULE,
        columns=("id", "client_id", "name", "day_of_month", "amount", "currency", "description",
                 "subject_template", "body_template", "cc_emails", "is_active", "last_sent_date",
                 "next_due_date", "created_at", "updated_at"),
        bool_columns=frozenset({"is_active"}),
    ),
    TABLE_SETTING: TableSchema(
        name=TABLE_SETTING,
        columns=("id", "data_root", "bills_root", "expenses_root", "filename_tpl", "security", "company_profile",
                 "smtp_config", "openai_key", "ai_backend", "supabase_url", "supabase_key",
                 "supabase_sync_enabled", "last_sync_at", "supabase_conflict_policy", "created_at", "updated_at"),
        bool_columns=frozenset({"supabase_sync_enabled"}),
    ),
}

# Setting columns that describe this device, never replaced by a remote snapshot
LOCAL_ONLY_SETTING_COLUMNS = (
    "data_root", "bills_root", "expenses_root", "security", "supabase_url", "supabase_key",
    "supabase_sync_enabled", "supabase_conflict_policy", "last_sync_at",
)


def get_table_schema(table: str) -> TableSchema:
    try:
        return TABLE_SCHEMAS[table]
    except KeyError:
        raise InputError(f"Unknown table '{table}'") from None


# --- Database Class ---
class Database:
    """
    Manages the SQLite connection and row-level operations for the local business records.
    Connections are thread-local, so the realtime listener and an on-demand sync run
    can write concurrently; SQLite serializes the conflicting statements.
    """
    _SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- Client Table --
CREATE TABLE IF NOT EXISTS client (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    address TEXT,
    phone TEXT,
    hidden BOOLEAN DEFAULT 0,
    tax_id TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_client_name ON client(name);
CREATE INDEX IF NOT EXISTS idx_client_email ON client(email);

-- Invoice Table --
CREATE TABLE IF NOT EXISTS invoice (
    id TEXT PRIMARY KEY,
    number TEXT UNIQUE NOT NULL,
    client_id TEXT NOT NULL REFERENCES client(id) ON DELETE CASCADE,
    issue_date TEXT NOT NULL,
    due_date TEXT,
    expected_payment_date TEXT,
    amount NUMERIC NOT NULL CHECK (amount >= 0),
    currency TEXT DEFAULT 'EUR',
    status TEXT DEFAULT 'DRAFT',
    file_path TEXT,
    folder_path TEXT,
    description TEXT,
    notes TEXT,
    paid_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_invoice_client_id ON invoice(client_id);
CREATE INDEX IF NOT EXISTS idx_invoice_status ON invoice(status);

-- Expense Table --
CREATE TABLE IF NOT EXISTS expense (
    id TEXT PRIMARY KEY,
    invoice_id TEXT REFERENCES invoice(id) ON DELETE SET NULL,
    vendor TEXT,
    category TEXT,
    date TEXT NOT NULL,
    amount NUMERIC NOT NULL CHECK (amount >= 0),
    currency TEXT DEFAULT 'EUR',
    file_path TEXT,
    notes TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_expense_invoice_id ON expense(invoice_id);
CREATE INDEX IF NOT EXISTS idx_expense_date ON expense(date);

-- Automation Rule Table --
CREATE TABLE IF NOT EXISTS automation_rule (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL REFERENCES client(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    day_of_month INTEGER NOT NULL CHECK (day_of_month >= 1 AND day_of_month <= 31),
    amount NUMERIC NOT NULL CHECK (amount >= 0),
    currency TEXT DEFAULT 'EUR',
    description TEXT NOT NULL,
    subject_template TEXT NOT NULL,
    body_template TEXT NOT NULL,
    cc_emails TEXT,
    is_active BOOLEAN DEFAULT 1,
    last_sent_date TEXT,
    next_due_date TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_automation_rule_client_id ON automation_rule(client_id);

-- Setting Table (single row, id = 1) --
CREATE TABLE IF NOT EXISTS setting (
    id INTEGER PRIMARY KEY,
    data_root TEXT,
    bills_root TEXT,
    expenses_root TEXT,
    filename_tpl TEXT,
    security TEXT,
    company_profile TEXT,
    smtp_config TEXT,
    openai_key TEXT,
    ai_backend TEXT DEFAULT 'local',
    supabase_url TEXT,
    supabase_key TEXT,
    supabase_sync_enabled BOOLEAN DEFAULT 0,
    last_sync_at TEXT,
    supabase_conflict_policy TEXT DEFAULT 'cloud_wins' CHECK (supabase_conflict_policy IN ('cloud_wins', 'local_wins')),
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

INSERT OR IGNORE INTO setting (id, ai_backend, supabase_sync_enabled, supabase_conflict_policy)
VALUES (1, 'local', 0, 'cloud_wins');
"""

    def __init__(self, db_path: Union[str, Path]):
        self.is_memory_db = (str(db_path) == ':memory:')
        if self.is_memory_db:
            self.db_path_str = ':memory:'
        else:
            self.db_path = Path(db_path).resolve()
            self.db_path_str = str(self.db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing Database object for path: {self.db_path_str}")

        self._local = threading.local()
        self._column_cache: Dict[str, List[str]] = {}
        try:
            self._ensure_schema()
        except DatabaseError as e:
            logger.critical(f"FATAL: Initial DB schema setup failed for {self.db_path_str}: {e}")
            raise

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                conn.execute("SELECT 1")
                return conn
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection to {self.db_path_str} was closed. Reopening.")
                self._local.conn = None

        try:
            conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=10)
            conn.row_factory = sqlite3.Row
            if not self.is_memory_db:
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
            self._local.conn = conn
            logger.debug(f"Opened SQLite connection to {self.db_path_str} [Thread: {threading.current_thread().name}]")
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database at {self.db_path_str}: {e}")
            self._local.conn = None
            raise DatabaseError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection: {e}")
            finally:
                self._local.conn = None
                logger.debug("Closed connection.")

    # --- Query Execution ---
    def execute_query(self, query: str, params: tuple = None, *, commit: bool = False) -> sqlite3.Cursor:
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            logger.trace(f"Executing Query: {query[:200]}... Params: {str(params)[:100]}...")
            cursor.execute(query, params or ())
            if commit:
                conn.commit()
            return cursor
        except sqlite3.Error as e:
            logger.error(f"Query failed: {query[:200]}... Error: {e}")
            raise DatabaseError(f"Query execution failed: {e}") from e

    def _execute_write(self, query: str, params: tuple) -> sqlite3.Cursor:
        """Executes one write statement, committing unless an outer transaction is open."""
        conn = self.get_connection()
        in_outer = conn.in_transaction
        try:
            cursor = conn.execute(query, params)
            if not in_outer:
                conn.commit()
            return cursor
        except sqlite3.Error as e:
            if not in_outer:
                conn.rollback()
            logger.debug(f"Write failed: {query[:200]}... Error: {e}")
            raise DatabaseError(f"Write failed: {e}") from e

    # --- Transaction Context ---
    @contextmanager
    def transaction(self):
        conn = self.get_connection()
        in_outer = conn.in_transaction
        try:
            if not in_outer:
                conn.execute("BEGIN")
            yield conn
            if not in_outer:
                conn.commit()
        except Exception as e:
            if not in_outer:
                logger.error(f"Transaction failed, rolling back: {type(e).__name__} - {e}")
                try:
                    conn.rollback()
                    logger.debug("Rollback successful.")
                except sqlite3.Error as rb_err:
                    logger.error(f"Rollback FAILED: {rb_err}")
            if isinstance(e, (InputError, DatabaseError)):
                raise
            raise DatabaseError(f"Transaction failed: {e}") from e

    # --- Schema Setup ---
    def _ensure_schema(self):
        conn = self.get_connection()
        try:
            conn.executescript(self._SCHEMA_SQL)
            conn.commit()
            logger.debug(f"Schema setup complete for: {self.db_path_str}")
        except sqlite3.Error as e:
            logger.error(f"Schema setup failed: {e}")
            raise DatabaseError(f"DB schema setup failed: {e}") from e

    def get_table_columns(self, table: str) -> List[str]:
        """Column names of a local table, cached per Database instance."""
        get_table_schema(table)
        if table in self._column_cache:
            return self._column_cache[table]
        cursor = self.execute_query(f"PRAGMA table_info(`{table}`)")
        columns = [row[1] for row in cursor.fetchall()]
        if not columns:
            raise DatabaseError(f"Could not retrieve columns for table: {table}")
        self._column_cache[table] = columns
        return columns

    # --- Internal Helpers ---
    @staticmethod
    def _get_current_utc_timestamp_str() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds")

    def _filter_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = set(self.get_table_columns(table))
        return {k: v for k, v in row.items() if k in columns}

    # --- Row-level Access (used by the sync engine) ---
    def fetch_all_rows(self, table: str) -> List[Dict[str, Any]]:
        get_table_schema(table)
        cursor = self.execute_query(f"SELECT * FROM `{table}`")
        return [dict(row) for row in cursor.fetchall()]

    def fetch_ids(self, table: str, key: str = "id") -> List[Any]:
        get_table_schema(table)
        cursor = self.execute_query(f"SELECT `{key}` FROM `{table}`")
        return [row[0] for row in cursor.fetchall()]

    def fetch_rows_by_ids(self, table: str, ids: Iterable[Any], key: str = "id") -> List[Dict[str, Any]]:
        get_table_schema(table)
        ids = list(ids)
        rows: List[Dict[str, Any]] = []
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = self.execute_query(f"SELECT * FROM `{table}` WHERE `{key}` IN ({placeholders})", tuple(chunk))
            rows.extend(dict(row) for row in cursor.fetchall())
        return rows

    def insert_row(self, table: str, row: Dict[str, Any]) -> int:
        data = self._filter_row(table, row)
        if not data:
            raise InputError(f"Cannot insert into {table}: no known columns in row.")
        cols = ", ".join(f"`{c}`" for c in data)
        placeholders = ", ".join("?" for _ in data)
        cursor = self._execute_write(f"INSERT INTO `{table}` ({cols}) VALUES ({placeholders})", tuple(data.values()))
        return cursor.rowcount

    def update_row(self, table: str, row: Dict[str, Any], key: str = "id") -> int:
        """Updates the row matching row[key]; returns the number of rows affected."""
        data = self._filter_row(table, row)
        if key not in data:
            raise InputError(f"Cannot update {table}: row has no '{key}' value.")
        set_cols = [c for c in data if c != key]
        if not set_cols:
            return 0
        set_clause = ", ".join(f"`{c}` = ?" for c in set_cols)
        params = tuple(data[c] for c in set_cols) + (data[key],)
        cursor = self._execute_write(f"UPDATE `{table}` SET {set_clause} WHERE `{key}` = ?", params)
        return cursor.rowcount

    def delete_row(self, table: str, key_value: Any, key: str = "id") -> int:
        get_table_schema(table)
        cursor = self._execute_write(f"DELETE FROM `{table}` WHERE `{key}` = ?", (key_value,))
        return cursor.rowcount

    def delete_all_rows(self, table: str) -> int:
        get_table_schema(table)
        cursor = self._execute_write(f"DELETE FROM `{table}`", ())
        return cursor.rowcount

    def get_record(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        rows = self.fetch_rows_by_ids(table, [record_id])
        return rows[0] if rows else None

    # --- Settings Helpers ---
    def get_setting_row(self) -> Dict[str, Any]:
        cursor = self.execute_query("SELECT * FROM setting WHERE id = ?", (SETTING_ROW_ID,))
        row = cursor.fetchone()
        return dict(row) if row else {}

    def _upsert_setting(self, changes: Dict[str, Any]) -> None:
        now = self._get_current_utc_timestamp_str()
        row = {**changes, "id": SETTING_ROW_ID, "updated_at": now}
        if self.update_row(TABLE_SETTING, row) == 0:
            row["created_at"] = now
            self.insert_row(TABLE_SETTING, row)

    def get_sync_settings(self) -> Dict[str, Any]:
        row = self.get_setting_row()
        return {
            "url": row.get("supabase_url"),
            "credential": row.get("supabase_key"),
            "enabled": bool(row.get("supabase_sync_enabled")),
            "conflict_policy": row.get("supabase_conflict_policy") or DEFAULT_CONFLICT_POLICY,
            "last_sync_at": row.get("last_sync_at"),
            "data_root": row.get("data_root"),
        }

    def save_sync_endpoint(self, url: Optional[str], credential_payload: Optional[str], enabled: bool) -> None:
        self._upsert_setting({
            "supabase_url": url,
            "supabase_key": credential_payload,
            "supabase_sync_enabled": 1 if enabled else 0,
        })
        logger.info(f"Saved sync endpoint (url set: {bool(url)}, enabled: {enabled})")

    def set_conflict_policy(self, policy: str) -> None:
        if policy not in ("cloud_wins", "local_wins"):
            raise InputError(f"Invalid conflict policy: {policy}")
        self._upsert_setting({"supabase_conflict_policy": policy})

    def update_last_sync_at(self, timestamp: Optional[str] = None) -> str:
        ts = timestamp or self._get_current_utc_timestamp_str()
        self._upsert_setting({"last_sync_at": ts})
        return ts

    def get_security_config(self) -> Dict[str, Any]:
        """The stored password record ({hasPassword, salt, hash}); empty when none or unreadable."""
        raw = self.get_setting_row().get("security")
        if not raw:
            return {}
        try:
            security = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Security config on the setting row is not valid JSON.")
            return {}
        return security if isinstance(security, dict) else {}

    def get_data_root(self) -> Optional[str]:
        return self.get_setting_row().get("data_root")

    def set_data_root(self, data_root: str) -> None:
        root = Path(data_root)
        self._upsert_setting({
            "data_root": str(root),
            "bills_root": str(root / "bills"),
            "expenses_root": str(root / "expenses"),
        })

#
# End of Bills_DB.py
#######################################################################################################################
