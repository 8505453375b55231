# Tests/conftest.py
# Description: Shared fixtures: isolated config, a file-backed Database, vaults, and an in-memory remote.
#
# Imports
import copy
import json
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional
#
# Third-Party Imports
import jwt
import pytest
#
# Local Imports
from bills_app import config as app_config
from bills_app.DB.Bills_DB import Database
from bills_app.Sync.Credentials import build_credential_payload
from bills_app.Sync.exceptions import RemoteError
from bills_app.Sync.Remote_Client import RemoteConnector, RemoteHandle
from bills_app.Sync.schemas import RealtimeEvent
from bills_app.Sync.Secrets_Vault import SecretVault
from bills_app.Sync.Sync_Engine import SyncOrchestrator
from bills_app.Sync.Sync_Service import SyncService
#
#######################################################################################################################
#
# --- Constants ---

TEST_PASSWORD = "correct horse battery staple"
TEST_SALT_HEX = "00112233445566778899aabbccddeeff"
TEST_URL = "https://project.example.co"
_SIGNING_SECRET = "test-signing-secret-long-enough-for-hs256"

ANON_KEY = jwt.encode({"role": "anon", "iss": "test"}, _SIGNING_SECRET, algorithm="HS256")
SERVICE_KEY = jwt.encode({"role": "service_role", "iss": "test"}, _SIGNING_SECRET, algorithm="HS256")

_MUTATING_OPS = frozenset({"insert", "update", "delete", "upload", "create_bucket"})


# --- In-memory remote ---

class FakeRemote(RemoteHandle):
    """
    RemoteHandle double backed by dicts. Records every call in `calls` / `call_log`
    and raises injected RemoteErrors from `fail_operations` ("op:target") or `fail_rows`.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {
            "client": {}, "invoice": {}, "expense": {}, "automation_rule": {}, "setting": {},
        }
        self.missing_tables = set()
        self.objects: Dict[str, bytes] = {}
        self.object_options: Dict[str, Dict[str, Any]] = {}
        self.bucket_present = True
        self.calls: Counter = Counter()
        self.call_log: List[tuple] = []
        self.fail_operations: Dict[str, RemoteError] = {}
        self.fail_rows: Dict[tuple, str] = {}
        self.subscriptions: Dict[str, Callable[[RealtimeEvent], None]] = {}
        self.closed = False

    # --- helpers for tests ---
    def seed(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        for row in rows:
            self.tables[table][row["id"]] = dict(row)

    def rows(self, table: str) -> Dict[Any, Dict[str, Any]]:
        return self.tables[table]

    @property
    def mutation_count(self) -> int:
        return sum(n for op, n in self.calls.items() if op in _MUTATING_OPS)

    def emit(self, table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        self.subscriptions[table](RealtimeEvent(table=table, event_type=event_type, new=new or {}, old=old or {}))

    def _record(self, op: str, target: str) -> None:
        self.calls[op] += 1
        self.call_log.append((op, target))
        injected = self.fail_operations.get(f"{op}:{target}")
        if injected is not None:
            raise injected

    def _table(self, op: str, table: str) -> Dict[Any, Dict[str, Any]]:
        self._record(op, table)
        if table in self.missing_tables:
            raise RemoteError(f"{op} {table}", f"Could not find the table 'public.{table}' in the schema cache", "PGRST205")
        return self.tables[table]

    # --- rows ---
    def select_all(self, table):
        return [copy.deepcopy(r) for r in self._table("select", table).values()]

    def select_ids(self, table, key="id"):
        return list(self._table("select", table).keys())

    def select_by_ids(self, table, ids, key="id"):
        data = self._table("select", table)
        return [copy.deepcopy(data[i]) for i in ids if i in data]

    def insert_rows(self, table, rows):
        data = self._table("insert", table)
        for row in rows:
            message = self.fail_rows.get((table, row.get("id")))
            if message:
                raise RemoteError(f"insert {table}", message, "23514")
            if row.get("id") in data:
                raise RemoteError(f"insert {table}", "duplicate key value violates unique constraint", "23505")
        for row in rows:
            data[row["id"]] = dict(row)
        return len(rows)

    def update_row(self, table, row, key="id"):
        data = self._table("update", table)
        message = self.fail_rows.get((table, row.get(key)))
        if message:
            raise RemoteError(f"update {table}", message, "23514")
        if row[key] not in data:
            return 0
        data[row[key]].update(row)
        return 1

    def delete_all(self, table, key="id"):
        self._table("delete", table).clear()

    def probe_table(self, table):
        self._table("probe", table)

    # --- storage ---
    def list_objects(self, prefix):
        self._record("list", prefix)
        return sorted(k for k in self.objects if k.startswith(f"{prefix}/"))

    def upload(self, key, data, overwrite, content_type="application/octet-stream"):
        self._record("upload", key)
        if key in self.objects and not overwrite:
            raise RemoteError(f"upload {key}", "The resource already exists", "409")
        self.objects[key] = bytes(data)
        self.object_options[key] = {"overwrite": overwrite, "content_type": content_type}

    def download(self, key):
        self._record("download", key)
        if key not in self.objects:
            raise RemoteError(f"download {key}", "Object not found", "404")
        return self.objects[key]

    def bucket_exists(self):
        self._record("bucket_exists", "bills-app")
        return self.bucket_present

    def create_bucket(self):
        self._record("create_bucket", "bills-app")
        self.bucket_present = True

    # --- realtime ---
    def subscribe(self, table, callback):
        self._record("subscribe", table)
        self.subscriptions[table] = callback
        return f"sub:{table}"

    def unsubscribe(self, subscription):
        table = subscription.split(":", 1)[1]
        self._record("unsubscribe", table)
        self.subscriptions.pop(table, None)

    def close(self):
        self.closed = True


# --- Fixtures ---

@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Points the TOML config at a per-test file so no test reads or writes the user's config."""
    config_file = tmp_path / "config" / "config.toml"
    monkeypatch.setenv(app_config.CONFIG_PATH_ENV_VAR, str(config_file))
    app_config._CONFIG_CACHE = None
    yield config_file
    app_config._CONFIG_CACHE = None


@pytest.fixture
def temp_db_path(tmp_path):
    """Provides a path to a temporary database file for each test."""
    return str(tmp_path / "test_bills.db")


@pytest.fixture
def db_instance(temp_db_path):
    db = Database(db_path=temp_db_path)
    yield db
    db.close_connection()


@pytest.fixture
def vault():
    """An unlocked vault."""
    v = SecretVault()
    v.unlock(TEST_PASSWORD, TEST_SALT_HEX)
    return v


@pytest.fixture
def locked_vault():
    return SecretVault()


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def configure_endpoint(db_instance):
    """Stores an enabled endpoint on the setting row. Encrypts the key when given an unlocked vault."""
    def _configure(key: str = ANON_KEY, vault: Optional[SecretVault] = None, enabled: bool = True,
                   url: str = TEST_URL) -> None:
        if vault is not None:
            payload = build_credential_payload(key, vault)
        else:
            payload = json.dumps({"encrypted": False, "plainText": key})
        db_instance.save_sync_endpoint(url, payload, enabled)
    return _configure


@pytest.fixture
def connector(fake_remote):
    """A RemoteConnector whose factory hands out the shared FakeRemote and counts connections."""
    created = []

    def _factory(config):
        created.append(config)
        return fake_remote

    conn = RemoteConnector(factory=_factory)
    conn.created = created
    return conn


@pytest.fixture
def orchestrator(db_instance, vault, connector):
    return SyncOrchestrator(db_instance, vault, connector=connector, file_workers=2)


@pytest.fixture
def service(db_instance, vault, orchestrator):
    return SyncService(db_instance, vault, orchestrator=orchestrator)


# --- Row builders ---

def make_client(client_id: str, name: str = "Acme", updated_at: str = "2024-01-01T10:00:00+00:00", **extra):
    row = {"id": client_id, "name": name, "email": f"{client_id}@example.com", "hidden": 0,
           "created_at": "2024-01-01T09:00:00+00:00", "updated_at": updated_at}
    row.update(extra)
    return row


@pytest.fixture
def client_row():
    return make_client

#
# End of Tests/conftest.py
#######################################################################################################################
