# bills_app/Sync/Remote_Client.py
# Description: Remote service handle (rows, blob storage, change notifications) and the connector that caches it.
#
# Imports
import asyncio
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
#
# 3rd-party Libraries
import httpx
from loguru import logger
from pydantic import ValidationError
from postgrest.exceptions import APIError
from storage3.utils import StorageException
from supabase import AsyncClient, AsyncSupabaseException, Client, NotConnectedError, acreate_client, create_client
from websockets.exceptions import WebSocketException
#
# Local Imports
from bills_app.config import get_sync_setting
from bills_app.Constants import DEFAULT_BUCKET
from .exceptions import RemoteError
from .schemas import EndpointConfig, RealtimeEvent
#
########################################################################################################################
#
# Functions:

# Error codes meaning "this table does not exist on the remote"
TABLE_MISSING_CODES = frozenset({"42P01", "PGRST205"})

# Delete-all needs a filter; no real row uses the nil UUID
_DELETE_ALL_SENTINEL = "00000000-0000-0000-0000-000000000000"
_SELECT_BY_IDS_CHUNK = 200
_STORAGE_PLACEHOLDER = ".emptyFolderPlaceholder"
_REALTIME_TIMEOUT_SECONDS = 30
# Errors raised by the async client and its websocket transport
_REALTIME_ERRORS = (
    TimeoutError, OSError, httpx.HTTPError, AsyncSupabaseException, NotConnectedError, WebSocketException,
)


def is_missing_table_error(error: RemoteError) -> bool:
    return error.remote_code in TABLE_MISSING_CODES


class RemoteHandle(ABC):
    """
    The operations the sync engine needs from the remote service.

    Rows are keyed on `id`; storage keys are `/` separated paths inside one bucket.
    Every failure is raised as RemoteError carrying the service's own code and message.
    """

    # --- Rows ---
    @abstractmethod
    def select_all(self, table: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def select_ids(self, table: str, key: str = "id") -> List[Any]: ...

    @abstractmethod
    def select_by_ids(self, table: str, ids: Iterable[Any], key: str = "id") -> List[Dict[str, Any]]: ...

    @abstractmethod
    def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int: ...

    @abstractmethod
    def update_row(self, table: str, row: Dict[str, Any], key: str = "id") -> int: ...

    @abstractmethod
    def delete_all(self, table: str, key: str = "id") -> None: ...

    @abstractmethod
    def probe_table(self, table: str) -> None: ...

    def insert_row(self, table: str, row: Dict[str, Any]) -> int:
        return self.insert_rows(table, [row])

    # --- Storage ---
    @abstractmethod
    def list_objects(self, prefix: str) -> List[str]: ...

    @abstractmethod
    def upload(self, key: str, data: bytes, overwrite: bool, content_type: str = "application/octet-stream") -> None: ...

    @abstractmethod
    def download(self, key: str) -> bytes: ...

    @abstractmethod
    def bucket_exists(self) -> bool: ...

    @abstractmethod
    def create_bucket(self) -> None: ...

    # --- Change notifications ---
    @abstractmethod
    def subscribe(self, table: str, callback: Callable[[RealtimeEvent], None]) -> Any: ...

    @abstractmethod
    def unsubscribe(self, subscription: Any) -> None: ...

    def close(self) -> None:
        pass


def _storage_error_details(error: StorageException) -> Tuple[Optional[str], str]:
    code = getattr(error, "code", None) or getattr(error, "status", None)
    message = getattr(error, "message", None)
    if error.args and isinstance(error.args[0], dict):
        body = error.args[0]
        code = code or body.get("statusCode") or body.get("error")
        message = message or body.get("message") or body.get("error")
    return (str(code) if code is not None else None), (message or str(error))


def normalize_realtime_payload(table: str, payload: Dict[str, Any]) -> RealtimeEvent:
    """Maps a postgres_changes payload onto {eventType, new, old}."""
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    event_type = data.get("type") or data.get("eventType")
    if hasattr(event_type, "value"):
        event_type = event_type.value
    return RealtimeEvent(
        table=data.get("table") or table,
        event_type=str(event_type).upper(),
        new=data.get("record") or data.get("new") or {},
        old=data.get("old_record") or data.get("old") or {},
    )


class _RealtimeLoop:
    """
    Runs the async realtime client on a dedicated event loop thread.

    Change callbacks are handed to a single worker thread so that local writes never
    block the loop and events are applied in the order they arrive.
    """

    def __init__(self, url: str, key: str):
        self._url = url
        self._key = key
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="realtime-loop", daemon=True)
        self._thread.start()
        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="realtime-apply")
        self._client: Optional[AsyncClient] = None

    def run(self, coro) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=_REALTIME_TIMEOUT_SECONDS)

    def dispatch(self, callback: Callable[[RealtimeEvent], None], event: RealtimeEvent) -> None:
        try:
            self._dispatcher.submit(callback, event)
        except RuntimeError:
            logger.debug(f"Realtime dispatcher already shut down; dropping {event.event_type} on '{event.table}'")

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = await acreate_client(self._url, self._key)
        return self._client

    async def subscribe(self, table: str, schema: str, handler: Callable[[Dict[str, Any]], None]):
        client = await self._get_client()
        channel = client.channel(f"bills-app-{table}")
        channel.on_postgres_changes("*", schema=schema, table=table, callback=handler)

        def _on_status(status, err=None):
            if err:
                logger.warning(f"Realtime channel for '{table}' reported {status}: {err}")
            else:
                logger.debug(f"Realtime channel for '{table}': {status}")

        await channel.subscribe(_on_status)
        return channel

    async def unsubscribe(self, channel) -> None:
        client = await self._get_client()
        await client.remove_channel(channel)

    def stop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._dispatcher.shutdown(wait=True)
        if not self._thread.is_alive():
            self._loop.close()


class SupabaseRemote(RemoteHandle):
    """RemoteHandle backed by a Supabase project (PostgREST tables, Storage bucket, Realtime)."""

    def __init__(self, url: str, key: str, bucket: str = DEFAULT_BUCKET, list_limit: int = 1000,
                 realtime_schema: str = "public", client: Optional[Client] = None):
        self.url = url
        self._key = key
        self.bucket = bucket
        self.list_limit = list_limit
        self.realtime_schema = realtime_schema
        self.client: Client = client if client is not None else create_client(url, key)
        self._realtime: Optional[_RealtimeLoop] = None
        self._realtime_lock = threading.Lock()

    def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except APIError as e:
            raise RemoteError(operation, e.message or str(e), e.code) from e
        except StorageException as e:
            code, message = _storage_error_details(e)
            raise RemoteError(operation, message, code) from e
        except httpx.HTTPError as e:
            raise RemoteError(operation, str(e) or type(e).__name__, type(e).__name__) from e

    # --- Rows ---
    def select_all(self, table: str) -> List[Dict[str, Any]]:
        response = self._call(f"select {table}", lambda: self.client.table(table).select("*").execute())
        return list(response.data or [])

    def select_ids(self, table: str, key: str = "id") -> List[Any]:
        response = self._call(f"select {table}.{key}", lambda: self.client.table(table).select(key).execute())
        return [row[key] for row in (response.data or [])]

    def select_by_ids(self, table: str, ids: Iterable[Any], key: str = "id") -> List[Dict[str, Any]]:
        ids = list(ids)
        rows: List[Dict[str, Any]] = []
        for start in range(0, len(ids), _SELECT_BY_IDS_CHUNK):
            chunk = ids[start:start + _SELECT_BY_IDS_CHUNK]
            response = self._call(
                f"select {table} by ids",
                lambda: self.client.table(table).select("*").in_(key, chunk).execute(),
            )
            rows.extend(response.data or [])
        return rows

    def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        self._call(f"insert {table}", lambda: self.client.table(table).insert(rows).execute())
        return len(rows)

    def update_row(self, table: str, row: Dict[str, Any], key: str = "id") -> int:
        changes = {k: v for k, v in row.items() if k != key}
        response = self._call(
            f"update {table}",
            lambda: self.client.table(table).update(changes).eq(key, row[key]).execute(),
        )
        return len(response.data or [])

    def delete_all(self, table: str, key: str = "id") -> None:
        self._call(
            f"delete {table}",
            lambda: self.client.table(table).delete().neq(key, _DELETE_ALL_SENTINEL).execute(),
        )

    def probe_table(self, table: str) -> None:
        self._call(f"probe {table}", lambda: self.client.table(table).select("*").limit(1).execute())

    # --- Storage ---
    def list_objects(self, prefix: str) -> List[str]:
        bucket = self.client.storage.from_(self.bucket)
        keys: List[str] = []
        pending = [prefix.strip("/")]
        while pending:
            current = pending.pop()
            offset = 0
            while True:
                options = {"limit": self.list_limit, "offset": offset, "sortBy": {"column": "name", "order": "asc"}}
                page = self._call(f"list {current or '/'}", lambda: bucket.list(current, options))
                for item in page or []:
                    name = item.get("name")
                    if not name or name == _STORAGE_PLACEHOLDER:
                        continue
                    full = f"{current}/{name}" if current else name
                    # Folders come back without an object id
                    if item.get("id"):
                        keys.append(full)
                    else:
                        pending.append(full)
                if not page or len(page) < self.list_limit:
                    break
                offset += self.list_limit
        return keys

    def upload(self, key: str, data: bytes, overwrite: bool, content_type: str = "application/octet-stream") -> None:
        options = {"content-type": content_type, "upsert": "true" if overwrite else "false"}
        self._call(
            f"upload {key}",
            lambda: self.client.storage.from_(self.bucket).upload(key, data, file_options=options),
        )

    def download(self, key: str) -> bytes:
        return self._call(f"download {key}", lambda: self.client.storage.from_(self.bucket).download(key))

    def bucket_exists(self) -> bool:
        buckets = self._call("list buckets", lambda: self.client.storage.list_buckets())
        return any(getattr(b, "name", None) == self.bucket or getattr(b, "id", None) == self.bucket
                   for b in buckets or [])

    def create_bucket(self) -> None:
        self._call(
            f"create bucket {self.bucket}",
            lambda: self.client.storage.create_bucket(self.bucket, options={"public": False}),
        )

    # --- Change notifications ---
    def _get_realtime(self) -> _RealtimeLoop:
        with self._realtime_lock:
            if self._realtime is None:
                self._realtime = _RealtimeLoop(self.url, self._key)
            return self._realtime

    def subscribe(self, table: str, callback: Callable[[RealtimeEvent], None]) -> Any:
        realtime = self._get_realtime()

        def _handler(payload: Dict[str, Any]) -> None:
            try:
                event = normalize_realtime_payload(table, payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed realtime payload on '{table}': {e.error_count()} errors")
                return
            realtime.dispatch(callback, event)

        try:
            return realtime.run(realtime.subscribe(table, self.realtime_schema, _handler))
        except _REALTIME_ERRORS as e:
            raise RemoteError(f"subscribe {table}", str(e) or type(e).__name__, type(e).__name__) from e

    def unsubscribe(self, subscription: Any) -> None:
        with self._realtime_lock:
            realtime = self._realtime
        if realtime is None:
            logger.debug("Realtime client already closed; nothing to unsubscribe.")
            return
        try:
            realtime.run(realtime.unsubscribe(subscription))
        except _REALTIME_ERRORS as e:
            raise RemoteError("unsubscribe", str(e) or type(e).__name__, type(e).__name__) from e

    def close(self) -> None:
        with self._realtime_lock:
            if self._realtime is not None:
                self._realtime.stop()
                self._realtime = None


def default_remote_factory(config: EndpointConfig) -> RemoteHandle:
    return SupabaseRemote(
        config.url,
        config.secret.get_secret_value(),
        bucket=get_sync_setting("bucket", DEFAULT_BUCKET),
        list_limit=int(get_sync_setting("remote_list_limit", 1000)),
        realtime_schema=get_sync_setting("realtime_schema", "public"),
    )


class RemoteConnector:
    """
    Owns the single cached RemoteHandle. The handle is reused while the URL/key pair
    is unchanged; a failed remote call does not drop it.
    """

    def __init__(self, factory: Callable[[EndpointConfig], RemoteHandle] = default_remote_factory):
        self._factory = factory
        self._lock = threading.Lock()
        self._handle: Optional[RemoteHandle] = None
        self._handle_key: Optional[tuple] = None

    def connect(self, config: EndpointConfig) -> RemoteHandle:
        with self._lock:
            if self._handle is not None and self._handle_key == config.cache_key:
                return self._handle
            if self._handle is not None:
                logger.info("Sync endpoint changed; replacing cached remote handle.")
                self._handle.close()
                self._handle, self._handle_key = None, None
            logger.info(f"Connecting to remote service at {config.url}")
            try:
                self._handle = self._factory(config)
            except Exception as e:
                # create_client raises its own exception type for a bad URL or key
                raise RemoteError("connect", str(e) or type(e).__name__, type(e).__name__) from e
            self._handle_key = config.cache_key
            return self._handle

    def reset(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
            self._handle = None
            self._handle_key = None

#
# End of bills_app/Sync/Remote_Client.py
########################################################################################################################
