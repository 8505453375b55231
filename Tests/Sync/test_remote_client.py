# test_remote_client.py
#
# Tests for the Supabase-backed RemoteHandle and the cached RemoteConnector, using a mocked client.
#
# Imports
import threading
from unittest.mock import ANY, AsyncMock, MagicMock
#
# Third-Party Imports
import httpx
import pytest
from postgrest.exceptions import APIError
from pydantic import SecretStr
from storage3.utils import StorageException
from supabase import AsyncSupabaseException
from websockets.exceptions import ConnectionClosedError
#
# Local Imports
from bills_app.Sync.exceptions import RemoteError
from bills_app.Sync.Remote_Client import (
    RemoteConnector, SupabaseRemote, is_missing_table_error, normalize_realtime_payload,
)
from bills_app.Sync.schemas import EndpointConfig
from Tests.conftest import FakeRemote, TEST_URL
#
#######################################################################################################################
#
# --- Fixtures ---

@pytest.fixture
def client():
    return MagicMock(name="supabase_client")


@pytest.fixture
def remote(client):
    return SupabaseRemote(TEST_URL, "key", bucket="bills-app", list_limit=2, client=client)


def query(client):
    """The chainable PostgREST builder returned by client.table()."""
    return client.table.return_value


# --- Rows ---

class TestRows:
    def test_select_all(self, remote, client):
        query(client).select.return_value.execute.return_value.data = [{"id": "a"}]
        assert remote.select_all("client") == [{"id": "a"}]
        client.table.assert_called_with("client")
        query(client).select.assert_called_with("*")

    def test_select_by_ids_chunks(self, remote, client):
        in_ = query(client).select.return_value.in_
        in_.return_value.execute.return_value.data = [{"id": "x"}]
        rows = remote.select_by_ids("client", [str(i) for i in range(450)])
        assert in_.call_count == 3
        assert len(in_.call_args_list[0].args[1]) == 200
        assert len(rows) == 3

    def test_insert_rows(self, remote, client):
        assert remote.insert_rows("client", []) == 0
        query(client).insert.assert_not_called()
        assert remote.insert_rows("client", [{"id": "a"}, {"id": "b"}]) == 2
        query(client).insert.assert_called_once_with([{"id": "a"}, {"id": "b"}])

    def test_update_row_returns_matched(self, remote, client):
        eq = query(client).update.return_value.eq
        eq.return_value.execute.return_value.data = []
        assert remote.update_row("client", {"id": "a", "name": "N"}) == 0
        query(client).update.assert_called_with({"name": "N"})
        eq.assert_called_with("id", "a")

    def test_delete_all_filters_every_row(self, remote, client):
        remote.delete_all("invoice")
        query(client).delete.return_value.neq.assert_called_once_with("id", "00000000-0000-0000-0000-000000000000")

    def test_api_error_keeps_code_and_message(self, remote, client):
        query(client).select.return_value.execute.side_effect = APIError(
            {"message": "permission denied for table client", "code": "42501", "hint": None, "details": None})
        with pytest.raises(RemoteError) as exc_info:
            remote.select_all("client")
        error = exc_info.value
        assert error.remote_code == "42501"
        assert error.remote_message == "permission denied for table client"
        assert error.operation == "select client"

    def test_missing_table_detected(self, remote, client):
        query(client).delete.return_value.neq.return_value.execute.side_effect = APIError(
            {"message": "Could not find the table", "code": "PGRST205", "hint": None, "details": None})
        with pytest.raises(RemoteError) as exc_info:
            remote.delete_all("automation_rule")
        assert is_missing_table_error(exc_info.value)

    def test_transport_error_wrapped(self, remote, client):
        query(client).select.return_value.limit.return_value.execute.side_effect = httpx.ConnectError("refused")
        with pytest.raises(RemoteError) as exc_info:
            remote.probe_table("client")
        assert exc_info.value.remote_code == "ConnectError"


# --- Storage ---

class TestStorage:
    def bucket(self, client):
        return client.storage.from_.return_value

    def test_list_recurses_and_pages(self, remote, client):
        pages = {
            ("bills", 0): [{"name": "2024", "id": None}, {"name": "a.pdf", "id": "1"}],
            ("bills", 2): [{"name": ".emptyFolderPlaceholder", "id": "2"}],
            ("bills/2024", 0): [{"name": "b.pdf", "id": "3"}],
        }
        self.bucket(client).list.side_effect = lambda path, options: pages.get((path, options["offset"]), [])

        keys = remote.list_objects("bills")

        assert sorted(keys) == ["bills/2024/b.pdf", "bills/a.pdf"]
        client.storage.from_.assert_called_with("bills-app")

    def test_upload_options(self, remote, client):
        remote.upload("bills/a.pdf", b"data", overwrite=True, content_type="application/pdf")
        self.bucket(client).upload.assert_called_once_with(
            "bills/a.pdf", b"data", file_options={"content-type": "application/pdf", "upsert": "true"})
        remote.upload("bills/b.pdf", b"data", overwrite=False)
        assert self.bucket(client).upload.call_args.kwargs["file_options"]["upsert"] == "false"

    def test_storage_error_wrapped(self, remote, client):
        self.bucket(client).download.side_effect = StorageException(
            {"statusCode": 404, "error": "not_found", "message": "Object not found"})
        with pytest.raises(RemoteError) as exc_info:
            remote.download("config/bills-app.config.json")
        assert exc_info.value.remote_code == "404"
        assert exc_info.value.remote_message == "Object not found"

    def test_bucket_exists_and_create(self, remote, client):
        present = MagicMock()
        present.name = "bills-app"
        client.storage.list_buckets.return_value = [present]
        assert remote.bucket_exists() is True
        client.storage.list_buckets.return_value = []
        assert remote.bucket_exists() is False
        remote.create_bucket()
        client.storage.create_bucket.assert_called_once_with("bills-app", options={"public": False})


# --- Realtime payloads ---

class TestRealtimePayload:
    def test_nested_payload(self):
        event = normalize_realtime_payload("client", {
            "data": {"table": "client", "type": "UPDATE", "record": {"id": "a"}, "old_record": {"id": "a"}},
            "ids": [1],
        })
        assert event.event_type == "UPDATE"
        assert event.new == {"id": "a"}
        assert event.old == {"id": "a"}

    def test_flat_payload_and_lowercase_type(self):
        event = normalize_realtime_payload("invoice", {"eventType": "delete", "old": {"id": "i"}})
        assert event.table == "invoice"
        assert event.event_type == "DELETE"
        assert event.new == {}


# --- Realtime client ---

@pytest.fixture
def async_client(mocker):
    """Async Supabase client double; `factory` stands in for acreate_client."""
    async_client = MagicMock(name="async_supabase_client")
    async_client.channel.return_value.subscribe = AsyncMock()
    async_client.remove_channel = AsyncMock()
    async_client.factory = mocker.patch(
        "bills_app.Sync.Remote_Client.acreate_client", AsyncMock(return_value=async_client))
    return async_client


@pytest.fixture
def live_remote(remote):
    yield remote
    remote.close()


class TestRealtimeClient:
    def test_subscribe_registers_change_listener(self, live_remote, async_client):
        channel = async_client.channel.return_value

        subscription = live_remote.subscribe("client", lambda event: None)

        assert subscription is channel
        async_client.factory.assert_awaited_once_with(TEST_URL, "key")
        async_client.channel.assert_called_once_with("bills-app-client")
        channel.on_postgres_changes.assert_called_once_with("*", schema="public", table="client", callback=ANY)
        channel.subscribe.assert_awaited_once()

    def test_events_applied_in_order_off_the_loop_thread(self, live_remote, async_client):
        received = []
        live_remote.subscribe("client", lambda event: received.append((event, threading.current_thread().name)))
        handler = async_client.channel.return_value.on_postgres_changes.call_args.kwargs["callback"]

        handler({"data": {"type": "INSERT", "table": "client", "record": {"id": "a"}}})
        handler({"data": {"type": "UPDATE", "table": "client", "record": {"id": "a", "name": "B"}}})
        live_remote.close()

        assert [event.event_type for event, _ in received] == ["INSERT", "UPDATE"]
        assert received[1][0].new == {"id": "a", "name": "B"}
        assert all(name.startswith("realtime-apply") for _, name in received)

    def test_malformed_payload_is_dropped(self, live_remote, async_client):
        received = []
        live_remote.subscribe("client", received.append)
        handler = async_client.channel.return_value.on_postgres_changes.call_args.kwargs["callback"]

        handler({"data": {"type": "TRUNCATE", "table": "client"}})
        handler({"unexpected": True})
        live_remote.close()

        assert received == []

    def test_subscribe_timeout_wrapped(self, live_remote, async_client):
        async_client.channel.return_value.subscribe.side_effect = TimeoutError("timed out")
        with pytest.raises(RemoteError) as exc_info:
            live_remote.subscribe("invoice", lambda event: None)
        assert exc_info.value.operation == "subscribe invoice"
        assert exc_info.value.remote_code == "TimeoutError"

    def test_client_factory_error_wrapped(self, live_remote, async_client):
        async_client.factory.side_effect = AsyncSupabaseException("Invalid API key")
        with pytest.raises(RemoteError) as exc_info:
            live_remote.subscribe("client", lambda event: None)
        assert exc_info.value.remote_code == "SupabaseException"
        assert exc_info.value.remote_message == "Invalid API key"

    def test_websocket_error_wrapped(self, live_remote, async_client):
        async_client.channel.return_value.subscribe.side_effect = ConnectionClosedError(None, None)
        with pytest.raises(RemoteError) as exc_info:
            live_remote.subscribe("expense", lambda event: None)
        assert exc_info.value.remote_code == "ConnectionClosedError"

    def test_unsubscribe_removes_channel(self, live_remote, async_client):
        subscription = live_remote.subscribe("client", lambda event: None)
        live_remote.unsubscribe(subscription)
        async_client.remove_channel.assert_awaited_once_with(subscription)

    def test_unsubscribe_after_close_does_not_reconnect(self, live_remote, async_client, mocker):
        subscription = live_remote.subscribe("client", lambda event: None)
        live_remote.close()
        loop_cls = mocker.patch("bills_app.Sync.Remote_Client._RealtimeLoop")

        live_remote.unsubscribe(subscription)

        loop_cls.assert_not_called()
        assert live_remote._realtime is None
        async_client.remove_channel.assert_not_awaited()
        assert async_client.factory.await_count == 1

    def test_close_stops_loop_thread(self, live_remote, async_client):
        live_remote.subscribe("client", lambda event: None)
        thread = live_remote._realtime._thread
        assert thread.is_alive()

        live_remote.close()

        assert not thread.is_alive()
        assert live_remote._realtime is None


# --- Connector ---

def endpoint(key="k1", url=TEST_URL):
    return EndpointConfig(url=url, secret=SecretStr(key))


class TestRemoteConnector:
    def test_reuses_handle_for_same_endpoint(self):
        made = []
        connector = RemoteConnector(factory=lambda cfg: made.append(cfg) or FakeRemote())
        first = connector.connect(endpoint())
        assert connector.connect(endpoint()) is first
        assert len(made) == 1

    def test_new_key_replaces_and_closes_old(self):
        connector = RemoteConnector(factory=lambda cfg: FakeRemote())
        first = connector.connect(endpoint("k1"))
        second = connector.connect(endpoint("k2"))
        assert second is not first
        assert first.closed
        assert connector.connect(endpoint("k2")) is second

    def test_reset(self):
        made = []
        connector = RemoteConnector(factory=lambda cfg: made.append(cfg) or FakeRemote())
        handle = connector.connect(endpoint())
        connector.reset()
        assert handle.closed
        assert connector.connect(endpoint()) is not handle
        assert len(made) == 2

    def test_factory_failure_wrapped(self):
        attempts = []

        def _boom(cfg):
            attempts.append(cfg)
            raise ValueError("Invalid URL")

        connector = RemoteConnector(factory=_boom)
        with pytest.raises(RemoteError) as exc_info:
            connector.connect(endpoint())
        assert exc_info.value.operation == "connect"
        with pytest.raises(RemoteError):
            connector.connect(endpoint())
        assert len(attempts) == 2

#
# End of test_remote_client.py
#######################################################################################################################
