# test_sync_orchestrator.py
#
# End-to-end tests of sync runs, realtime start/stop and diagnostics against the in-memory remote.
#
# Imports
#
# Third-Party Imports
import pytest
#
# Local Imports
from bills_app.Sync.exceptions import NotConfiguredError, RemoteError, SyncLockedError, UnauthorizedError
from bills_app.Sync.schemas import SyncStrategy
from bills_app.Sync.Sync_Engine import SyncOrchestrator
from Tests.conftest import SERVICE_KEY
#
#######################################################################################################################
#
# --- Preconditions ---

class TestPreconditions:
    def test_not_configured(self, orchestrator, connector):
        with pytest.raises(NotConfiguredError):
            orchestrator.run(SyncStrategy.FULL)
        assert connector.created == []

    def test_locked_credential(self, db_instance, vault, locked_vault, connector, configure_endpoint):
        configure_endpoint(vault=vault)
        orchestrator = SyncOrchestrator(db_instance, locked_vault, connector=connector)
        with pytest.raises(SyncLockedError):
            orchestrator.run(SyncStrategy.MERGE_PULL)
        assert connector.created == []

    def test_force_push_needs_elevated_key(self, orchestrator, connector, fake_remote, configure_endpoint,
                                           db_instance, client_row):
        configure_endpoint()
        db_instance.insert_row("client", client_row("c1"))
        fake_remote.seed("client", [client_row("remote")])

        with pytest.raises(UnauthorizedError):
            orchestrator.run(SyncStrategy.FORCE_PUSH)

        assert connector.created == []
        assert fake_remote.mutation_count == 0
        assert "remote" in fake_remote.rows("client")
        assert db_instance.get_sync_settings()["last_sync_at"] is None


# --- Runs ---

class TestRuns:
    def test_full_run_counters(self, orchestrator, fake_remote, configure_endpoint, db_instance, client_row, tmp_path):
        configure_endpoint()
        data_root = tmp_path / "data"
        (data_root / "bills").mkdir(parents=True)
        (data_root / "bills" / "inv.pdf").write_bytes(b"pdf")
        db_instance.set_data_root(str(data_root))
        db_instance.insert_row("client", client_row("local"))
        fake_remote.seed("client", [client_row("remote")])
        fake_remote.objects["expenses/r.jpg"] = b"jpg"

        result = orchestrator.run(SyncStrategy.FULL)

        assert result.strategy == SyncStrategy.FULL
        assert (result.pushed, result.pulled) == (1, 1)
        assert (result.files_uploaded, result.files_downloaded) == (1, 1)
        assert result.failed == 0
        assert [t.table for t in result.tables] == ["client", "invoice", "expense"]
        assert result.last_sync_at == db_instance.get_sync_settings()["last_sync_at"]

    def test_partial_failures_do_not_abort(self, orchestrator, fake_remote, configure_endpoint, db_instance, client_row):
        configure_endpoint()
        db_instance.insert_row("client", client_row("ok"))
        db_instance.insert_row("client", client_row("bad"))
        fake_remote.fail_rows[("client", "bad")] = "violates check constraint"

        result = orchestrator.run(SyncStrategy.MERGE_PUSH)

        assert result.pushed == 1
        assert result.failed == 1
        assert result.failures[0].identifier == "bad"
        assert result.last_sync_at is not None

    def test_systemic_failure_raises_and_keeps_last_sync(self, orchestrator, fake_remote, configure_endpoint, db_instance):
        configure_endpoint()
        fake_remote.fail_operations["select:invoice"] = RemoteError("select invoice", "JWT expired", "PGRST301")

        with pytest.raises(RemoteError):
            orchestrator.run(SyncStrategy.FULL)

        assert db_instance.get_sync_settings()["last_sync_at"] is None

    def test_force_push_with_service_key(self, orchestrator, fake_remote, configure_endpoint, db_instance, client_row):
        configure_endpoint(key=SERVICE_KEY)
        db_instance.insert_row("client", client_row("c1"))
        fake_remote.seed("client", [client_row("stale")])

        result = orchestrator.run(SyncStrategy.FORCE_PUSH)

        assert result.pushed == 1
        assert list(fake_remote.rows("client")) == ["c1"]

    def test_force_pull_run(self, orchestrator, fake_remote, configure_endpoint, db_instance, client_row):
        configure_endpoint()
        db_instance.insert_row("client", client_row("old"))
        fake_remote.seed("client", [client_row("new")])

        result = orchestrator.run(SyncStrategy.FORCE_PULL)

        assert result.pulled == 1
        assert db_instance.fetch_ids("client") == ["new"]
        # Endpoint settings survive the replace
        assert db_instance.get_sync_settings()["enabled"] is True

    def test_connection_reused_across_runs(self, orchestrator, connector, configure_endpoint):
        configure_endpoint()
        orchestrator.run(SyncStrategy.MERGE_PULL)
        orchestrator.run(SyncStrategy.MERGE_PUSH)
        assert len(connector.created) == 1


# --- Realtime ---

class TestRealtime:
    def test_start_and_stop(self, orchestrator, fake_remote, configure_endpoint):
        configure_endpoint()
        bridge = orchestrator.start_realtime()
        assert bridge.running
        assert orchestrator.start_realtime() is bridge
        assert fake_remote.calls["subscribe"] == 3

        orchestrator.stop_realtime()
        assert orchestrator.realtime is None
        assert fake_remote.subscriptions == {}

    def test_start_requires_configuration(self, orchestrator):
        with pytest.raises(NotConfiguredError):
            orchestrator.start_realtime()

    def test_reset_connection_stops_listener_before_closing(self, orchestrator, fake_remote, configure_endpoint):
        configure_endpoint()
        bridge = orchestrator.start_realtime()

        orchestrator.reset_connection()

        assert orchestrator.realtime is None
        assert not bridge.running
        assert fake_remote.subscriptions == {}
        assert fake_remote.closed is True

    def test_reset_connection_without_listener(self, orchestrator, connector, configure_endpoint):
        configure_endpoint()
        orchestrator.run(SyncStrategy.MERGE_PULL)
        orchestrator.reset_connection()
        orchestrator.run(SyncStrategy.MERGE_PULL)
        assert len(connector.created) == 2


# --- Diagnostics ---

class TestDiagnostics:
    def test_report(self, orchestrator, fake_remote, configure_endpoint):
        configure_endpoint()
        fake_remote.missing_tables.add("expense")
        fake_remote.bucket_present = False

        report = orchestrator.diagnose()

        assert report["configured"] is True
        assert report["client"] == {"ok": True}
        assert report["expense"]["ok"] is False
        assert report["expense"]["missing"] is True
        assert report["storage"]["ok"] is False
        assert report["steps"][-1] == "Storage checked"

    def test_initialize_storage(self, orchestrator, fake_remote, configure_endpoint):
        configure_endpoint()
        fake_remote.bucket_present = False
        assert orchestrator.initialize_storage() == {"created": True}
        assert orchestrator.initialize_storage() == {"created": False}

#
# End of test_sync_orchestrator.py
#######################################################################################################################
