# bills_app/cli.py
# Description: Command-line surface over the sync service.
#
# Imports
import json
import time
from typing import Any, Dict, Optional
#
# 3rd-party Libraries
import click
from loguru import logger
from rich.console import Console
from rich.table import Table
import toml
#
# Local Imports
from bills_app.config import get_config_path, get_db_path, load_settings, save_settings
from bills_app.DB.Bills_DB import Database
from bills_app.Logging_Config import configure_logging
from bills_app.Sync.schemas import SyncStrategy
from bills_app.Sync.Secrets_Vault import SecretVault, VaultPasswordError
from bills_app.Sync.Sync_Service import SyncService
#
########################################################################################################################
#
# Functions:

console = Console()

PASSWORD_ENV_VAR = "BILLS_APP_PASSWORD"


def _build_service(db_path: Optional[str], password: Optional[str]) -> SyncService:
    db = Database(db_path or get_db_path())
    vault = SecretVault()
    if password:
        try:
            vault.unlock_with_security(password, db.get_security_config())
        except VaultPasswordError as e:
            raise click.ClickException(str(e)) from e
    return SyncService(db, vault)


def _print_response(response: Dict[str, Any]) -> None:
    if "error" in response:
        err = response["error"]
        console.print(f"[red]Error[/red] [bold]{err.get('code')}[/bold]: {err.get('message')}")
        raise SystemExit(1)
    console.print_json(json.dumps(response))


def _print_result(response: Dict[str, Any]) -> None:
    if "error" in response:
        _print_response(response)
    table = Table(title=f"Sync {response.get('strategy')}")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for label, key in (("Rows pushed", "pushed"), ("Rows pulled", "pulled"),
                       ("Files uploaded", "filesUploaded"), ("Files downloaded", "filesDownloaded"),
                       ("Failures", "failed")):
        table.add_row(label, str(response.get(key, 0)))
    console.print(table)
    for failure in response.get("failures", []):
        console.print(f"[yellow]  {failure['kind']} {failure['target']}/{failure['identifier']}: {failure['message']}[/yellow]")
    console.print(f"Last sync: {response.get('lastSyncAt')}")


@click.group()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Path to the local database")
@click.option("--password", envvar=PASSWORD_ENV_VAR, help=f"Application password (or ${PASSWORD_ENV_VAR})")
@click.option("--log-level", default=None, help="Console log level")
@click.pass_context
def main(ctx, db_path, password, log_level):
    """Bills app sync tools."""
    configure_logging(level=log_level)
    ctx.obj = _build_service(db_path, password)


@main.command()
@click.pass_obj
def status(service: SyncService):
    """Show whether sync is configured, locked and when it last ran."""
    _print_response(service.get_sync_status())


@main.command()
@click.argument("strategy", type=click.Choice([s.value for s in SyncStrategy]))
@click.option("--yes", is_flag=True, help="Do not ask before destructive strategies")
@click.pass_obj
def sync(service: SyncService, strategy, yes):
    """Run one sync strategy."""
    strategy = SyncStrategy(strategy)
    if strategy in (SyncStrategy.FORCE_PULL, SyncStrategy.FORCE_PUSH) and not yes:
        side = "local" if strategy == SyncStrategy.FORCE_PULL else "remote"
        click.confirm(f"{strategy.value} replaces all {side} rows. Continue?", abort=True)
    runners = {
        SyncStrategy.FULL: service.run_full_sync,
        SyncStrategy.MERGE_PULL: service.run_merge_pull,
        SyncStrategy.MERGE_PUSH: service.run_merge_push,
        SyncStrategy.FORCE_PULL: service.run_force_pull,
        SyncStrategy.FORCE_PUSH: service.run_force_push,
    }
    _print_result(runners[strategy]())


@main.command("policy")
@click.argument("policy", type=click.Choice(["cloud_wins", "local_wins"]))
@click.pass_obj
def set_policy(service: SyncService, policy):
    """Set the conflict policy used by full sync."""
    _print_response(service.set_conflict_policy(policy))


@main.command()
@click.option("--url", required=True, help="Remote project URL")
@click.option("--key", prompt=True, hide_input=True, help="Remote API key")
@click.option("--enable/--disable", default=True)
@click.pass_obj
def endpoint(service: SyncService, url, key, enable):
    """Save the sync endpoint. The key is encrypted when a password was given."""
    _print_response(service.save_endpoint(url, key, enable))


@main.command()
@click.pass_obj
def realtime(service: SyncService):
    """Apply remote changes as they happen until interrupted."""
    response = service.start_realtime()
    if "error" in response:
        _print_response(response)
    console.print("Listening for remote changes. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping realtime listener.")
    finally:
        service.stop_realtime()


@main.command()
@click.pass_obj
def diagnose(service: SyncService):
    """Check the remote tables and the storage bucket."""
    _print_response(service.diagnose())


@main.command("init-storage")
@click.pass_obj
def init_storage(service: SyncService):
    """Create the storage bucket if it is missing."""
    _print_response(service.initialize_storage())


@main.group("config")
def config_group():
    """Read or change the TOML settings file."""


@config_group.command("show")
def config_show():
    console.print(f"[dim]{get_config_path()}[/dim]")
    console.print_json(json.dumps(load_settings(force_reload=True), default=str))


@config_group.command("set")
@click.argument("name")
@click.argument("value")
def config_set(name, value):
    """Set SECTION.KEY to VALUE. VALUE is read as a TOML literal, or kept as text."""
    section, _, key = name.partition(".")
    if not section or not key:
        raise click.BadParameter("expected SECTION.KEY, e.g. sync.file_workers", param_hint="NAME")
    try:
        parsed = toml.loads(f"value = {value}")["value"]
    except toml.TomlDecodeError:
        parsed = value
    save_settings({section: {key: parsed}})
    console.print(f"{section}.{key} = {parsed!r}")

#
# End of bills_app/cli.py
########################################################################################################################
