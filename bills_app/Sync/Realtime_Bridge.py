# bills_app/Sync/Realtime_Bridge.py
# Description: Applies remote row-change notifications to the local store as they arrive.
#
# Imports
import threading
from enum import Enum
from typing import Any, Dict, Iterable, Optional
#
# 3rd-party Libraries
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from bills_app.Constants import SYNC_TABLES
from bills_app.DB.Bills_DB import Database, get_table_schema
from .exceptions import RemoteError
from .Remote_Client import RemoteHandle
from .schemas import PartialFailures, RealtimeEvent
from .Table_Sync import upsert_by_key, ROW_WRITE_ERRORS
#
########################################################################################################################
#
# Functions:

class ChannelState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


class RealtimeBridge:
    """
    One change-notification channel per syncable table. Events are written straight into
    the local store with no coordination against on-demand sync runs; the last write wins.
    """

    def __init__(self, db: Database, remote: RemoteHandle, tables: Iterable[str] = SYNC_TABLES,
                 failures: Optional[PartialFailures] = None):
        self.db = db
        self.remote = remote
        self.tables = tuple(tables)
        self.failures = failures if failures is not None else PartialFailures()
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Any] = {}
        self._states: Dict[str, ChannelState] = {t: ChannelState.UNSUBSCRIBED for t in self.tables}
        self.events_applied = 0

    def state(self, table: str) -> ChannelState:
        return self._states[table]

    @property
    def running(self) -> bool:
        return any(s == ChannelState.SUBSCRIBED for s in self._states.values())

    def start(self) -> None:
        """Subscribes every table that is not already subscribed. Calling it again is a no-op."""
        with self._lock:
            for table in self.tables:
                if self._states[table] == ChannelState.SUBSCRIBED:
                    continue
                try:
                    self._subscriptions[table] = self.remote.subscribe(table, self.handle_event)
                except RemoteError:
                    logger.error(f"Realtime subscription for '{table}' failed; tearing down channels.", exc_info=True)
                    self._teardown()
                    raise
                self._states[table] = ChannelState.SUBSCRIBED
                logger.info(f"Realtime channel subscribed for '{table}'")

    def stop(self) -> None:
        with self._lock:
            self._teardown()

    def _teardown(self) -> None:
        for table, subscription in list(self._subscriptions.items()):
            try:
                self.remote.unsubscribe(subscription)
            except RemoteError as e:
                logger.warning(f"Error unsubscribing realtime channel for '{table}': {e}")
            self._subscriptions.pop(table, None)
            self._states[table] = ChannelState.UNSUBSCRIBED
            logger.info(f"Realtime channel unsubscribed for '{table}'")

    def handle_event(self, event: RealtimeEvent) -> None:
        """Applies one change event. Errors are logged and recorded, never raised into the listener."""
        if not isinstance(event, RealtimeEvent):
            try:
                event = RealtimeEvent.model_validate(event)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed realtime event: {e.error_count()} errors")
                return
        if event.table not in self.tables:
            logger.debug(f"Ignoring realtime event for untracked table '{event.table}'")
            return

        schema = get_table_schema(event.table)
        key = schema.key
        try:
            if event.event_type in ("INSERT", "UPDATE"):
                row = schema.to_local(event.new)
                outcome = upsert_by_key(self.db, event.table, row, key)
                logger.debug(f"Realtime {event.event_type} on {event.table} {row.get(key)}: {outcome}")
            else:
                row_id = event.old.get(key)
                if row_id is None:
                    logger.warning(f"Realtime DELETE on {event.table} without an old '{key}'; ignoring.")
                    return
                deleted = self.db.delete_row(event.table, row_id, key)
                logger.debug(f"Realtime DELETE on {event.table} {row_id}: {deleted} row(s) removed")
        except ROW_WRITE_ERRORS as e:
            identifier = event.new.get(key) or event.old.get(key)
            logger.warning(f"Failed to apply realtime {event.event_type} on {event.table} {identifier}: {e}")
            self.failures.record_row(event.table, identifier, e)
            return
        self.events_applied += 1

#
# End of bills_app/Sync/Realtime_Bridge.py
########################################################################################################################
