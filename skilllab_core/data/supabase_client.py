# =============================================================================
# skilllab_core/data/supabase_client.py
# Supabase Remote Store Client
# Collection-scoped fetch, write and polling subscriptions
# =============================================================================

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from supabase import Client, create_client

from skilllab_core.config import SyncSettings
from skilllab_core.errors import RemoteUnavailableError
from skilllab_core.models.records import Collection, normalize_username, now_iso
from skilllab_core.offline.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
PASSWORDS_TABLE = "passwords"


def get_supabase_client(settings: SyncSettings) -> Optional[Client]:
    """
    Create a Supabase client from settings.

    Returns:
        Supabase client instance or None if not configured
    """
    if not settings.remote_configured:
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        return None


@dataclass
class RemoteSnapshot:
    """Records delivered by a subscription: the whole table or only changes."""
    collection: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    is_delta: bool = False


class Subscription:
    """
    Handle returned by RemoteCollection.subscribe().

    Polls the table on a daemon thread: the first delivery is a full snapshot,
    later deliveries are deltas of rows whose timestamp field advanced.
    """

    def __init__(
        self,
        collection: "RemoteCollection",
        callback: Callable[[RemoteSnapshot], None],
        interval: float,
    ):
        self._collection = collection
        self._callback = callback
        self._interval = interval
        self._stop = threading.Event()
        self._high_water: Optional[str] = None
        self._at_mark: Dict[str, Dict[str, Any]] = {}
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name=f"Subscription-{collection.table_name}",
        )

    @property
    def active(self) -> bool:
        return not self._stop.is_set()

    def start(self) -> "Subscription":
        self._thread.start()
        return self

    def unsubscribe(self) -> None:
        """Stop delivering snapshots. In-flight polls finish but are not delivered."""
        self._stop.set()
        logger.debug(f"Unsubscribed from {self._collection.table_name}")

    def poll_once(self) -> Optional[RemoteSnapshot]:
        """Fetch one snapshot and deliver it; None when the remote is unavailable."""
        ts_field = self._collection.timestamp_field
        try:
            if self._high_water is None:
                snapshot = RemoteSnapshot(self._collection.table_name, self._collection.fetch_all(), False)
            else:
                snapshot = RemoteSnapshot(
                    self._collection.table_name,
                    self._unseen(self._collection.fetch_since(ts_field, self._high_water)),
                    True,
                )
        except RemoteUnavailableError as e:
            logger.warning(f"Subscription poll skipped for {self._collection.table_name}: {e.message}")
            return None

        self._advance_mark(snapshot.records)

        if snapshot.is_delta and not snapshot.records:
            return snapshot

        if self.active:
            try:
                self._callback(snapshot)
            except Exception as e:
                logger.error(f"Error in {self._collection.table_name} subscription callback: {e}", exc_info=True)
        return snapshot

    def _unseen(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Drop rows already delivered at the current high-water mark (gte re-reads them)."""
        ts_field = self._collection.timestamp_field
        return [
            r for r in records
            if not (str(r.get(ts_field)) == self._high_water and self._at_mark.get(r.get("id")) == r)
        ]

    def _advance_mark(self, records: List[Dict[str, Any]]) -> None:
        ts_field = self._collection.timestamp_field
        stamped = [r for r in records if r.get(ts_field) is not None]
        if not stamped:
            if self._high_water is None:
                # Empty table: start delta polling from the beginning of time
                self._high_water = ""
            return

        newest = max(str(r[ts_field]) for r in stamped)
        if self._high_water and self._high_water > newest:
            return
        if newest != self._high_water:
            self._high_water = newest
            self._at_mark = {}
        for record in stamped:
            if str(record[ts_field]) == newest:
                self._at_mark[record.get("id")] = dict(record)

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            if self._stop.wait(timeout=self._interval):
                break


class RemoteCollection:
    """
    CRUD access to one Supabase table holding flat documents keyed by ``id``.

    Every method raises RemoteUnavailableError when the client is missing,
    the connection is marked offline, or the request itself fails.
    """

    def __init__(
        self,
        client: Optional[Client],
        table_name: str,
        connection: ConnectionManager,
        timestamp_field: str = "updatedAt",
        page_size: int = 1000,
        poll_interval: float = 15.0,
    ):
        self.client = client
        self.table_name = table_name
        self.connection = connection
        self.timestamp_field = timestamp_field
        self.page_size = page_size
        self.poll_interval = poll_interval

    def is_connected(self) -> bool:
        return self.client is not None and self.connection.is_available

    def _ensure_available(self, operation: str) -> None:
        if self.client is None:
            raise RemoteUnavailableError(
                "Remote store is not configured",
                collection=self.table_name,
                operation=operation,
            )
        if not self.connection.is_available:
            raise RemoteUnavailableError(
                "Remote store is offline",
                collection=self.table_name,
                operation=operation,
            )

    def _execute(self, operation: str, build_query: Callable[[], Any]) -> Any:
        self._ensure_available(operation)
        try:
            response = build_query().execute()
        except Exception as e:
            self.connection.report_failure(e)
            raise RemoteUnavailableError(
                f"Supabase {operation} failed on {self.table_name}: {e}",
                collection=self.table_name,
                operation=operation,
            ) from e
        self.connection.report_success()
        return response

    def _fetch_paginated(self, operation: str, build_query: Callable[[], Any]) -> List[Dict[str, Any]]:
        """Fetch every page of a query (Supabase caps responses at 1000 rows)."""
        all_data: List[Dict[str, Any]] = []
        offset = 0

        while True:
            response = self._execute(
                operation,
                lambda: build_query().range(offset, offset + self.page_size - 1),
            )
            batch = response.data or []
            all_data.extend(batch)
            if len(batch) < self.page_size:
                break
            offset += self.page_size

        return all_data

    def fetch_all(self) -> List[Dict[str, Any]]:
        """Fetch the full collection."""
        records = self._fetch_paginated(
            "fetch_all",
            lambda: self.client.table(self.table_name).select("*").order("id"),
        )
        logger.debug(f"Fetched {len(records)} rows from {self.table_name}")
        return records

    def fetch_where(self, field_name: str, value: Any) -> List[Dict[str, Any]]:
        """Fetch rows whose field equals value."""
        return self._fetch_paginated(
            "fetch_where",
            lambda: self.client.table(self.table_name).select("*").eq(field_name, value).order("id"),
        )

    def fetch_since(self, field_name: str, value: Any) -> List[Dict[str, Any]]:
        """Fetch rows whose field is greater than or equal to value."""
        return self._fetch_paginated(
            "fetch_since",
            lambda: self.client.table(self.table_name).select("*").gte(field_name, value).order("id"),
        )

    def write_one(self, record: Dict[str, Any]) -> None:
        """Insert or replace a document by id."""
        if not record.get("id"):
            raise ValueError(f"Cannot write a {self.table_name} document without an id")
        self._execute(
            "write_one",
            lambda: self.client.table(self.table_name).upsert(record),
        )

    def delete_one(self, record_id: str) -> None:
        self._execute(
            "delete_one",
            lambda: self.client.table(self.table_name).delete().eq("id", record_id),
        )

    def subscribe(
        self,
        callback: Callable[[RemoteSnapshot], None],
        interval: Optional[float] = None,
        start: bool = True,
    ) -> Subscription:
        """
        Subscribe to changes of this table.

        Args:
            callback: Called with each RemoteSnapshot
            interval: Seconds between polls (defaults to poll_interval)
            start: Start the polling thread immediately

        Returns:
            Subscription handle; call unsubscribe() to stop
        """
        subscription = Subscription(self, callback, interval or self.poll_interval)
        if start:
            subscription.start()
        return subscription


class RemotePasswordStore:
    """Credential secrets keyed by normalized username."""

    def __init__(self, client: Optional[Client], connection: ConnectionManager):
        self._table = RemoteCollection(client, PASSWORDS_TABLE, connection)

    def get_password(self, username: str) -> Optional[str]:
        normalized = normalize_username(username)
        response = self._table._execute(
            "get_password",
            lambda: self._table.client.table(PASSWORDS_TABLE).select("*").eq("username", normalized).limit(1),
        )
        rows = response.data or []
        return rows[0].get("password") if rows else None

    def save_password(self, username: str, secret: str) -> None:
        normalized = normalize_username(username)
        self._table._execute(
            "save_password",
            lambda: self._table.client.table(PASSWORDS_TABLE).upsert({
                "username": normalized,
                "password": secret,
                "updatedAt": now_iso(),
            }),
        )

    def delete_password(self, username: str) -> None:
        normalized = normalize_username(username)
        self._table._execute(
            "delete_password",
            lambda: self._table.client.table(PASSWORDS_TABLE).delete().eq("username", normalized),
        )


class RemoteStoreClient:
    """
    Entry point to the hosted store: one RemoteCollection per collection,
    plus the users table and the password store.

    Usage:
        remote = RemoteStoreClient.from_settings(settings)
        try:
            students = remote.collection(Collection.STUDENTS).fetch_all()
        except RemoteUnavailableError:
            students = cache.get("students")
    """

    def __init__(
        self,
        client: Optional[Client],
        connection: Optional[ConnectionManager] = None,
        page_size: int = 1000,
        poll_interval: float = 15.0,
    ):
        self.client = client
        self.connection = connection or ConnectionManager()
        self._collections: Dict[str, RemoteCollection] = {
            c.value: RemoteCollection(
                client, c.value, self.connection,
                timestamp_field=c.timestamp_field,
                page_size=page_size,
                poll_interval=poll_interval,
            )
            for c in Collection
        }
        self.users = RemoteCollection(client, USERS_TABLE, self.connection, page_size=page_size)
        self.passwords = RemotePasswordStore(client, self.connection)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RemoteStoreClient":
        connection = ConnectionManager(settings.supabase_url, timeout=settings.remote_timeout)
        return cls(
            get_supabase_client(settings),
            connection,
            page_size=settings.page_size,
            poll_interval=settings.poll_interval,
        )

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    @property
    def is_available(self) -> bool:
        return self.is_configured and self.connection.is_available

    def collection(self, name: Union[Collection, str]) -> RemoteCollection:
        key = name.value if isinstance(name, Collection) else name
        return self._collections[key]
