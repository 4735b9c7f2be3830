"""SQLite-backed document store for rides, drivers, and invited users."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterator, List, Optional

from taxi_dispatch.core.config import get_settings
from taxi_dispatch.core.errors import ConflictError
from taxi_dispatch.core.logging import logger


COLLECTIONS = ("rides", "drivers", "users")

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]
SnapshotCallback = Callable[[List[Document]], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def status_in(*statuses: str) -> Predicate:
    """Filter predicate matching documents whose ``status`` is one of ``statuses``."""
    wanted = {str(status) for status in statuses}
    return lambda doc: str(doc.get("status")) in wanted


class Subscription:
    """Handle for a live collection listener. Close it when the consumer goes away."""

    def __init__(
        self,
        store: "DispatchStore",
        tenant_id: str,
        collection: str,
        callback: SnapshotCallback,
        predicate: Optional[Predicate],
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self.collection = collection
        self.callback = callback
        self.predicate = predicate
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._store._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class WriteBatch:
    """Ordered set of writes committed in one transaction."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self._ops: List[tuple] = []

    def set(self, collection: str, doc_id: str, data: Document) -> "WriteBatch":
        self._ops.append(("set", collection, doc_id, dict(data), None))
        return self

    def update(
        self,
        collection: str,
        doc_id: str,
        changes: Document,
        expected_version: Optional[int] = None,
    ) -> "WriteBatch":
        self._ops.append(("update", collection, doc_id, dict(changes), expected_version))
        return self

    def event(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "WriteBatch":
        payload = {"entity_type": entity_type, "entity_id": entity_id, "actor": actor, "details": details or {}}
        self._ops.append(("event", "timeline", event_type, payload, None))
        return self

    def __len__(self) -> int:
        return len(self._ops)


class DispatchStore:
    """Durable tenant-scoped document store with live collection listeners.

    Every committed write bumps the document ``version`` and stamps
    ``updatedAt``. Listeners get the full filtered snapshot of a collection
    right after each commit touching it, in commit order.
    """

    _lock_registry: dict[str, RLock] = {}
    _subscriber_registry: dict[str, List[Subscription]] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.dispatch_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db_key = str(self._db_path.resolve())
        self._lock = self._get_shared_lock(db_key)
        self._subscribers = self._get_shared_subscribers(db_key)
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @classmethod
    def _get_shared_subscribers(cls, key: str) -> List[Subscription]:
        # Every store on the same database file notifies the same listeners.
        with cls._lock_registry_guard:
            return cls._subscriber_registry.setdefault(key, [])

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS documents (
                    tenant_id TEXT NOT NULL,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, collection, doc_id)
                );

                CREATE INDEX IF NOT EXISTS idx_documents_tenant_collection
                    ON documents (tenant_id, collection, created_at DESC);

                CREATE TABLE IF NOT EXISTS timeline (
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_tenant_entity ON timeline (tenant_id, entity_id);
                CREATE INDEX IF NOT EXISTS idx_timeline_tenant_ts ON timeline (tenant_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );
                """
            )
            self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection '{collection}'")

    def _next_sequence_locked(self, tenant_id: str, key: str) -> int:
        row = self._conn.execute(
            "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
            (tenant_id, key),
        ).fetchone()
        if row is None:
            current = 1
            self._conn.execute(
                "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                (tenant_id, key, current + 1),
            )
        else:
            current = int(row["next_value"])
            self._conn.execute(
                "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                (current + 1, tenant_id, key),
            )
        return current

    def next_sequence(self, tenant_id: str, key: str) -> int:
        with self._transaction():
            return self._next_sequence_locked(tenant_id, key)

    def generate_id(self, tenant_id: str, prefix: str) -> str:
        """Ids follow the ``ride-<n>`` / ``driver-<n>`` convention voice commands refer to."""
        return f"{prefix}-{self.next_sequence(tenant_id, prefix)}"

    def _get_locked(self, tenant_id: str, collection: str, doc_id: str) -> Optional[Document]:
        row = self._conn.execute(
            "SELECT data_json FROM documents WHERE tenant_id = ? AND collection = ? AND doc_id = ?",
            (tenant_id, collection, doc_id),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def get(self, tenant_id: str, collection: str, doc_id: str) -> Optional[Document]:
        self._check_collection(collection)
        with self._lock:
            return self._get_locked(tenant_id, collection, doc_id)

    def list(self, tenant_id: str, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        self._check_collection(collection)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM documents
                WHERE tenant_id = ? AND collection = ?
                ORDER BY created_at DESC, doc_id
                """,
                (tenant_id, collection),
            ).fetchall()
        docs = [json.loads(row["data_json"]) for row in rows]
        if predicate is not None:
            docs = [doc for doc in docs if predicate(doc)]
        return docs

    def _write_locked(self, tenant_id: str, collection: str, doc_id: str, data: Document) -> Document:
        now = _utc_now_iso()
        existing = self._get_locked(tenant_id, collection, doc_id)
        doc = dict(data)
        doc["id"] = doc_id
        doc["version"] = int(existing.get("version") or 1) + 1 if existing else 1
        doc["updatedAt"] = now
        created_at = (existing or {}).get("createdAt") or doc.get("createdAt") or now
        doc["createdAt"] = created_at
        self._conn.execute(
            """
            INSERT INTO documents (tenant_id, collection, doc_id, version, created_at, updated_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, collection, doc_id)
            DO UPDATE SET version = excluded.version, updated_at = excluded.updated_at, data_json = excluded.data_json
            """,
            (tenant_id, collection, doc_id, doc["version"], created_at, now, _json_dumps(doc)),
        )
        return doc

    def _update_locked(
        self,
        tenant_id: str,
        collection: str,
        doc_id: str,
        changes: Document,
        expected_version: Optional[int],
    ) -> Document:
        existing = self._get_locked(tenant_id, collection, doc_id)
        if existing is None:
            raise KeyError(doc_id)
        current_version = int(existing.get("version") or 1)
        if expected_version is not None and int(expected_version) != current_version:
            raise ConflictError(
                f"Version conflict for {doc_id}. expected={expected_version} current={current_version}"
            )
        merged = {**existing, **changes}
        return self._write_locked(tenant_id, collection, doc_id, merged)

    def _event_locked(self, tenant_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = {
            "event_id": f"EVT-{self._next_sequence_locked(tenant_id, 'event'):06d}",
            "entity_type": payload["entity_type"],
            "entity_id": payload["entity_id"],
            "event_type": event_type,
            "actor": payload["actor"],
            "timestamp": _utc_now_iso(),
            "details": payload.get("details") or {},
        }
        self._conn.execute(
            """
            INSERT INTO timeline (tenant_id, event_id, entity_type, entity_id, event_type, actor, timestamp, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                event["event_id"],
                event["entity_type"],
                event["entity_id"],
                event_type,
                event["actor"],
                event["timestamp"],
                _json_dumps(event["details"]),
            ),
        )
        return event

    def batch(self, tenant_id: str) -> WriteBatch:
        return WriteBatch(tenant_id)

    def commit(self, batch: WriteBatch) -> List[Document]:
        """Apply every write in ``batch`` atomically; returns the written documents and events in order."""
        results: List[Document] = []
        touched: List[str] = []
        with self._lock:
            with self._transaction():
                for op, collection, key, data, expected_version in batch._ops:
                    if op == "set":
                        self._check_collection(collection)
                        results.append(self._write_locked(batch.tenant_id, collection, key, data))
                    elif op == "update":
                        self._check_collection(collection)
                        results.append(
                            self._update_locked(batch.tenant_id, collection, key, data, expected_version)
                        )
                    else:
                        results.append(self._event_locked(batch.tenant_id, key, data))
                        continue
                    if collection not in touched:
                        touched.append(collection)
            # Listeners run before the lock is released so snapshots arrive in commit order.
            for collection in touched:
                self._notify(batch.tenant_id, collection)
        return results

    def put(self, tenant_id: str, collection: str, doc_id: str, data: Document) -> Document:
        return self.commit(self.batch(tenant_id).set(collection, doc_id, data))[0]

    def update(
        self,
        tenant_id: str,
        collection: str,
        doc_id: str,
        changes: Document,
        expected_version: Optional[int] = None,
    ) -> Document:
        return self.commit(self.batch(tenant_id).update(collection, doc_id, changes, expected_version))[0]

    def list_timeline(self, tenant_id: str, entity_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            if entity_id:
                rows = self._conn.execute(
                    """
                    SELECT * FROM timeline WHERE tenant_id = ? AND entity_id = ?
                    ORDER BY timestamp DESC, event_id DESC LIMIT ?
                    """,
                    (tenant_id, entity_id, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM timeline WHERE tenant_id = ? ORDER BY timestamp DESC, event_id DESC LIMIT ?",
                    (tenant_id, limit),
                ).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "entity_type": row["entity_type"],
                "entity_id": row["entity_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def subscribe(
        self,
        tenant_id: str,
        collection: str,
        callback: SnapshotCallback,
        predicate: Optional[Predicate] = None,
    ) -> Subscription:
        """Register a listener; it receives the current snapshot before this returns.

        If that first delivery raises, the listener is not registered and the error propagates.
        """
        self._check_collection(collection)
        subscription = Subscription(self, tenant_id, collection, callback, predicate)
        with self._lock:
            callback(self.list(tenant_id, collection, predicate))
            self._subscribers.append(subscription)
        logger.info("Collection listener registered", tenant_id=tenant_id, collection=collection)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        logger.info(
            "Collection listener released",
            tenant_id=subscription.tenant_id,
            collection=subscription.collection,
        )

    def subscriber_count(self, tenant_id: str, collection: str) -> int:
        with self._lock:
            return sum(
                1 for sub in self._subscribers if sub.tenant_id == tenant_id and sub.collection == collection
            )

    def _notify(self, tenant_id: str, collection: str) -> None:
        for subscription in list(self._subscribers):
            if subscription.tenant_id != tenant_id or subscription.collection != collection:
                continue
            try:
                subscription.callback(self.list(tenant_id, collection, subscription.predicate))
            except Exception as exc:
                logger.error(
                    "Collection listener failed",
                    tenant_id=tenant_id,
                    collection=collection,
                    error=str(exc),
                )

    def get_idempotent(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, tenant_id: str, key: str, response: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO idempotency (tenant_id, key_name, stored_at, response_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (tenant_id, key, _utc_now_iso(), _json_dumps(response)),
            )
            conn.execute(
                """
                DELETE FROM idempotency
                WHERE tenant_id = ?
                  AND key_name NOT IN (
                    SELECT key_name FROM idempotency
                    WHERE tenant_id = ?
                    ORDER BY stored_at DESC
                    LIMIT 10000
                  )
                """,
                (tenant_id, tenant_id),
            )


dispatch_store = DispatchStore()
