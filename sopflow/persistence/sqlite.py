"""SQLite implementation of the process repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import ProcessDefinition
from .models import (
    AuditEvent,
    InstanceStatus,
    ProcessInstance,
    Watcher,
    WorkerRole,
    ensure_append_only,
    utcnow,
)
from .repository import ProcessRepository


def _sortable(moment: datetime) -> str:
    # fixed-width UTC text so created_at compares lexically
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteProcessRepository(ProcessRepository):
    """Persist process state using SQLite.

    Rows keep their full pydantic document as JSON next to the columns used
    for filtering and for the compare-and-set precondition.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                slug TEXT PRIMARY KEY,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                role TEXT,
                status TEXT NOT NULL,
                priority INTEGER NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE TABLE IF NOT EXISTS roles (slug TEXT PRIMARY KEY, document TEXT NOT NULL)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS watchers (
                id TEXT PRIMARY KEY,
                role TEXT NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_instance(self, instance: ProcessInstance) -> bool:
        try:
            self._execute(
                "INSERT INTO instances (id, role, status, priority, version, created_at, document) VALUES (?, ?, ?, ?, ?, ?, ?)",
                instance.id,
                instance.role,
                instance.status.value,
                instance.priority,
                instance.version,
                instance.created_at.isoformat(),
                instance.model_dump_json(),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    def _compare_and_set(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: Optional[InstanceStatus],
    ) -> ProcessInstance | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT document FROM instances WHERE id = ?", (instance.id,))
            row = cur.fetchone()
            if row is None:
                return None
            stored = ProcessInstance.model_validate_json(row["document"])
            if stored.version != expected_version:
                return None
            if expected_status is not None and stored.status != expected_status:
                return None
            ensure_append_only(stored.working_data, instance.working_data)
            updated = instance.model_copy(
                update={"version": expected_version + 1, "updated_at": utcnow()}
            )
            cur.execute(
                """
                UPDATE instances
                SET role = ?, status = ?, priority = ?, version = ?, document = ?
                WHERE id = ? AND version = ?
                """,
                (
                    updated.role,
                    updated.status.value,
                    updated.priority,
                    updated.version,
                    updated.model_dump_json(),
                    updated.id,
                    expected_version,
                ),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                return None
            return updated

    def _compare_and_set_watcher(
        self, watcher: Watcher, expected_version: int
    ) -> Watcher | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT document FROM watchers WHERE id = ?", (watcher.id,))
            row = cur.fetchone()
            if row is None:
                return None
            if Watcher.model_validate_json(row["document"]).version != expected_version:
                return None
            updated = watcher.model_copy(update={"version": expected_version + 1})
            cur.execute(
                "UPDATE watchers SET role = ?, document = ? WHERE id = ?",
                (updated.role, updated.model_dump_json(), updated.id),
            )
            self._conn.commit()
            return updated

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: ProcessDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO definitions (slug, document) VALUES (?, ?)",
            definition.slug,
            definition.model_dump_json(),
        )

    async def get_definition(self, slug: str) -> ProcessDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM definitions WHERE slug = ?", slug
        )
        return ProcessDefinition.model_validate_json(row["document"]) if row else None

    async def list_definitions(self) -> list[ProcessDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM definitions ORDER BY slug"
        )
        return [ProcessDefinition.model_validate_json(r["document"]) for r in rows]

    async def create_instance(self, instance: ProcessInstance) -> bool:
        return await asyncio.to_thread(self._insert_instance, instance)

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM instances WHERE id = ?", instance_id
        )
        return ProcessInstance.model_validate_json(row["document"]) if row else None

    async def list_instances(
        self,
        role: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        query = "SELECT document FROM instances WHERE 1 = 1"
        params: list[Any] = []
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [ProcessInstance.model_validate_json(r["document"]) for r in rows]

    async def update_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: Optional[InstanceStatus] = None,
    ) -> ProcessInstance | None:
        return await asyncio.to_thread(
            self._compare_and_set, instance, expected_version, expected_status
        )

    async def append_event(self, event: AuditEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit_events (id, instance_id, event_type, created_at, document) VALUES (?, ?, ?, ?, ?)",
            event.id,
            event.instance_id,
            event.event_type.value,
            _sortable(event.created_at),
            event.model_dump_json(),
        )

    async def list_events(self, instance_id: str) -> list[AuditEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM audit_events WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [AuditEvent.model_validate_json(r["document"]) for r in rows]

    async def list_events_since(self, since: datetime) -> list[AuditEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM audit_events WHERE created_at >= ? ORDER BY seq",
            _sortable(since),
        )
        return [AuditEvent.model_validate_json(r["document"]) for r in rows]

    async def save_role(self, role: WorkerRole) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO roles (slug, document) VALUES (?, ?)",
            role.slug,
            role.model_dump_json(),
        )

    async def get_role(self, slug: str) -> WorkerRole | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM roles WHERE slug = ?", slug
        )
        return WorkerRole.model_validate_json(row["document"]) if row else None

    async def list_roles(self) -> list[WorkerRole]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM roles ORDER BY slug"
        )
        return [WorkerRole.model_validate_json(r["document"]) for r in rows]

    async def save_watcher(self, watcher: Watcher) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO watchers (id, role, created_at, document) VALUES (?, ?, ?, ?)",
            watcher.id,
            watcher.role,
            watcher.created_at.isoformat(),
            watcher.model_dump_json(),
        )

    async def update_watcher(
        self, watcher: Watcher, expected_version: int
    ) -> Watcher | None:
        return await asyncio.to_thread(
            self._compare_and_set_watcher, watcher, expected_version
        )

    async def get_watcher(self, watcher_id: str) -> Watcher | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM watchers WHERE id = ?", watcher_id
        )
        return Watcher.model_validate_json(row["document"]) if row else None

    async def list_watchers(self, role: Optional[str] = None) -> list[Watcher]:
        if role is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT document FROM watchers ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM watchers WHERE role = ? ORDER BY created_at",
                role,
            )
        return [Watcher.model_validate_json(r["document"]) for r in rows]
