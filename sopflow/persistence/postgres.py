"""PostgreSQL implementation of the process repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

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


class PostgresProcessRepository(ProcessRepository):
    """Persist process state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                slug TEXT PRIMARY KEY,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                role TEXT,
                status TEXT NOT NULL,
                priority INTEGER NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS roles (slug TEXT PRIMARY KEY, document JSONB NOT NULL)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS watchers (
                id TEXT PRIMARY KEY,
                role TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: ProcessDefinition) -> None:
        await self._execute(
            """
            INSERT INTO definitions (slug, document) VALUES ($1, $2)
            ON CONFLICT (slug) DO UPDATE SET document = EXCLUDED.document
            """,
            definition.slug,
            definition.model_dump_json(),
        )

    async def get_definition(self, slug: str) -> ProcessDefinition | None:
        row = await self._fetchrow("SELECT document FROM definitions WHERE slug = $1", slug)
        return ProcessDefinition.model_validate_json(row["document"]) if row else None

    async def list_definitions(self) -> list[ProcessDefinition]:
        rows = await self._fetch("SELECT document FROM definitions ORDER BY slug")
        return [ProcessDefinition.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> bool:
        status = await self._execute(
            """
            INSERT INTO instances (id, role, status, priority, version, created_at, document)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO NOTHING
            """,
            instance.id,
            instance.role,
            instance.status.value,
            instance.priority,
            instance.version,
            instance.created_at,
            instance.model_dump_json(),
        )
        return status.endswith(" 1")

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await self._fetchrow("SELECT document FROM instances WHERE id = $1", instance_id)
        return ProcessInstance.model_validate_json(row["document"]) if row else None

    async def list_instances(
        self,
        role: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        query = "SELECT document FROM instances WHERE ($1::text IS NULL OR role = $1)"
        params: list[Any] = [role]
        if statuses is not None:
            query += " AND status = ANY($2::text[])"
            params.append([s.value for s in statuses])
        query += " ORDER BY created_at"
        rows = await self._fetch(query, *params)
        return [ProcessInstance.model_validate_json(r["document"]) for r in rows]

    async def update_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: Optional[InstanceStatus] = None,
    ) -> ProcessInstance | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT document FROM instances WHERE id = $1 FOR UPDATE", instance.id
                )
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
                await conn.execute(
                    """
                    UPDATE instances
                    SET role = $1, status = $2, priority = $3, version = $4, document = $5
                    WHERE id = $6 AND version = $7
                    """,
                    updated.role,
                    updated.status.value,
                    updated.priority,
                    updated.version,
                    updated.model_dump_json(),
                    updated.id,
                    expected_version,
                )
        finally:
            await conn.close()
        return updated

    # ------------------------------------------------------------------
    async def append_event(self, event: AuditEvent) -> None:
        await self._execute(
            "INSERT INTO audit_events (id, instance_id, event_type, created_at, document) VALUES ($1, $2, $3, $4, $5)",
            event.id,
            event.instance_id,
            event.event_type.value,
            event.created_at,
            event.model_dump_json(),
        )

    async def list_events(self, instance_id: str) -> list[AuditEvent]:
        rows = await self._fetch(
            "SELECT document FROM audit_events WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [AuditEvent.model_validate_json(r["document"]) for r in rows]

    async def list_events_since(self, since: datetime) -> list[AuditEvent]:
        rows = await self._fetch(
            "SELECT document FROM audit_events WHERE created_at >= $1 ORDER BY seq",
            since,
        )
        return [AuditEvent.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    async def save_role(self, role: WorkerRole) -> None:
        await self._execute(
            """
            INSERT INTO roles (slug, document) VALUES ($1, $2)
            ON CONFLICT (slug) DO UPDATE SET document = EXCLUDED.document
            """,
            role.slug,
            role.model_dump_json(),
        )

    async def get_role(self, slug: str) -> WorkerRole | None:
        row = await self._fetchrow("SELECT document FROM roles WHERE slug = $1", slug)
        return WorkerRole.model_validate_json(row["document"]) if row else None

    async def list_roles(self) -> list[WorkerRole]:
        rows = await self._fetch("SELECT document FROM roles ORDER BY slug")
        return [WorkerRole.model_validate_json(r["document"]) for r in rows]

    async def save_watcher(self, watcher: Watcher) -> None:
        await self._execute(
            """
            INSERT INTO watchers (id, role, created_at, document) VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET role = EXCLUDED.role, document = EXCLUDED.document
            """,
            watcher.id,
            watcher.role,
            watcher.created_at,
            watcher.model_dump_json(),
        )

    async def update_watcher(
        self, watcher: Watcher, expected_version: int
    ) -> Watcher | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT document FROM watchers WHERE id = $1 FOR UPDATE", watcher.id
                )
                if row is None:
                    return None
                if Watcher.model_validate_json(row["document"]).version != expected_version:
                    return None
                updated = watcher.model_copy(update={"version": expected_version + 1})
                await conn.execute(
                    "UPDATE watchers SET role = $1, document = $2 WHERE id = $3",
                    updated.role,
                    updated.model_dump_json(),
                    updated.id,
                )
        finally:
            await conn.close()
        return updated

    async def get_watcher(self, watcher_id: str) -> Watcher | None:
        row = await self._fetchrow("SELECT document FROM watchers WHERE id = $1", watcher_id)
        return Watcher.model_validate_json(row["document"]) if row else None

    async def list_watchers(self, role: Optional[str] = None) -> list[Watcher]:
        rows = await self._fetch(
            "SELECT document FROM watchers WHERE ($1::text IS NULL OR role = $1) ORDER BY created_at",
            role,
        )
        return [Watcher.model_validate_json(r["document"]) for r in rows]
