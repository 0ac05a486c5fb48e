"""In-memory implementation of the process repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

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


class InMemoryProcessRepository(ProcessRepository):
    """Store process state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}
        self._instances: Dict[str, ProcessInstance] = {}
        self._events: List[AuditEvent] = []
        self._roles: Dict[str, WorkerRole] = {}
        self._watchers: Dict[str, Watcher] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, definition: ProcessDefinition) -> None:
        self._definitions[definition.slug] = definition

    async def get_definition(self, slug: str) -> ProcessDefinition | None:
        return self._definitions.get(slug)

    async def list_definitions(self) -> list[ProcessDefinition]:
        return list(self._definitions.values())

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> bool:
        if instance.id in self._instances:
            return False
        self._instances[instance.id] = instance.model_copy(deep=True)
        return True

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        stored = self._instances.get(instance_id)
        return stored.model_copy(deep=True) if stored else None

    async def list_instances(
        self,
        role: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            inst.model_copy(deep=True)
            for inst in self._instances.values()
            if (role is None or inst.role == role)
            and (wanted is None or inst.status in wanted)
        ]
        return sorted(rows, key=lambda i: i.created_at)

    async def update_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: Optional[InstanceStatus] = None,
    ) -> ProcessInstance | None:
        stored = self._instances.get(instance.id)
        if stored is None or stored.version != expected_version:
            return None
        if expected_status is not None and stored.status != expected_status:
            return None
        ensure_append_only(stored.working_data, instance.working_data)
        updated = instance.model_copy(
            deep=True, update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        self._instances[instance.id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def append_event(self, event: AuditEvent) -> None:
        self._events.append(event)

    async def list_events(self, instance_id: str) -> list[AuditEvent]:
        return [e for e in self._events if e.instance_id == instance_id]

    async def list_events_since(self, since: datetime) -> list[AuditEvent]:
        return [e for e in self._events if e.created_at >= since]

    # ------------------------------------------------------------------
    async def save_role(self, role: WorkerRole) -> None:
        self._roles[role.slug] = role.model_copy(deep=True)

    async def get_role(self, slug: str) -> WorkerRole | None:
        role = self._roles.get(slug)
        return role.model_copy(deep=True) if role else None

    async def list_roles(self) -> list[WorkerRole]:
        return [r.model_copy(deep=True) for r in self._roles.values()]

    async def save_watcher(self, watcher: Watcher) -> None:
        self._watchers[watcher.id] = watcher.model_copy(deep=True)

    async def update_watcher(
        self, watcher: Watcher, expected_version: int
    ) -> Watcher | None:
        stored = self._watchers.get(watcher.id)
        if stored is None or stored.version != expected_version:
            return None
        updated = watcher.model_copy(deep=True, update={"version": expected_version + 1})
        self._watchers[watcher.id] = updated
        return updated.model_copy(deep=True)

    async def get_watcher(self, watcher_id: str) -> Watcher | None:
        watcher = self._watchers.get(watcher_id)
        return watcher.model_copy(deep=True) if watcher else None

    async def list_watchers(self, role: Optional[str] = None) -> list[Watcher]:
        rows = [
            w.model_copy(deep=True)
            for w in self._watchers.values()
            if role is None or w.role == role
        ]
        return sorted(rows, key=lambda w: w.created_at)
