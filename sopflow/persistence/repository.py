"""Repository abstraction for process state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import ProcessDefinition
from .models import AuditEvent, InstanceStatus, ProcessInstance, Watcher, WorkerRole


class ProcessRepository(Protocol):
    """Protocol for persistence backends.

    Instance writes are single-row compare-and-set operations: they only
    succeed while the stored ``version`` (and, when given, ``status``) still
    match what the caller read. Audit events are append-only.
    """

    async def save_definition(self, definition: ProcessDefinition) -> None:
        """Insert or replace a process definition (administrative edit)."""

    async def get_definition(self, slug: str) -> ProcessDefinition | None:
        """Retrieve a process definition by slug."""

    async def list_definitions(self) -> list[ProcessDefinition]:
        """Return all process definitions."""

    async def create_instance(self, instance: ProcessInstance) -> bool:
        """Persist a new instance; ``False`` when the id already exists."""

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(
        self,
        role: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        """Return instances ordered by creation time."""

    async def update_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: Optional[InstanceStatus] = None,
    ) -> ProcessInstance | None:
        """Write ``instance`` if the stored row still matches the preconditions.

        Returns the stored copy (with its version bumped) or ``None`` when the
        precondition no longer holds. Raises ``WorkingDataViolation`` if the
        write would drop a working-data key.
        """

    async def append_event(self, event: AuditEvent) -> None:
        """Append an audit event."""

    async def list_events(self, instance_id: str) -> list[AuditEvent]:
        """Return an instance's audit events in insertion order."""

    async def list_events_since(self, since: datetime) -> list[AuditEvent]:
        """Return every audit event created at or after ``since``."""

    async def save_role(self, role: WorkerRole) -> None:
        """Insert or replace a worker role."""

    async def get_role(self, slug: str) -> WorkerRole | None:
        """Retrieve a worker role by slug."""

    async def list_roles(self) -> list[WorkerRole]:
        """Return all worker roles."""

    async def save_watcher(self, watcher: Watcher) -> None:
        """Insert or replace a watcher."""

    async def update_watcher(
        self, watcher: Watcher, expected_version: int
    ) -> Watcher | None:
        """Compare-and-set a watcher on ``version``, like ``update_instance``."""

    async def get_watcher(self, watcher_id: str) -> Watcher | None:
        """Retrieve a watcher by id."""

    async def list_watchers(self, role: Optional[str] = None) -> list[Watcher]:
        """Return watchers, optionally restricted to a role."""
