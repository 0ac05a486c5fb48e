"""Trigger/watcher runner: turns external conditions into pending instances."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .integrations import ExternalDataService, StaticDataService
from .persistence import (
    InstanceStatus,
    ProcessInstance,
    ProcessRepository,
    RoleStatus,
    Watcher,
    WatcherType,
)
from .persistence.models import utcnow

logger = logging.getLogger(__name__)

INBOX_KEY = "inbox"
SEEN_KEY = "seen_ids"
MAX_STATE_CONFLICTS = 5


class TriggerRunner:
    """Checks watchers and creates one pending instance per discovered condition.

    Created instances are not enqueued; the scheduler consumes them one per
    cycle.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        data: Optional[ExternalDataService] = None,
    ) -> None:
        self._repository = repository
        self._data = data or StaticDataService()

    async def check(
        self, watcher: Watcher, now: Optional[datetime] = None
    ) -> List[ProcessInstance]:
        """Check ``watcher`` and create its pending instances.

        The stored watcher is re-read and its drained state is claimed with a
        version compare-and-set before any instance is created, so messages
        ingested after the caller loaded ``watcher`` are never discarded.
        """
        now = now or utcnow()
        definition = await self._repository.get_definition(watcher.process_slug)
        active = definition is not None and definition.is_active

        for _ in range(MAX_STATE_CONFLICTS):
            current = await self._repository.get_watcher(watcher.id)
            stored = current is not None
            current = current or watcher
            if current.status is not RoleStatus.ACTIVE:
                logger.info(f"Watcher {current.name} is {current.status.value}; skipping")
                return []

            contexts, state = await self._collect(current, now)
            if not active:
                if contexts:
                    logger.warning(
                        f"Watcher {current.name} found {len(contexts)} conditions but "
                        f"process '{current.process_slug}' is not active"
                    )
                # keep queued messages and unseen records for a later check
                state = dict(current.state)
                contexts = []

            checked = current.model_copy(update={"last_checked_at": now, "state": state})
            if not stored:
                await self._repository.save_watcher(checked)
                break
            if await self._repository.update_watcher(checked, current.version) is not None:
                break
            logger.info(f"Watcher {current.name} changed during check; re-reading")
        else:
            logger.warning(
                f"Watcher {watcher.name} kept changing; giving up after "
                f"{MAX_STATE_CONFLICTS} attempts"
            )
            return []

        created: List[ProcessInstance] = []
        base_context = current.check_config.get("context") or {}
        priority = current.check_config.get("priority", 5)
        for context in contexts:
            working_data = dict(base_context)
            working_data.update(context)
            working_data["watcher_id"] = current.id
            instance = ProcessInstance(
                process_slug=definition.slug,
                process_version=definition.version,
                role=current.role,
                status=InstanceStatus.PENDING,
                current_position=definition.first_position,
                working_data=working_data,
                priority=priority,
            )
            await self._repository.create_instance(instance)
            created.append(instance)

        logger.info(f"Watcher {current.name} created {len(created)} instances")
        return created

    async def _collect(
        self, watcher: Watcher, now: datetime
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        state = dict(watcher.state)
        contexts: List[Dict[str, Any]] = []

        if watcher.check_type is WatcherType.SCHEDULE:
            contexts.append({"triggered_by": "schedule", "triggered_at": now.isoformat()})
        elif watcher.check_type is WatcherType.INBOUND_MESSAGE:
            inbox = list(state.get(INBOX_KEY) or [])
            state[INBOX_KEY] = []
            for message in inbox:
                context = {"triggered_by": "inbound_message", "inbound_message": message}
                context.update(
                    {f"message_{k}": v for k, v in message.items() if not isinstance(v, (dict, list))}
                )
                contexts.append(context)
        elif watcher.check_type is WatcherType.DATA_CONDITION:
            id_field = watcher.check_config.get("id_field", "id")
            seen = set(state.get(SEEN_KEY) or [])
            records = await self._data.query(watcher.check_config.get("filters") or {})
            for record in records:
                record_id = str(record.get(id_field))
                if record_id in seen:
                    continue
                seen.add(record_id)
                contexts.append(
                    {
                        "triggered_by": "data_condition",
                        "triggered_at": now.isoformat(),
                        "record": record,
                        "record_id": record_id,
                    }
                )
            state[SEEN_KEY] = sorted(seen)
        return contexts, state

    async def ingest_inbound_message(self, message: Mapping[str, Any]) -> int:
        """Deliver an inbound message to every active inbound-message watcher.

        A watcher with ``check_config.source`` only receives messages whose
        ``source`` matches. Returns the number of watchers that queued it.
        """
        delivered = 0
        for listed in await self._repository.list_watchers():
            if (
                listed.check_type is not WatcherType.INBOUND_MESSAGE
                or listed.status is not RoleStatus.ACTIVE
            ):
                continue
            source = listed.check_config.get("source")
            if source and message.get("source") != source:
                continue
            if await self._append_to_inbox(listed.id, dict(message)):
                delivered += 1
        if not delivered:
            logger.warning("No active inbound-message watchers for inbound message")
        return delivered

    async def _append_to_inbox(self, watcher_id: str, message: Dict[str, Any]) -> bool:
        for _ in range(MAX_STATE_CONFLICTS):
            watcher = await self._repository.get_watcher(watcher_id)
            if watcher is None:
                return False
            state = dict(watcher.state)
            state[INBOX_KEY] = list(state.get(INBOX_KEY) or []) + [message]
            updated = watcher.model_copy(update={"state": state})
            if await self._repository.update_watcher(updated, watcher.version) is not None:
                return True
        logger.warning(f"Watcher {watcher_id} kept changing; inbound message not queued")
        return False
