"""Load process definitions, worker roles and watchers from YAML."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import yaml
from pydantic import BaseModel, Field

from .contracts import ProcessDefinition
from .persistence import ProcessRepository, Watcher, WorkerRole

logger = logging.getLogger(__name__)


class DefinitionBundle(BaseModel):
    roles: List[WorkerRole] = Field(default_factory=list)
    definitions: List[ProcessDefinition] = Field(default_factory=list)
    watchers: List[Watcher] = Field(default_factory=list)


def _with_positions(definition: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(definition)
    steps = []
    for index, step in enumerate(data.get("steps") or []):
        step = dict(step)
        step.setdefault("position", index)
        steps.append(step)
    data["steps"] = steps
    return data


def _with_watcher_id(watcher: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(watcher)
    # stable ids make reloading a file idempotent
    data.setdefault(
        "id", str(uuid.uuid5(uuid.NAMESPACE_URL, f"watcher/{data.get('role')}/{data.get('name')}"))
    )
    return data


def parse_document(data: Mapping[str, Any]) -> DefinitionBundle:
    """Validate a parsed YAML document. Steps without a position get their index."""
    return DefinitionBundle(
        roles=[WorkerRole.model_validate(r) for r in data.get("roles") or []],
        definitions=[
            ProcessDefinition.model_validate(_with_positions(d))
            for d in data.get("definitions") or []
        ],
        watchers=[
            Watcher.model_validate(_with_watcher_id(w)) for w in data.get("watchers") or []
        ],
    )


def load_file(path: Union[str, Path]) -> DefinitionBundle:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return parse_document(data)


async def apply_bundle(repository: ProcessRepository, bundle: DefinitionBundle) -> None:
    for role in bundle.roles:
        existing = await repository.get_role(role.slug)
        if existing is not None and existing.last_heartbeat_at is not None:
            role = role.model_copy(update={"last_heartbeat_at": existing.last_heartbeat_at})
        await repository.save_role(role)
    for definition in bundle.definitions:
        await repository.save_definition(definition)
    for watcher in bundle.watchers:
        existing = await repository.get_watcher(watcher.id)
        if existing is not None:
            watcher = watcher.model_copy(
                update={
                    "state": existing.state,
                    "last_checked_at": existing.last_checked_at,
                    "version": existing.version + 1,
                }
            )
        await repository.save_watcher(watcher)
    logger.info(
        f"Loaded {len(bundle.roles)} roles, {len(bundle.definitions)} definitions "
        f"and {len(bundle.watchers)} watchers"
    )
