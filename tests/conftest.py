from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from sopflow.audit import AuditLog
from sopflow.config import DecisionConfig, SopflowConfig
from sopflow.constants import ENGINE_TOPIC
from sopflow.contracts import DefinitionStatus, ProcessDefinition, StepDefinition
from sopflow.decision import ProviderResponse, ProviderUsage, TieredDecisionRouter
from sopflow.engine import TaskExecutionEngine
from sopflow.execute import JobWorker
from sopflow.integrations import (
    InMemoryMemoryStore,
    RecordingMessagingService,
    RecordingNotificationService,
    StaticDataService,
)
from sopflow.persistence import (
    AuditEventType,
    InMemoryProcessRepository,
    ProcessInstance,
    WorkerRole,
)
from sopflow.scheduler import AgentLoopScheduler
from sopflow.summary import DailySummary
from sopflow.transports import InMemoryTransport
from sopflow.triggers import TriggerRunner

FAR_FUTURE = datetime(2999, 1, 1, tzinfo=timezone.utc)

TIER_MODELS = {1: "tier-1", 2: "tier-2", 3: "tier-3"}


def answer(response: Any = "ok", confidence: float = 0.9) -> str:
    return json.dumps({"response": response, "confidence": confidence})


class ScriptedProvider:
    """Decision provider answering from per-model queues, falling back to a default."""

    def __init__(self, default: Optional[str] = None) -> None:
        self.default = default or answer()
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[tuple[str, str]] = []

    def script(self, model: str, *answers: Any) -> None:
        self.scripts.setdefault(model, []).extend(answers)

    async def invoke(self, model_id: str, system_context: str, prompt: str) -> ProviderResponse:
        self.calls.append((model_id, prompt))
        queue = self.scripts.get(model_id)
        result = queue.pop(0) if queue else self.default
        if isinstance(result, Exception):
            raise result
        return ProviderResponse(
            response_text=result, usage=ProviderUsage(tokens_in=10, tokens_out=5)
        )


class Harness:
    """Engine, scheduler and worker wired to in-memory collaborators."""

    answer = staticmethod(answer)

    def __init__(self) -> None:
        self.config = SopflowConfig(decision=DecisionConfig(models=dict(TIER_MODELS)))
        self.repository = InMemoryProcessRepository()
        self.transport = InMemoryTransport()
        self.notifier = RecordingNotificationService()
        self.provider = ScriptedProvider()
        self.data = StaticDataService(
            [
                {"id": "c1", "name": "Ada", "email": "ada@example.com", "status": "new"},
                {"id": "c2", "name": "Grace", "email": "grace@example.com", "status": "new"},
            ]
        )
        self.messaging = RecordingMessagingService()
        self.memory = InMemoryMemoryStore()
        self.audit = AuditLog(self.repository)
        self.router = TieredDecisionRouter(self.provider, self.config.decision, self.audit)
        self.engine = TaskExecutionEngine(
            self.repository,
            self.transport,
            self.router,
            self.notifier,
            data=self.data,
            messaging=self.messaging,
            config=self.config,
            audit=self.audit,
        )
        self.triggers = TriggerRunner(self.repository, self.data)
        self.scheduler = AgentLoopScheduler(
            self.repository,
            self.transport,
            self.notifier,
            triggers=self.triggers,
            memory=self.memory,
            config=self.config,
        )
        self.summary = DailySummary(self.repository, self.notifier, self.config)
        self.worker = JobWorker(
            self.transport, self.engine, self.scheduler, summary=self.summary
        )

    async def define(
        self, steps: List[Dict[str, Any]], slug: str = "proc", **fields: Any
    ) -> ProcessDefinition:
        definition = ProcessDefinition(
            slug=slug,
            name=fields.pop("name", slug.replace("_", " ").title()),
            status=fields.pop("status", DefinitionStatus.ACTIVE),
            steps=[
                StepDefinition.model_validate({"position": i, **step})
                for i, step in enumerate(steps)
            ],
            **fields,
        )
        await self.repository.save_definition(definition)
        return definition

    async def add_role(self, slug: str = "ops", **fields: Any) -> WorkerRole:
        role = WorkerRole(slug=slug, name=fields.pop("name", slug.title()), **fields)
        await self.repository.save_role(role)
        return role

    async def start(
        self, slug: str = "proc", data: Optional[Dict[str, Any]] = None, **kwargs: Any
    ) -> ProcessInstance:
        return await self.engine.create_instance(slug, data or {}, **kwargs)

    async def drain(
        self, topic: str = ENGINE_TOPIC, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        """Process queued jobs until none is due at ``now``."""
        processed = 0
        while processed < limit:
            raw = await self.transport.receive(topic, now=now)
            if raw is None:
                break
            await self.worker.process(raw, raw[2])
            processed += 1
        return processed

    async def flush(self, topic: str = ENGINE_TOPIC) -> int:
        """Process every queued job, delayed ones included."""
        return await self.drain(topic, now=FAR_FUTURE)

    async def instance(self, instance_id: str) -> ProcessInstance:
        instance = await self.repository.get_instance(instance_id)
        assert instance is not None
        return instance

    async def events(self, instance_id: str, *types: AuditEventType):
        events = await self.repository.list_events(instance_id)
        if types:
            events = [e for e in events if e.event_type in types]
        return events


@pytest.fixture
def harness() -> Harness:
    return Harness()
