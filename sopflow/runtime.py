"""Wire repositories, transports and collaborators into a running system."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .audit import AuditLog
from .config import SopflowConfig, load_config
from .constants import ENGINE_TOPIC
from .decision import (
    DecisionProvider,
    PydanticAIDecisionProvider,
    StaticDecisionProvider,
    TieredDecisionRouter,
)
from .engine import TaskExecutionEngine
from .execute import JobWorker
from .integrations import (
    ExternalDataService,
    InMemoryMemoryStore,
    MemoryStore,
    NotificationService,
    RecordingMessagingService,
    RecordingNotificationService,
    SlackNotificationService,
    StaticDataService,
    TransactionalMessagingService,
)
from .persistence import ProcessRepository, get_repository
from .scheduler import AgentLoopScheduler, SchedulerBeat
from .summary import DailySummary
from .transports import BaseTransport, get_transport
from .triggers import TriggerRunner


def build_notifier(config: SopflowConfig) -> NotificationService:
    notifications = config.notifications
    if notifications.backend == "slack":
        if not notifications.slack_token:
            raise ValueError("notifications.slack_token is required for the slack backend")
        return SlackNotificationService(
            notifications.slack_token, base_url=notifications.base_url
        )
    return RecordingNotificationService()


def build_provider(config: SopflowConfig) -> DecisionProvider:
    if config.decision.provider == "static":
        return StaticDecisionProvider()
    return PydanticAIDecisionProvider()


@dataclass
class Runtime:
    config: SopflowConfig
    repository: ProcessRepository
    transport: BaseTransport
    notifier: NotificationService
    router: TieredDecisionRouter
    engine: TaskExecutionEngine
    triggers: TriggerRunner
    scheduler: AgentLoopScheduler
    summary: DailySummary

    def worker(self, topic: str = ENGINE_TOPIC) -> JobWorker:
        return JobWorker(
            self.transport, self.engine, self.scheduler, topic=topic, summary=self.summary
        )

    def beat(self) -> SchedulerBeat:
        return SchedulerBeat(
            self.repository,
            self.transport,
            summary_hour=self.config.scheduler.daily_summary_hour,
        )


def build_runtime(
    config: Optional[SopflowConfig] = None,
    *,
    repository: Optional[ProcessRepository] = None,
    transport: Optional[BaseTransport] = None,
    notifier: Optional[NotificationService] = None,
    provider: Optional[DecisionProvider] = None,
    data: Optional[ExternalDataService] = None,
    messaging: Optional[TransactionalMessagingService] = None,
    memory: Optional[MemoryStore] = None,
) -> Runtime:
    """Assemble the engine, scheduler and their collaborators from ``config``."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    notifier = notifier or build_notifier(config)
    data = data or StaticDataService()
    audit = AuditLog(repository, config.engine.summary_limit)
    router = TieredDecisionRouter(provider or build_provider(config), config.decision, audit)
    engine = TaskExecutionEngine(
        repository,
        transport,
        router,
        notifier,
        data=data,
        messaging=messaging or RecordingMessagingService(),
        config=config,
        audit=audit,
    )
    triggers = TriggerRunner(repository, data)
    scheduler = AgentLoopScheduler(
        repository,
        transport,
        notifier,
        triggers=triggers,
        memory=memory or InMemoryMemoryStore(),
        config=config,
    )
    return Runtime(
        config=config,
        repository=repository,
        transport=transport,
        notifier=notifier,
        router=router,
        engine=engine,
        triggers=triggers,
        scheduler=scheduler,
        summary=DailySummary(repository, notifier, config),
    )
