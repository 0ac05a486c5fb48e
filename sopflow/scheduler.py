"""Agent loop scheduler.

Each worker role runs a survey, assess, prioritize, execute, report cycle on
its own interval. A cycle performs at most one action, and cycles of the
same role never overlap thanks to a role-scoped transport lock.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from .config import SopflowConfig
from .constants import ENGINE_TOPIC, SCHEDULER_TOPIC
from .contracts import JobKind, JobMessage
from .errors import ExternalServiceError
from .integrations import (
    InMemoryMemoryStore,
    MemoryStore,
    NotificationService,
    format_escalation,
)
from .persistence import (
    InstanceStatus,
    ProcessInstance,
    ProcessRepository,
    RoleStatus,
    Watcher,
    WorkerRole,
)
from .persistence.models import utcnow
from .transports import BaseTransport
from .triggers import TriggerRunner

logger = logging.getLogger(__name__)


class CycleAction(str, enum.Enum):
    NONE = "none"
    ESCALATE_FAILED = "escalate_failed"
    PROCESS_INSTANCE = "process_instance"
    RUN_WATCHER = "run_watcher"


class Survey(BaseModel):
    active: int = 0
    pending: int = 0
    paused_for_human: int = 0
    paused_for_timer: int = 0
    recent_failures: int = 0
    due_watchers: int = 0
    memories: List[str] = Field(default_factory=list)


class Assessment(BaseModel):
    needs_attention: bool = False
    concerns: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)


class CycleReport(BaseModel):
    role: str
    action: CycleAction = CycleAction.NONE
    description: str = "No action needed"
    skipped: Optional[str] = None
    instance_id: Optional[str] = None
    watcher_id: Optional[str] = None
    escalated_ids: List[str] = Field(default_factory=list)
    created_instance_ids: List[str] = Field(default_factory=list)
    survey: Optional[Survey] = None
    assessment: Optional[Assessment] = None


def _by_priority(instances: List[ProcessInstance]) -> List[ProcessInstance]:
    return sorted(instances, key=lambda i: (-i.priority, i.created_at))


class AgentLoopScheduler:
    """Drives one worker role's instances forward, one action per cycle."""

    def __init__(
        self,
        repository: ProcessRepository,
        transport: BaseTransport,
        notifier: NotificationService,
        triggers: Optional[TriggerRunner] = None,
        memory: Optional[MemoryStore] = None,
        config: Optional[SopflowConfig] = None,
        engine_topic: str = ENGINE_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._notifier = notifier
        self._triggers = triggers or TriggerRunner(repository)
        self._memory = memory or InMemoryMemoryStore()
        self._config = config or SopflowConfig()
        self._engine_topic = engine_topic

    async def run_cycle(self, role_slug: str, now: Optional[datetime] = None) -> CycleReport:
        now = now or utcnow()
        role = await self._repository.get_role(role_slug)
        if role is None:
            logger.error(f"Worker role not found: {role_slug}")
            return CycleReport(role=role_slug, skipped="unknown role")
        if role.status is not RoleStatus.ACTIVE:
            logger.info(f"Worker role {role_slug} is {role.status.value}; skipping cycle")
            return CycleReport(role=role_slug, skipped=f"role {role.status.value}")
        if not role.has_loop:
            logger.info(f"Worker role {role_slug} has no loop; skipping cycle")
            return CycleReport(role=role_slug, skipped="role has no loop")

        cfg = self._config.scheduler
        lock_key = f"scheduler:{role_slug}"
        token = await self._transport.acquire_lock(lock_key, cfg.lock_ttl_seconds)
        if token is None:
            logger.warning(f"Cycle for {role_slug} already running; skipping")
            return CycleReport(role=role_slug, skipped="cycle already running")

        try:
            logger.info(f"Agent loop starting for {role.name}")
            instances = await self._repository.list_instances(role=role_slug)
            watchers = [w for w in await self._repository.list_watchers(role_slug) if w.is_due(now)]

            survey = await self._survey(role, instances, watchers, now)
            failed = self._recent_failures(instances, now)
            runnable = self._runnable(instances, now)
            assessment = self._assess(survey, instances, runnable, now)

            report = CycleReport(role=role_slug, survey=survey, assessment=assessment)
            await self._prioritize_and_execute(role, report, failed, runnable, watchers, now)
            await self._report(role, report, now)
            pruned = await self._memory.prune_expired(now)
            if pruned:
                logger.info(f"Pruned {pruned} expired memory notes")
            logger.info(f"Agent loop completed for {role.name}: {report.description}")
            return report
        finally:
            await self._transport.release_lock(lock_key, token)

    # ------------------------------------------------------------------
    async def _survey(
        self,
        role: WorkerRole,
        instances: List[ProcessInstance],
        watchers: List[Watcher],
        now: datetime,
    ) -> Survey:
        def count(status: InstanceStatus) -> int:
            return sum(1 for i in instances if i.status is status)

        notes = await self._memory.top_notes(role.slug, self._config.scheduler.memory_limit)
        return Survey(
            active=count(InstanceStatus.ACTIVE),
            pending=count(InstanceStatus.PENDING),
            paused_for_human=count(InstanceStatus.PAUSED_FOR_HUMAN),
            paused_for_timer=count(InstanceStatus.PAUSED_FOR_TIMER),
            recent_failures=len(self._recent_failures(instances, now)),
            due_watchers=len(watchers),
            memories=[n.content for n in notes],
        )

    def _recent_failures(
        self, instances: List[ProcessInstance], now: datetime
    ) -> List[ProcessInstance]:
        since = now - timedelta(seconds=self._config.scheduler.failure_lookback_seconds)
        return [
            i
            for i in instances
            if i.status.is_failed
            and i.attention_notified_at is None
            and i.updated_at >= since
        ]

    def _runnable(
        self, instances: List[ProcessInstance], now: datetime
    ) -> List[ProcessInstance]:
        """Pending instances, plus active ones left unclaimed past the lease.

        The latter lost their next job (e.g. a worker died between writing
        the instance and publishing the job). An instance waiting out a retry
        backoff only counts once its ``resume_after`` is a full lease behind.
        """
        lease = self._config.engine.claim_lease_seconds
        idle_since = now - timedelta(seconds=lease)
        return [
            i
            for i in instances
            if i.status is InstanceStatus.PENDING
            or (
                i.status is InstanceStatus.ACTIVE
                and i.claim_expired(lease, now)
                and i.updated_at <= idle_since
                and (i.resume_after is None or i.resume_after <= idle_since)
            )
        ]

    def _assess(
        self,
        survey: Survey,
        instances: List[ProcessInstance],
        runnable: List[ProcessInstance],
        now: datetime,
    ) -> Assessment:
        cfg = self._config.scheduler
        assessment = Assessment()
        if survey.recent_failures:
            assessment.needs_attention = True
            assessment.concerns.append(f"{survey.recent_failures} failed tasks need attention")

        grace = now - timedelta(seconds=cfg.human_grace_seconds)
        long_waiting = [
            i
            for i in instances
            if i.status is InstanceStatus.PAUSED_FOR_HUMAN
            and (i.paused_at or i.updated_at) < grace
        ]
        if long_waiting:
            assessment.needs_attention = True
            hours = cfg.human_grace_seconds / 3600
            assessment.concerns.append(
                f"{len(long_waiting)} tasks waiting on human for > {hours:g} hours"
            )

        high = [i for i in runnable if i.priority > cfg.high_priority_threshold]
        if high:
            assessment.needs_attention = True
            assessment.opportunities.append(f"{len(high)} high-priority pending tasks")
        if survey.due_watchers:
            assessment.opportunities.append(f"{survey.due_watchers} watchers ready to check")
        return assessment

    async def _prioritize_and_execute(
        self,
        role: WorkerRole,
        report: CycleReport,
        failed: List[ProcessInstance],
        runnable: List[ProcessInstance],
        watchers: List[Watcher],
        now: datetime,
    ) -> None:
        threshold = self._config.scheduler.high_priority_threshold

        if failed:
            await self._escalate_failed(role, report, failed, now)
            return

        high = _by_priority([i for i in runnable if i.priority > threshold])
        if high:
            await self._process(role, report, high[0], "high-priority")
            return

        if watchers:
            watcher = watchers[0]
            created = await self._triggers.check(watcher, now)
            report.action = CycleAction.RUN_WATCHER
            report.watcher_id = watcher.id
            report.created_instance_ids = [i.id for i in created]
            report.description = f"Run watcher: {watcher.name}"
            await self._memory.record(role.slug, f"Ran watcher: {watcher.name}", 5)
            return

        if runnable:
            await self._process(role, report, _by_priority(runnable)[0], "pending")

    async def _escalate_failed(
        self,
        role: WorkerRole,
        report: CycleReport,
        failed: List[ProcessInstance],
        now: datetime,
    ) -> None:
        channel = self._config.notifications.escalation_channel
        for instance in failed:
            definition = await self._repository.get_definition(instance.process_slug)
            text = format_escalation(
                instance.id,
                definition.name if definition else instance.process_slug,
                role.name,
                instance.error_message or "Task failed and needs attention",
                instance.working_data,
            )
            try:
                await self._notifier.post_message(channel, text)
            except ExternalServiceError as e:
                logger.error(f"Could not escalate instance {instance.id}: {e}")
                continue
            updated = await self._repository.update_instance(
                instance.model_copy(update={"attention_notified_at": now}),
                expected_version=instance.version,
                expected_status=instance.status,
            )
            if updated is not None:
                report.escalated_ids.append(instance.id)

        report.action = CycleAction.ESCALATE_FAILED
        report.description = "Escalate failed tasks"
        await self._memory.record(
            role.slug, f"Escalated {len(report.escalated_ids)} failed tasks", 8
        )

    async def _process(
        self,
        role: WorkerRole,
        report: CycleReport,
        instance: ProcessInstance,
        label: str,
    ) -> None:
        target = instance
        if instance.status is InstanceStatus.PENDING:
            started = await self._repository.update_instance(
                instance.model_copy(
                    update={
                        "status": InstanceStatus.ACTIVE,
                        "started_at": instance.started_at or utcnow(),
                    }
                ),
                expected_version=instance.version,
                expected_status=InstanceStatus.PENDING,
            )
            if started is None:
                logger.warning(f"Instance {instance.id} changed before it could be started")
                report.description = f"Lost race for task {instance.id}"
                return
            target = started

        job = JobMessage(
            kind=JobKind.ADVANCE,
            instance_id=target.id,
            role=role.slug,
            expected_version=target.version,
        )
        await self._transport.publish(self._engine_topic, job)

        report.action = CycleAction.PROCESS_INSTANCE
        report.instance_id = target.id
        report.description = f"Process {label} task: {target.process_slug}"
        await self._memory.record(
            role.slug, f"Processed task {target.id} for {target.process_slug}", 7
        )

    async def _report(self, role: WorkerRole, report: CycleReport, now: datetime) -> None:
        await self._repository.save_role(role.model_copy(update={"last_heartbeat_at": now}))

        survey = report.survey or Survey()
        assessment = report.assessment or Assessment()
        status = ":warning:" if assessment.needs_attention else ":white_check_mark:"
        text = (
            f"{status} *{role.name}* - Loop Complete\n\n"
            "Survey:\n"
            f"• Active tasks: {survey.active}\n"
            f"• Pending: {survey.pending}\n"
            f"• Waiting on human: {survey.paused_for_human}\n"
            f"• Failed (recent): {survey.recent_failures}\n"
            f"• Watchers ready: {survey.due_watchers}\n\n"
            f"Action: {report.description}"
        )
        try:
            await self._notifier.post_message(self._config.notifications.ops_channel, text)
            if assessment.needs_attention and role.channel:
                concerns = "\n• ".join(assessment.concerns + assessment.opportunities)
                await self._notifier.post_message(
                    role.channel, f":warning: Attention needed:\n• {concerns}"
                )
        except ExternalServiceError as e:
            logger.warning(f"Could not post heartbeat for {role.slug}: {e}")

    async def stale_roles(self, now: Optional[datetime] = None) -> List[WorkerRole]:
        """Roles whose last heartbeat is older than two loop intervals."""
        return [r for r in await self._repository.list_roles() if r.is_stale(now)]


class SchedulerBeat:
    """Publishes a scheduler-cycle job per active role whenever its interval elapsed.

    With ``summary_hour`` set it also publishes one daily-summary job per UTC
    day, at the first tick on or after that hour.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        transport: BaseTransport,
        topic: str = SCHEDULER_TOPIC,
        summary_hour: Optional[int] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._topic = topic
        self._summary_hour = summary_hour
        self._last_enqueued: dict[str, datetime] = {}
        self._last_summary_day: Optional[date] = None

    async def tick(self, now: Optional[datetime] = None) -> List[JobMessage]:
        now = now or utcnow()
        published: List[JobMessage] = []
        for role in await self._repository.list_roles():
            if role.status is not RoleStatus.ACTIVE or not role.has_loop:
                continue
            last = self._last_enqueued.get(role.slug)
            interval = timedelta(seconds=role.loop_interval_seconds or 0)
            if last is not None and last + interval > now:
                continue
            job = JobMessage(kind=JobKind.SCHEDULER_CYCLE, role=role.slug)
            await self._transport.publish(self._topic, job)
            self._last_enqueued[role.slug] = now
            published.append(job)
        if self._summary_due(now):
            job = JobMessage(kind=JobKind.DAILY_SUMMARY)
            await self._transport.publish(self._topic, job)
            self._last_summary_day = now.date()
            published.append(job)
        return published

    def _summary_due(self, now: datetime) -> bool:
        if self._summary_hour is None or now.hour < self._summary_hour:
            return False
        return self._last_summary_day != now.date()

    async def run(self, lifespan: Optional[float] = None, poll_seconds: float = 1.0) -> None:
        loop = asyncio.get_event_loop()
        start = loop.time()
        while lifespan is None or loop.time() - start < lifespan:
            published = await self.tick()
            for job in published:
                logger.info(f"Enqueued {job.kind.value} job {job.job_id} role={job.role}")
            await asyncio.sleep(poll_seconds)
