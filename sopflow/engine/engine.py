"""Task execution engine.

Advances one process instance by exactly one step per job. Every write is a
compare-and-set against the instance ``version`` so duplicate or reordered
job deliveries turn into no-ops instead of double execution.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from ..audit import AuditLog
from ..config import SopflowConfig
from ..constants import ENGINE_TOPIC, HUMAN_EDIT_KEY, HUMAN_RESPONSE_KEY
from ..contracts import (
    ADVANCE,
    Directive,
    DirectiveKind,
    JobKind,
    JobMessage,
    ProcessDefinition,
    StepDefinition,
)
from ..decision import TieredDecisionRouter
from ..errors import (
    DefinitionNotFound,
    ExternalServiceError,
    InstanceNotFound,
    StepConfigurationError,
)
from ..integrations import (
    ExternalDataService,
    NotificationService,
    RecordingMessagingService,
    StaticDataService,
    TransactionalMessagingService,
    format_escalation,
)
from ..persistence import (
    AuditEventType,
    InstanceStatus,
    ProcessInstance,
    ProcessRepository,
)
from ..persistence.models import utcnow
from ..transports import BaseTransport
from ..utils.retry import compute_backoff
from .handlers import STEP_HANDLERS, StepContext
from .outcomes import OutcomeKind, StepOutcome, SuspensionKind

logger = logging.getLogger(__name__)

REMINDER_STAGE = "reminder"
GIVE_UP_STAGE = "give_up"

_RESUME_ACTIONS = {"approve", "send", "edit"}
_REJECT_ACTIONS = {"reject", "cancel"}


def _without(mapping: Mapping[int, int], key: int) -> Dict[int, int]:
    return {k: v for k, v in mapping.items() if k != key}


class TaskExecutionEngine:
    """Step interpreter for process instances."""

    def __init__(
        self,
        repository: ProcessRepository,
        transport: BaseTransport,
        router: TieredDecisionRouter,
        notifier: NotificationService,
        data: Optional[ExternalDataService] = None,
        messaging: Optional[TransactionalMessagingService] = None,
        config: Optional[SopflowConfig] = None,
        audit: Optional[AuditLog] = None,
        topic: str = ENGINE_TOPIC,
    ) -> None:
        self.config = config or SopflowConfig()
        self.repository = repository
        self.transport = transport
        self.router = router
        self.notifier = notifier
        self.data = data or StaticDataService()
        self.messaging = messaging or RecordingMessagingService()
        self.audit = audit or AuditLog(repository, self.config.engine.summary_limit)
        self.topic = topic

    # ------------------------------------------------------------------
    # queue and storage helpers
    async def enqueue(
        self,
        kind: JobKind,
        instance: ProcessInstance,
        step_position: Optional[int] = None,
        delay: Optional[float] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> JobMessage:
        """Publish a job guarded by the instance's current version."""
        job = JobMessage(
            kind=kind,
            instance_id=instance.id,
            role=instance.role,
            step_position=step_position,
            expected_version=instance.version,
            payload=payload or {},
        )
        await self.transport.publish(self.topic, job, delay=delay)
        return job

    async def _write(
        self, instance: ProcessInstance, **changes: Any
    ) -> Optional[ProcessInstance]:
        updated = await self.repository.update_instance(
            instance.model_copy(update=changes),
            expected_version=instance.version,
            expected_status=instance.status,
        )
        if updated is None:
            logger.warning(
                f"Instance {instance.id} changed concurrently (version {instance.version}); "
                "dropping write"
            )
        return updated

    async def _channel_for(self, instance: ProcessInstance) -> str:
        if instance.role:
            role = await self.repository.get_role(instance.role)
            if role is not None and role.channel:
                return role.channel
        return self.config.notifications.ops_channel

    async def get_instance(self, instance_id: str) -> ProcessInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(f"No process instance '{instance_id}'")
        return instance

    async def create_instance(
        self,
        slug: str,
        working_data: Optional[Mapping[str, Any]] = None,
        *,
        role: Optional[str] = None,
        priority: int = 5,
        enqueue: bool = True,
    ) -> ProcessInstance:
        """Create a pending instance of an active definition."""
        definition = await self.repository.get_definition(slug)
        if definition is None or not definition.is_active:
            raise DefinitionNotFound(f"No active process definition '{slug}'")
        instance = ProcessInstance(
            process_slug=definition.slug,
            process_version=definition.version,
            role=role or definition.role,
            current_position=definition.first_position,
            working_data=dict(working_data or {}),
            priority=priority,
        )
        await self.repository.create_instance(instance)
        logger.info(f"Created instance {instance.id} of {slug}")
        if enqueue:
            await self.enqueue(JobKind.ADVANCE, instance)
        return instance

    # ------------------------------------------------------------------
    async def advance(
        self,
        instance_id: str,
        step_position: Optional[int] = None,
        *,
        job_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Execute one step of ``instance_id``.

        Returns ``False`` when the delivery was a no-op: unknown instance, a
        status that cannot advance, another job holding a live claim, or a
        stale ``expected_version``. A job whose own claim expired (its worker
        crashed mid-step) may run again despite the stale version.
        """
        job_id = job_id or str(uuid.uuid4())
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            logger.warning(f"Advance requested for unknown instance {instance_id}")
            return False
        if not instance.status.is_advanceable:
            logger.info(
                f"Instance {instance_id} is {instance.status.value}; ignoring advance"
            )
            return False
        if not instance.claim_expired(self.config.engine.claim_lease_seconds):
            logger.warning(
                f"Instance {instance_id} is being advanced by job {instance.claimed_by}; "
                "ignoring duplicate"
            )
            return False
        if (
            expected_version is not None
            and instance.version != expected_version
            and instance.claimed_by != job_id
        ):
            logger.warning(
                f"Stale advance for instance {instance_id}: expected version "
                f"{expected_version}, found {instance.version}"
            )
            return False

        definition = await self.repository.get_definition(instance.process_slug)
        if definition is None:
            await self._fail_fatally(
                instance,
                None,
                None,
                StepConfigurationError(
                    f"Process definition not found: {instance.process_slug}"
                ),
            )
            return True

        position = instance.current_position if step_position is None else step_position
        step = definition.step_at(position)
        if step is None:
            return await self._complete(instance, definition, position)

        now = utcnow()
        claimed = await self._write(
            instance,
            status=InstanceStatus.ACTIVE,
            current_position=position,
            claimed_by=job_id,
            claimed_at=now,
            paused_at=None,
            resume_after=None,
            started_at=instance.started_at or now,
        )
        if claimed is None:
            return False

        logger.info(
            f"Instance {instance_id} running step {position} ({step.step_type.value})"
        )
        await self.audit.record(
            claimed.id,
            AuditEventType.STEP_STARTED,
            step_position=position,
            data={"step_type": step.step_type.value, "name": step.name, "job_id": job_id},
        )

        role = await self.repository.get_role(claimed.role) if claimed.role else None
        ctx = StepContext(self, definition, step, claimed, role, job_id)
        try:
            outcome = await self._dispatch(ctx)
        except StepConfigurationError as e:
            await self._fail_fatally(claimed, definition, step, e)
            return True
        except Exception as e:
            logger.error(f"Unexpected error in instance {instance_id} step {position}: {e}")
            await self.audit.record(
                claimed.id,
                AuditEventType.ERROR,
                step_position=position,
                data={"error": str(e), "error_type": type(e).__name__},
            )
            failed = await self._write(
                claimed,
                status=InstanceStatus.FAILED,
                error_message=str(e),
                claimed_by=None,
                claimed_at=None,
            )
            if failed is not None:
                await self._notify_attention(failed, definition, str(e))
            raise

        await self._apply(claimed, definition, step, outcome)
        return True

    async def _dispatch(self, ctx: StepContext) -> StepOutcome:
        handler = STEP_HANDLERS[ctx.step.step_type]
        timeout = ctx.step.timeout_seconds or self.config.engine.default_timeout_seconds
        try:
            return await asyncio.wait_for(handler(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Instance {ctx.instance.id} step {ctx.step.position} timed out after {timeout}s"
            )
            return StepOutcome.failure(f"Step timed out after {timeout}s")

    async def _apply(
        self,
        instance: ProcessInstance,
        definition: ProcessDefinition,
        step: StepDefinition,
        outcome: StepOutcome,
    ) -> None:
        if outcome.kind is OutcomeKind.SUCCESS:
            await self._on_success(instance, definition, step, outcome)
        elif outcome.kind is OutcomeKind.FAILURE:
            await self._on_failure(instance, definition, step, outcome.error or "Step failed")
        elif outcome.kind is OutcomeKind.UNCERTAIN:
            await self._on_uncertain(instance, definition, step, outcome)
        else:
            await self._on_suspended(instance, step, outcome)

    # ------------------------------------------------------------------
    # outcome handling
    async def _on_success(
        self,
        instance: ProcessInstance,
        definition: ProcessDefinition,
        step: StepDefinition,
        outcome: StepOutcome,
    ) -> None:
        position = step.position
        directive = outcome.directive or step.on_success
        decision = outcome.decision
        await self.audit.record(
            instance.id,
            AuditEventType.STEP_COMPLETED,
            step_position=position,
            output=outcome.output or None,
            data={"directive": str(directive)},
            tier=decision.tier_used if decision else None,
            confidence=decision.confidence if decision else None,
        )

        changes: Dict[str, Any] = {
            "working_data": instance.with_data(outcome.output),
            "retry_counts": _without(instance.retry_counts, position),
            "tier_overrides": _without(instance.tier_overrides, position),
            "claimed_by": None,
            "claimed_at": None,
        }
        if outcome.thread_handle:
            changes["thread_handle"] = outcome.thread_handle

        next_position = step.next_position(directive)
        if next_position is None:
            done = await self._write(
                instance,
                status=InstanceStatus.COMPLETED,
                completed_at=utcnow(),
                **changes,
            )
            if done is not None:
                logger.info(f"Instance {instance.id} completed at step {position}")
                await self._post_completion(done, definition)
            return

        updated = await self._write(instance, current_position=next_position, **changes)
        if updated is not None:
            await self.enqueue(JobKind.ADVANCE, updated, step_position=next_position)

    async def _on_failure(
        self,
        instance: ProcessInstance,
        definition: Optional[ProcessDefinition],
        step: StepDefinition,
        error: str,
    ) -> None:
        logger.warning(f"Instance {instance.id} step {step.position} failed: {error}")
        await self.audit.record(
            instance.id,
            AuditEventType.STEP_FAILED,
            step_position=step.position,
            data={
                "error": error,
                "retry_count": instance.retry_counts.get(step.position, 0),
            },
        )
        await self._resolve(instance, definition, step, step.on_failure, error)

    async def _on_uncertain(
        self,
        instance: ProcessInstance,
        definition: ProcessDefinition,
        step: StepDefinition,
        outcome: StepOutcome,
    ) -> None:
        decision = outcome.decision
        reason = outcome.error or "Low confidence"
        await self.audit.record(
            instance.id,
            AuditEventType.NOTE,
            step_position=step.position,
            output=outcome.output,
            data={"uncertain": True, "reason": reason},
            tier=decision.tier_used if decision else None,
            confidence=decision.confidence if decision else None,
        )
        # parked under its own key so later steps never read it as the step result
        changes = {
            "working_data": instance.with_data(
                {f"step_{step.position}_uncertain_result": outcome.output}
            )
        }

        directive = step.on_uncertain
        if directive.kind is DirectiveKind.ESCALATE_TIER:
            tier_used = decision.tier_used if decision else step.max_tier
            if tier_used < definition.effective_max_tier(step):
                overrides = dict(instance.tier_overrides)
                overrides[step.position] = tier_used + 1
                updated = await self._write(
                    instance,
                    tier_overrides=overrides,
                    claimed_by=None,
                    claimed_at=None,
                    **changes,
                )
                if updated is not None:
                    logger.info(
                        f"Instance {instance.id} retrying step {step.position} at tier {tier_used + 1}"
                    )
                    await self.enqueue(JobKind.ADVANCE, updated, step_position=step.position)
                return
            await self._terminate(instance, definition, InstanceStatus.ESCALATED, reason, changes)
            return

        await self._resolve(instance, definition, step, directive, reason, changes)

    async def _resolve(
        self,
        instance: ProcessInstance,
        definition: Optional[ProcessDefinition],
        step: StepDefinition,
        directive: Directive,
        error: str,
        changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Apply a failure-side directive (retry, escalate, fail or goto)."""
        changes = dict(changes or {})
        kind = directive.kind
        position = step.position

        if kind is DirectiveKind.RETRY:
            count = instance.retry_counts.get(position, 0) + 1
            if count <= step.max_retries:
                cfg = self.config.engine
                delay = compute_backoff(
                    count, base=cfg.backoff_base, unit=cfg.backoff_unit_seconds
                )
                counts = dict(instance.retry_counts)
                counts[position] = count
                updated = await self._write(
                    instance,
                    status=InstanceStatus.ACTIVE,
                    retry_counts=counts,
                    claimed_by=None,
                    claimed_at=None,
                    resume_after=utcnow() + timedelta(seconds=delay),
                    **changes,
                )
                if updated is not None:
                    logger.info(
                        f"Retrying instance {instance.id} step {position} "
                        f"({count}/{step.max_retries}) in {delay:.0f}s"
                    )
                    await self.enqueue(
                        JobKind.ADVANCE, updated, step_position=position, delay=delay
                    )
                return
            logger.warning(
                f"Instance {instance.id} step {position} exhausted {step.max_retries} retries"
            )
            kind = DirectiveKind.ESCALATE

        if kind is DirectiveKind.GOTO:
            updated = await self._write(
                instance,
                status=InstanceStatus.ACTIVE,
                current_position=directive.position,
                claimed_by=None,
                claimed_at=None,
                **changes,
            )
            if updated is not None:
                await self.enqueue(
                    JobKind.ADVANCE, updated, step_position=directive.position
                )
            return

        status = (
            InstanceStatus.ESCALATED
            if kind in (DirectiveKind.ESCALATE, DirectiveKind.ESCALATE_TIER)
            else InstanceStatus.FAILED
        )
        await self._terminate(instance, definition, status, error, changes)

    async def _on_suspended(
        self,
        instance: ProcessInstance,
        step: StepDefinition,
        outcome: StepOutcome,
    ) -> None:
        suspension = outcome.suspension
        changes: Dict[str, Any] = {
            "working_data": instance.with_data(outcome.output),
            "claimed_by": None,
            "claimed_at": None,
            "paused_at": utcnow(),
        }
        if outcome.thread_handle:
            changes["thread_handle"] = outcome.thread_handle

        if suspension.kind is SuspensionKind.HUMAN:
            updated = await self._write(
                instance, status=InstanceStatus.PAUSED_FOR_HUMAN, **changes
            )
            if updated is None:
                return
            await self.audit.record(
                instance.id,
                AuditEventType.HUMAN_INPUT_REQUESTED,
                step_position=step.position,
                input=suspension.details.get("prompt"),
                data=suspension.details,
            )
            logger.info(f"Instance {instance.id} waiting on human at step {step.position}")
            await self.enqueue(
                JobKind.HUMAN_TIMEOUT,
                updated,
                step_position=step.position,
                delay=self.config.engine.human_reminder_after_seconds,
                payload={"stage": REMINDER_STAGE},
            )
            return

        updated = await self._write(
            instance, status=InstanceStatus.PAUSED_FOR_TIMER, **changes
        )
        if updated is not None:
            logger.info(
                f"Instance {instance.id} sleeping {suspension.delay_seconds:.0f}s "
                f"before step {suspension.resume_position}"
            )
            await self.enqueue(
                JobKind.ADVANCE,
                updated,
                step_position=suspension.resume_position,
                delay=suspension.delay_seconds,
            )

    # ------------------------------------------------------------------
    # terminal transitions
    async def _complete(
        self,
        instance: ProcessInstance,
        definition: ProcessDefinition,
        position: int,
    ) -> bool:
        done = await self._write(
            instance,
            status=InstanceStatus.COMPLETED,
            current_position=position,
            completed_at=utcnow(),
            claimed_by=None,
            claimed_at=None,
        )
        if done is None:
            return False
        await self.audit.record(
            instance.id,
            AuditEventType.STEP_COMPLETED,
            data={"message": "Process completed - no more steps", "position": position},
        )
        logger.info(f"Instance {instance.id} completed")
        await self._post_completion(done, definition)
        return True

    async def _terminate(
        self,
        instance: ProcessInstance,
        definition: Optional[ProcessDefinition],
        status: InstanceStatus,
        reason: str,
        changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        updated = await self._write(
            instance,
            status=status,
            error_message=reason,
            claimed_by=None,
            claimed_at=None,
            **(changes or {}),
        )
        if updated is None:
            return
        logger.warning(f"Instance {instance.id} {status.value}: {reason}")
        await self._notify_attention(updated, definition, reason)

    async def _fail_fatally(
        self,
        instance: ProcessInstance,
        definition: Optional[ProcessDefinition],
        step: Optional[StepDefinition],
        error: StepConfigurationError,
    ) -> None:
        logger.error(f"Instance {instance.id} has a configuration error: {error}")
        await self.audit.record(
            instance.id,
            AuditEventType.ERROR,
            step_position=step.position if step else None,
            data={"error": str(error), "error_type": type(error).__name__, "fatal": True},
        )
        await self._terminate(instance, definition, InstanceStatus.FAILED, str(error))

    async def _notify_attention(
        self,
        instance: ProcessInstance,
        definition: Optional[ProcessDefinition],
        reason: str,
    ) -> None:
        """Post an escalation notice and mark the instance as notified."""
        text = format_escalation(
            instance.id,
            definition.name if definition else instance.process_slug,
            instance.role,
            reason,
            instance.working_data,
        )
        try:
            await self.notifier.post_message(
                self.config.notifications.escalation_channel, text
            )
        except ExternalServiceError as e:
            logger.error(f"Could not post escalation for instance {instance.id}: {e}")
            return
        await self._write(instance, attention_notified_at=utcnow())

    async def _post_completion(
        self, instance: ProcessInstance, definition: ProcessDefinition
    ) -> None:
        if not instance.thread_handle:
            return
        await self._post_in_thread(
            instance, f":white_check_mark: Task completed: {definition.name}"
        )

    async def _post_in_thread(self, instance: ProcessInstance, text: str) -> None:
        channel = await self._channel_for(instance)
        try:
            await self.notifier.post_message(channel, text, instance.thread_handle)
        except ExternalServiceError as e:
            logger.warning(f"Could not post to thread of instance {instance.id}: {e}")

    # ------------------------------------------------------------------
    async def resume(self, instance_id: str, response_data: Mapping[str, Any]) -> bool:
        """Continue an instance paused for human input.

        The response is stored under ``human_response``. ``reject``/``cancel``
        fail the instance, ``escalate`` escalates it and every other action
        resumes at the paused step's ``on_success`` target.
        """
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            logger.warning(f"Resume requested for unknown instance {instance_id}")
            return False
        if instance.status is not InstanceStatus.PAUSED_FOR_HUMAN:
            logger.warning(
                f"Instance {instance_id} is not waiting on human (status: {instance.status.value})"
            )
            return False

        definition = await self.repository.get_definition(instance.process_slug)
        step = definition.step_at(instance.current_position) if definition else None
        action = str(response_data.get("action") or "approve")
        text = response_data.get("text")
        now = utcnow()

        stored = dict(response_data)
        stored.setdefault("action", action)
        stored.setdefault("responded_at", now.isoformat())
        updates: Dict[str, Any] = {HUMAN_RESPONSE_KEY: stored}
        if action == "edit":
            updates[HUMAN_EDIT_KEY] = text
        elif action not in _RESUME_ACTIONS | _REJECT_ACTIONS | {"escalate"}:
            updates["custom_action"] = {"action": action, "text": text}
        changes: Dict[str, Any] = {
            "working_data": instance.with_data(updates),
            "paused_at": None,
        }

        next_position: Optional[int] = None
        if action in _REJECT_ACTIONS:
            updated = await self._write(
                instance,
                status=InstanceStatus.FAILED,
                error_message=text or "Rejected by human",
                attention_notified_at=now,
                **changes,
            )
        elif action == "escalate":
            updated = await self._write(
                instance,
                status=InstanceStatus.ESCALATED,
                error_message=text or "Manual escalation by human",
                **changes,
            )
        else:
            directive = step.on_success if step else ADVANCE
            if step is not None:
                next_position = step.next_position(directive)
            else:
                next_position = instance.current_position + 1
            if next_position is None:
                updated = await self._write(
                    instance, status=InstanceStatus.COMPLETED, completed_at=now, **changes
                )
            else:
                updated = await self._write(
                    instance,
                    status=InstanceStatus.ACTIVE,
                    current_position=next_position,
                    **changes,
                )
        if updated is None:
            return False

        await self.audit.record(
            instance.id,
            AuditEventType.HUMAN_INPUT_RECEIVED,
            step_position=instance.current_position,
            input=dict(response_data),
            data={"action": action, "responded_by": response_data.get("user_id")},
        )
        logger.info(f"Instance {instance_id} received human response: {action}")

        if updated.thread_handle:
            await self._post_in_thread(updated, f":white_check_mark: Human responded: {action}")

        if updated.status is InstanceStatus.ACTIVE:
            await self.enqueue(JobKind.ADVANCE, updated, step_position=next_position)
        elif updated.status is InstanceStatus.ESCALATED:
            await self._notify_attention(updated, definition, updated.error_message or "")
        elif updated.status is InstanceStatus.COMPLETED and definition is not None:
            await self._post_completion(updated, definition)
        return True

    async def human_timeout(
        self,
        instance_id: str,
        expected_version: Optional[int] = None,
        stage: str = REMINDER_STAGE,
    ) -> bool:
        """Remind once, then treat a second silent window as a step failure."""
        instance = await self.repository.get_instance(instance_id)
        if (
            instance is None
            or instance.status is not InstanceStatus.PAUSED_FOR_HUMAN
            or (expected_version is not None and instance.version != expected_version)
        ):
            logger.info(f"Human timeout for instance {instance_id} no longer applies")
            return False

        definition = await self.repository.get_definition(instance.process_slug)
        step = definition.step_at(instance.current_position) if definition else None
        cfg = self.config.engine

        if stage == REMINDER_STAGE:
            name = definition.name if definition else instance.process_slug
            channel = await self._channel_for(instance)
            try:
                await self.notifier.post_message(
                    channel,
                    f":hourglass: Still waiting on a response for {name} (task {instance.id})",
                    instance.thread_handle,
                )
            except ExternalServiceError as e:
                logger.warning(f"Could not post reminder for instance {instance_id}: {e}")
            # bump the version so a duplicate reminder job goes stale
            updated = await self._write(instance)
            if updated is not None:
                await self.enqueue(
                    JobKind.HUMAN_TIMEOUT,
                    updated,
                    step_position=instance.current_position,
                    delay=cfg.human_give_up_after_seconds,
                    payload={"stage": GIVE_UP_STAGE},
                )
            return True

        waited = cfg.human_reminder_after_seconds + cfg.human_give_up_after_seconds
        error = f"No human response after {waited:.0f}s"
        if step is None:
            await self._terminate(instance, definition, InstanceStatus.FAILED, error)
            return True
        await self._on_failure(instance, definition, step, error)
        return True
