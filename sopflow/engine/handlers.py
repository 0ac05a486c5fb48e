"""Step handlers, one per :class:`StepType`.

Handlers return a :class:`StepOutcome`. Failures of external collaborators
become failure outcomes; configuration problems raise
:class:`StepConfigurationError`, which the engine treats as fatal.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from ..contracts import (
    JobKind,
    ProcessDefinition,
    StepDefinition,
    StepType,
)
from ..errors import (
    DecisionExhaustedError,
    ExternalServiceError,
    StepConfigurationError,
)
from ..integrations import DEFAULT_APPROVAL_OPTIONS, InteractiveOption, callback_id_for
from ..persistence import AuditEventType, InstanceStatus, ProcessInstance, WorkerRole
from ..templating import interpolate, interpolate_values
from .outcomes import StepOutcome, Suspension, SuspensionKind

if TYPE_CHECKING:
    from .engine import TaskExecutionEngine

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    engine: "TaskExecutionEngine"
    definition: ProcessDefinition
    step: StepDefinition
    instance: ProcessInstance
    role: Optional[WorkerRole]
    job_id: str

    @property
    def config(self) -> Dict[str, Any]:
        return self.step.config

    @property
    def data(self) -> Dict[str, Any]:
        return self.instance.working_data

    def channel(self) -> str:
        return (
            self.config.get("channel")
            or (self.role.channel if self.role else None)
            or self.engine.config.notifications.ops_channel
        )


StepHandler = Callable[[StepContext], Awaitable[StepOutcome]]


def _record_id(ctx: StepContext) -> Any:
    id_key = ctx.config.get("id_key", "customer_id")
    record_id = ctx.data.get(id_key)
    if record_id is None:
        raise ExternalServiceError(f"Working data has no '{id_key}'")
    return record_id


async def handle_conditional_query(ctx: StepContext) -> StepOutcome:
    query_type = ctx.config.get("query_type")
    data_service = ctx.engine.data
    try:
        if query_type == "find":
            record = await data_service.find(_record_id(ctx))
            if record is None:
                if ctx.step.on_empty is not None:
                    return StepOutcome.success(directive=ctx.step.on_empty)
                return StepOutcome.failure("Record not found")
            return StepOutcome.success({ctx.config.get("output_key", "record"): record})

        if query_type == "search":
            filters = interpolate_values(ctx.config.get("filters") or {}, ctx.data)
            records = await data_service.query(filters)
            output = {
                ctx.config.get("output_key", "query_results"): records,
                "query_count": len(records),
            }
            if not records and ctx.step.on_empty is not None:
                return StepOutcome.success(output, directive=ctx.step.on_empty)
            return StepOutcome.success(output)
    except ExternalServiceError as e:
        return StepOutcome.failure(str(e))

    raise StepConfigurationError(f"Unknown query type: {query_type}")


async def handle_external_call(ctx: StepContext) -> StepOutcome:
    service = ctx.config.get("service")
    action = ctx.config.get("action")
    engine = ctx.engine

    try:
        if service == "messaging" and action == "send":
            recipient = interpolate(ctx.config.get("to") or "", ctx.data)
            template_id = ctx.config.get("template")
            if not recipient or not template_id:
                raise StepConfigurationError("messaging.send needs 'to' and 'template'")
            variables = dict(ctx.data)
            variables.update(interpolate_values(ctx.config.get("variables") or {}, ctx.data))
            message_id = await engine.messaging.send_templated(
                recipient, template_id, variables
            )
            await engine.audit.record(
                ctx.instance.id,
                AuditEventType.EXTERNAL_CALL_MADE,
                step_position=ctx.step.position,
                input={"service": service, "action": action, "to": recipient},
                output={"message_id": message_id},
            )
            return StepOutcome.success({"message_sent": True, "message_id": message_id})

        if service == "data" and action == "update":
            record_id = _record_id(ctx)
            attrs = interpolate_values(ctx.config.get("attributes") or {}, ctx.data)
            record = await engine.data.update(record_id, attrs)
            await engine.audit.record(
                ctx.instance.id,
                AuditEventType.EXTERNAL_CALL_MADE,
                step_position=ctx.step.position,
                input={"service": service, "action": action, "id": record_id},
                output=attrs,
            )
            output_key = ctx.config.get("output_key")
            return StepOutcome.success({output_key: record} if output_key else {})
    except ExternalServiceError as e:
        return StepOutcome.failure(str(e))

    raise StepConfigurationError(f"Unknown external call: {service}.{action}")


async def handle_decision(ctx: StepContext) -> StepOutcome:
    prompt = ctx.step.prompt_template
    if not prompt:
        raise StepConfigurationError(f"Step {ctx.step.position} has no prompt_template")

    position = ctx.step.position
    max_tier = ctx.definition.effective_max_tier(ctx.step)
    min_tier = min(
        max(ctx.step.min_tier, ctx.instance.tier_overrides.get(position, ctx.step.min_tier)),
        max_tier,
    )
    system_prompt = ctx.config.get("system_prompt") or (
        f"You are assisting with: {ctx.step.name}. Respond with JSON including "
        "'response' and 'confidence' (0.0-1.0)."
    )

    try:
        result = await ctx.engine.router.decide(
            prompt,
            ctx.data,
            min_tier,
            max_tier,
            system_prompt=system_prompt,
            instance_id=ctx.instance.id,
            step_position=position,
        )
    except DecisionExhaustedError as e:
        return StepOutcome.failure(str(e))

    output = {
        ctx.config.get("output_key") or f"step_{position}_result": result.output,
        f"step_{position}_confidence": result.confidence,
    }
    if result.uncertain:
        return StepOutcome.uncertain(output, result)
    return StepOutcome.success(output, decision=result)


async def handle_notify(ctx: StepContext) -> StepOutcome:
    template = ctx.config.get("message")
    if not template:
        raise StepConfigurationError(f"Step {ctx.step.position} has no message")
    text = interpolate(template, ctx.data)
    try:
        handle = await ctx.engine.notifier.post_message(
            ctx.channel(), text, ctx.instance.thread_handle
        )
    except ExternalServiceError as e:
        return StepOutcome.failure(str(e))
    # the first post opens the instance's thread
    thread = handle if ctx.instance.thread_handle is None else None
    return StepOutcome.success(thread_handle=thread)


async def handle_request_human_input(ctx: StepContext) -> StepOutcome:
    template = ctx.config.get("prompt")
    if not template:
        raise StepConfigurationError(f"Step {ctx.step.position} has no prompt")
    text = interpolate(template, ctx.data)
    options = [
        InteractiveOption.model_validate(o) for o in ctx.config.get("options") or []
    ] or DEFAULT_APPROVAL_OPTIONS

    try:
        handle = await ctx.engine.notifier.post_interactive(
            ctx.channel(),
            text,
            options,
            thread_handle=ctx.instance.thread_handle,
            callback_id=callback_id_for(ctx.instance.id, ctx.step.position),
        )
    except ExternalServiceError as e:
        return StepOutcome.failure(str(e))

    return StepOutcome.suspended(
        Suspension(
            kind=SuspensionKind.HUMAN,
            details={"prompt": text, "options": [o.value for o in options]},
        ),
        thread_handle=handle if ctx.instance.thread_handle is None else None,
    )


def _delay_seconds(config: Dict[str, Any], minutes_key: str, default_minutes: float) -> float:
    if "delay_seconds" in config:
        return float(config["delay_seconds"])
    return float(config.get(minutes_key, default_minutes)) * 60


async def _spawn_child(ctx: StepContext, slug: str) -> StepOutcome:
    engine = ctx.engine
    child_definition = await engine.repository.get_definition(slug)
    if child_definition is None or not child_definition.is_active:
        raise StepConfigurationError(f"Process definition not found or inactive: {slug}")

    # same parent, job and step always map to the same child
    child_id = str(
        uuid.uuid5(uuid.NAMESPACE_URL, f"{ctx.instance.id}/{ctx.job_id}/{ctx.step.position}")
    )
    working_data = dict(ctx.data)
    working_data.update(ctx.config.get("context_override") or {})
    child = ProcessInstance(
        id=child_id,
        process_slug=child_definition.slug,
        process_version=child_definition.version,
        role=child_definition.role or ctx.instance.role,
        status=InstanceStatus.PENDING,
        current_position=child_definition.first_position,
        working_data=working_data,
        priority=ctx.config.get("priority", ctx.instance.priority),
        parent_id=ctx.instance.id,
    )
    created = await engine.repository.create_instance(child)
    if created:
        logger.info(f"Instance {ctx.instance.id} spawned child {child_id} ({slug})")
    else:
        child = await engine.repository.get_instance(child_id) or child
    await engine.enqueue(JobKind.ADVANCE, child)
    key = ctx.config.get("output_key") or f"step_{ctx.step.position}_child_id"
    return StepOutcome.success({key: child_id})


async def handle_schedule_followup(ctx: StepContext) -> StepOutcome:
    slug = ctx.config.get("process_slug")
    if slug:
        return await _spawn_child(ctx, slug)
    if "delay_minutes" in ctx.config or "delay_seconds" in ctx.config:
        return StepOutcome.suspended(
            Suspension(
                kind=SuspensionKind.TIMER,
                delay_seconds=_delay_seconds(ctx.config, "delay_minutes", 0),
                resume_position=ctx.step.position + 1,
            )
        )
    raise StepConfigurationError("schedule_followup needs 'process_slug' or a delay")


async def handle_wait(ctx: StepContext) -> StepOutcome:
    cfg = dict(ctx.config)
    if "duration_seconds" in cfg:
        cfg["delay_seconds"] = cfg["duration_seconds"]
    return StepOutcome.suspended(
        Suspension(
            kind=SuspensionKind.TIMER,
            delay_seconds=_delay_seconds(cfg, "duration_minutes", 5),
            resume_position=ctx.step.position + 1,
        )
    )


STEP_HANDLERS: Dict[StepType, StepHandler] = {
    StepType.CONDITIONAL_QUERY: handle_conditional_query,
    StepType.EXTERNAL_CALL: handle_external_call,
    StepType.CLASSIFY: handle_decision,
    StepType.DRAFT_CONTENT: handle_decision,
    StepType.DECIDE: handle_decision,
    StepType.ANALYZE: handle_decision,
    StepType.NOTIFY: handle_notify,
    StepType.REQUEST_HUMAN_INPUT: handle_request_human_input,
    StepType.SCHEDULE_FOLLOWUP: handle_schedule_followup,
    StepType.WAIT: handle_wait,
}

_unhandled = set(StepType) - set(STEP_HANDLERS)
if _unhandled:  # pragma: no cover - guards new enum members
    raise RuntimeError(f"Step types without a handler: {sorted(t.value for t in _unhandled)}")
