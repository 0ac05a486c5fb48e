"""Execution engine tests."""

import asyncio
import uuid
from datetime import timedelta

import pytest

from sopflow.constants import ENGINE_TOPIC, HUMAN_EDIT_KEY, HUMAN_RESPONSE_KEY
from sopflow.contracts import JobKind
from sopflow.engine import StepContext
from sopflow.engine.handlers import handle_schedule_followup
from sopflow.errors import DefinitionNotFound, InstanceNotFound, ProviderTransportError
from sopflow.persistence import AuditEventType, InstanceStatus
from sopflow.persistence.models import utcnow


class ExplodingData:
    async def find(self, record_id):
        raise RuntimeError("boom")


class SlowData:
    async def find(self, record_id):
        await asyncio.sleep(1)
        return {"id": record_id}


LOOKUP = {"name": "Look up customer", "step_type": "conditional_query", "config": {"query_type": "find"}}


@pytest.mark.asyncio
async def test_create_instance_requires_active_definition(harness):
    await harness.define([LOOKUP], slug="draft_only", status="draft")
    with pytest.raises(DefinitionNotFound):
        await harness.start("draft_only")
    with pytest.raises(DefinitionNotFound):
        await harness.start("unknown")


@pytest.mark.asyncio
async def test_create_instance_enqueues_first_step(harness):
    await harness.define([LOOKUP])
    instance = await harness.start(data={"customer_id": "c1"}, priority=8)

    assert instance.status is InstanceStatus.PENDING
    assert instance.priority == 8
    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert job.kind is JobKind.ADVANCE
    assert job.instance_id == instance.id
    assert job.expected_version == instance.version
    assert (await harness.engine.get_instance(instance.id)).id == instance.id
    with pytest.raises(InstanceNotFound):
        await harness.engine.get_instance("missing")


@pytest.mark.asyncio
async def test_query_find_stores_record(harness):
    await harness.define(
        [{**LOOKUP, "config": {"query_type": "find", "output_key": "customer"}, "on_success": "complete"}]
    )
    instance = await harness.start(data={"customer_id": "c1"})
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    assert stored.working_data["customer"]["name"] == "Ada"
    assert stored.working_data["customer_id"] == "c1"
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_retry_exhaustion_backs_off_then_escalates(harness):
    await harness.define([{**LOOKUP, "on_failure": "retry", "max_retries": 2}])
    instance = await harness.start(data={"customer_id": "missing"})

    await harness.drain()
    delays = []
    for _ in range(2):
        [job] = harness.transport.pending(ENGINE_TOPIC)
        delays.append((job.not_before - job.timestamp).total_seconds())
        await harness.drain(now=job.not_before)

    assert 120 <= delays[0] < 130
    assert 240 <= delays[1] < 250

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.ESCALATED
    assert stored.status.is_failed
    assert stored.attention_notified_at is not None
    assert stored.retry_counts == {0: 2}

    failures = await harness.events(instance.id, AuditEventType.STEP_FAILED)
    assert len(failures) == 3
    assert [e.data["retry_count"] for e in failures] == [0, 1, 2]
    assert harness.transport.pending(ENGINE_TOPIC) == []
    [escalation] = harness.notifier.in_channel("#escalations")
    assert instance.id in escalation.text
    assert "Record not found" in escalation.text


@pytest.mark.asyncio
async def test_failure_with_fail_directive_marks_failed(harness):
    await harness.define([LOOKUP])
    instance = await harness.start(data={"customer_id": "missing"})
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert stored.error_message == "Record not found"
    assert len(await harness.events(instance.id, AuditEventType.STEP_FAILED)) == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_executes_step_once(harness):
    await harness.define([{**LOOKUP, "on_success": "complete"}])
    instance = await harness.start(data={"customer_id": "c1"}, enqueue=False)

    results = await asyncio.gather(
        harness.engine.advance(instance.id, job_id="job-a", expected_version=instance.version),
        harness.engine.advance(instance.id, job_id="job-b", expected_version=instance.version),
    )

    assert sorted(results) == [False, True]
    assert len(await harness.events(instance.id, AuditEventType.STEP_STARTED)) == 1
    assert len(await harness.events(instance.id, AuditEventType.STEP_COMPLETED)) == 1

    # a late redelivery of the same job is a no-op too
    assert not await harness.engine.advance(
        instance.id, job_id="job-a", expected_version=instance.version
    )


@pytest.mark.asyncio
async def test_live_claim_blocks_other_jobs(harness):
    await harness.define([LOOKUP])
    instance = await harness.start(data={"customer_id": "c1"}, enqueue=False)
    claimed = await harness.repository.update_instance(
        instance.model_copy(update={"claimed_by": "job-a", "claimed_at": utcnow()}),
        expected_version=instance.version,
    )

    assert not await harness.engine.advance(
        instance.id, job_id="job-b", expected_version=claimed.version
    )
    assert await harness.events(instance.id) == []


@pytest.mark.asyncio
async def test_expired_claim_lets_same_job_rerun(harness):
    await harness.define([{**LOOKUP, "on_success": "complete"}])
    instance = await harness.start(data={"customer_id": "c1"}, enqueue=False)
    stale = utcnow() - timedelta(hours=1)
    await harness.repository.update_instance(
        instance.model_copy(
            update={"status": InstanceStatus.ACTIVE, "claimed_by": "job-a", "claimed_at": stale}
        ),
        expected_version=instance.version,
    )

    assert await harness.engine.advance(
        instance.id, job_id="job-a", expected_version=instance.version
    )
    assert (await harness.instance(instance.id)).status is InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminal_instance_ignores_advance(harness):
    await harness.define([{**LOOKUP, "on_success": "complete"}])
    instance = await harness.start(data={"customer_id": "c1"})
    await harness.drain()

    assert not await harness.engine.advance(instance.id)
    assert not await harness.engine.advance("no-such-instance")


@pytest.mark.asyncio
async def test_no_more_steps_completes(harness):
    await harness.define([LOOKUP])
    instance = await harness.start(data={"customer_id": "c1"})
    await harness.drain()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    completed = await harness.events(instance.id, AuditEventType.STEP_COMPLETED)
    assert completed[-1].step_position is None


@pytest.mark.asyncio
async def test_search_on_empty_goto_skips_step(harness):
    await harness.define(
        [
            {
                "name": "Find contacted",
                "step_type": "conditional_query",
                "config": {"query_type": "search", "filters": {"status": "{{ wanted }}"}},
                "on_empty": 2,
            },
            {"name": "Announce", "step_type": "notify", "config": {"message": "found some"}},
            {"name": "Wrap up", "step_type": "notify", "config": {"message": "nothing for {{ wanted }}"}, "on_success": "complete"},
        ]
    )
    instance = await harness.start(data={"wanted": "contacted"})
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    assert stored.working_data["query_count"] == 0
    texts = [m.text for m in harness.notifier.messages]
    assert "found some" not in texts
    assert "nothing for contacted" in texts


@pytest.mark.asyncio
async def test_search_results_are_stored(harness):
    await harness.define(
        [
            {
                "name": "Find new",
                "step_type": "conditional_query",
                "config": {"query_type": "search", "filters": {"status": "new"}, "output_key": "leads"},
                "on_empty": "complete",
                "on_success": "complete",
            }
        ]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.working_data["query_count"] == 2
    assert {r["id"] for r in stored.working_data["leads"]} == {"c1", "c2"}


@pytest.mark.asyncio
async def test_external_calls_send_message_and_update_record(harness):
    await harness.define(
        [
            {
                "name": "Send welcome",
                "step_type": "external_call",
                "config": {
                    "service": "messaging",
                    "action": "send",
                    "to": "{{ email }}",
                    "template": "welcome",
                    "variables": {"greeting": "Hi {{ name }}"},
                },
            },
            {
                "name": "Mark contacted",
                "step_type": "external_call",
                "config": {
                    "service": "data",
                    "action": "update",
                    "attributes": {"status": "contacted"},
                    "output_key": "customer",
                },
                "on_success": "complete",
            },
        ]
    )
    instance = await harness.start(
        data={"customer_id": "c1", "email": "ada@example.com", "name": "Ada"}
    )
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    [sent] = harness.messaging.sent
    assert sent.recipient == "ada@example.com"
    assert sent.template_id == "welcome"
    assert sent.variables["greeting"] == "Hi Ada"
    assert stored.working_data["message_sent"] is True
    assert stored.working_data["message_id"] == sent.message_id
    assert stored.working_data["customer"]["status"] == "contacted"
    assert (await harness.data.find("c1"))["status"] == "contacted"
    assert len(await harness.events(instance.id, AuditEventType.EXTERNAL_CALL_MADE)) == 2


@pytest.mark.asyncio
async def test_configuration_error_is_fatal(harness):
    await harness.define(
        [{"name": "Broken", "step_type": "conditional_query", "config": {"query_type": "bogus"}, "on_failure": "retry"}]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert "Unknown query type" in stored.error_message
    [error] = await harness.events(instance.id, AuditEventType.ERROR)
    assert error.data["fatal"] is True
    assert await harness.events(instance.id, AuditEventType.STEP_FAILED) == []
    assert harness.transport.pending(ENGINE_TOPIC) == []
    assert len(harness.notifier.in_channel("#escalations")) == 1


@pytest.mark.asyncio
async def test_missing_prompt_is_fatal(harness):
    await harness.define([{"name": "Classify", "step_type": "classify"}])
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert "prompt_template" in stored.error_message


@pytest.mark.asyncio
async def test_unexpected_error_fails_instance_and_reraises(harness):
    await harness.define([LOOKUP])
    instance = await harness.start(data={"customer_id": "c1"}, enqueue=False)
    harness.engine.data = ExplodingData()

    with pytest.raises(RuntimeError, match="boom"):
        await harness.engine.advance(instance.id)

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert stored.error_message == "boom"
    assert stored.claimed_by is None
    [error] = await harness.events(instance.id, AuditEventType.ERROR)
    assert error.data["error_type"] == "RuntimeError"
    assert len(harness.notifier.in_channel("#escalations")) == 1


@pytest.mark.asyncio
async def test_step_timeout_is_a_failure(harness):
    await harness.define([{**LOOKUP, "timeout_seconds": 0.05}])
    instance = await harness.start(data={"customer_id": "c1"})
    harness.engine.data = SlowData()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    [failure] = await harness.events(instance.id, AuditEventType.STEP_FAILED)
    assert "timed out" in failure.data["error"]


@pytest.mark.asyncio
async def test_decision_step_records_output_and_confidence(harness):
    harness.provider.script("tier-1", harness.answer("hot", 0.92))
    await harness.define(
        [
            {
                "name": "Classify lead",
                "step_type": "classify",
                "config": {"prompt_template": "Classify: {{ message }}", "output_key": "category"},
                "on_success": "complete",
            }
        ]
    )
    instance = await harness.start(data={"message": "Need 40 seats by Friday"})
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    assert stored.working_data["category"] == "hot"
    assert stored.working_data["step_0_confidence"] == pytest.approx(0.92)
    assert harness.provider.calls == [("tier-1", "Classify: Need 40 seats by Friday")]
    [completed] = await harness.events(instance.id, AuditEventType.STEP_COMPLETED)
    assert completed.tier == 1


@pytest.mark.asyncio
async def test_uncertain_decision_at_max_tier_escalates(harness):
    harness.provider.script("tier-1", harness.answer("maybe", 0.4))
    harness.provider.script("tier-2", harness.answer("perhaps", 0.5))
    await harness.define(
        [
            {
                "name": "Decide",
                "step_type": "decide",
                "config": {"prompt_template": "Should we refund?"},
                "min_tier": 1,
                "max_tier": 2,
            }
        ]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.ESCALATED
    assert "step_0_result" not in stored.working_data
    assert stored.working_data["step_0_uncertain_result"]["step_0_result"] == "perhaps"
    [note] = await harness.events(instance.id, AuditEventType.NOTE)
    assert note.data["uncertain"] is True
    assert note.tier == 2
    assert len(await harness.events(instance.id, AuditEventType.DECISION_CALL)) == 2
    assert len(harness.notifier.in_channel("#escalations")) == 1


@pytest.mark.asyncio
async def test_uncertain_decision_can_route_to_goto(harness):
    harness.provider.script("tier-1", harness.answer("unsure", 0.3))
    await harness.define(
        [
            {
                "name": "Classify",
                "step_type": "classify",
                "config": {"prompt_template": "Classify"},
                "on_uncertain": 2,
            },
            {"name": "Auto reply", "step_type": "notify", "config": {"message": "auto"}},
            {"name": "Manual review", "step_type": "notify", "config": {"message": "manual"}, "on_success": "complete"},
        ]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    assert [m.text for m in harness.notifier.messages][0] == "manual"
    assert "step_0_result" not in stored.working_data
    assert stored.working_data["step_0_uncertain_result"]["step_0_result"] == "unsure"


@pytest.mark.asyncio
async def test_provider_exhaustion_is_a_step_failure(harness):
    harness.provider.script("tier-1", ProviderTransportError("rate limited"))
    await harness.define(
        [{"name": "Classify", "step_type": "classify", "config": {"prompt_template": "Classify"}}]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    [failure] = await harness.events(instance.id, AuditEventType.STEP_FAILED)
    assert "rate limited" in failure.data["error"]


@pytest.mark.asyncio
async def test_tier_override_raises_starting_tier(harness):
    await harness.define(
        [
            {
                "name": "Draft",
                "step_type": "draft_content",
                "config": {"prompt_template": "Draft"},
                "min_tier": 1,
                "max_tier": 3,
                "on_success": "complete",
            }
        ]
    )
    instance = await harness.start(enqueue=False)
    await harness.repository.update_instance(
        instance.model_copy(update={"tier_overrides": {0: 2}}),
        expected_version=instance.version,
    )
    await harness.engine.advance(instance.id)

    assert [model for model, _ in harness.provider.calls] == ["tier-2"]
    assert (await harness.instance(instance.id)).tier_overrides == {}


@pytest.mark.asyncio
async def test_human_input_pauses_and_resumes(harness):
    await harness.define(
        [
            {
                "name": "Approve draft",
                "step_type": "request_human_input",
                "config": {"prompt": "Approve reply to {{ name }}?"},
            },
            {"name": "Done", "step_type": "notify", "config": {"message": "sent"}, "on_success": "complete"},
        ]
    )
    instance = await harness.start(data={"name": "Ada"})
    await harness.drain()

    paused = await harness.instance(instance.id)
    assert paused.status is InstanceStatus.PAUSED_FOR_HUMAN
    assert paused.paused_at is not None
    [prompt] = harness.notifier.messages
    assert prompt.text == "Approve reply to Ada?"
    assert prompt.callback_id == f"task_{instance.id}_step_0"
    assert [o.value for o in prompt.options] == ["approve", "reject"]
    assert paused.thread_handle == prompt.handle
    [timeout_job] = harness.transport.pending(ENGINE_TOPIC)
    assert timeout_job.kind is JobKind.HUMAN_TIMEOUT

    assert await harness.engine.resume(instance.id, {"action": "approve", "user_id": "U1"})
    await harness.drain()

    done = await harness.instance(instance.id)
    assert done.status is InstanceStatus.COMPLETED
    assert done.working_data[HUMAN_RESPONSE_KEY]["action"] == "approve"
    assert done.working_data[HUMAN_RESPONSE_KEY]["user_id"] == "U1"
    [received] = await harness.events(instance.id, AuditEventType.HUMAN_INPUT_RECEIVED)
    assert received.data["responded_by"] == "U1"

    # second response and the stale reminder are both ignored
    assert not await harness.engine.resume(instance.id, {"action": "approve"})
    await harness.flush()
    assert (await harness.instance(instance.id)).status is InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_human_edit_is_stored(harness):
    await harness.define(
        [
            {"name": "Review", "step_type": "request_human_input", "config": {"prompt": "Review"}, "on_success": "complete"},
        ]
    )
    instance = await harness.start()
    await harness.drain()

    await harness.engine.resume(instance.id, {"action": "edit", "text": "Better wording"})

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETED
    assert stored.working_data[HUMAN_EDIT_KEY] == "Better wording"


@pytest.mark.asyncio
async def test_human_reject_fails_without_new_escalation(harness):
    await harness.define(
        [{"name": "Review", "step_type": "request_human_input", "config": {"prompt": "Review"}}]
    )
    instance = await harness.start()
    await harness.drain()

    await harness.engine.resume(instance.id, {"action": "reject", "text": "Wrong customer"})

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert stored.error_message == "Wrong customer"
    assert stored.attention_notified_at is not None
    assert harness.notifier.in_channel("#escalations") == []


@pytest.mark.asyncio
async def test_human_escalate_notifies(harness):
    await harness.define(
        [{"name": "Review", "step_type": "request_human_input", "config": {"prompt": "Review"}}]
    )
    instance = await harness.start()
    await harness.drain()

    await harness.engine.resume(instance.id, {"action": "escalate"})

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.ESCALATED
    assert stored.attention_notified_at is not None
    assert len(harness.notifier.in_channel("#escalations")) == 1


@pytest.mark.asyncio
async def test_human_timeout_reminds_then_gives_up(harness):
    await harness.define(
        [{"name": "Review", "step_type": "request_human_input", "config": {"prompt": "Review"}}]
    )
    instance = await harness.start()
    await harness.drain()
    await harness.flush()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert "No human response" in stored.error_message
    reminders = [m for m in harness.notifier.messages if m.text.startswith(":hourglass:")]
    assert len(reminders) == 1
    assert reminders[0].thread_handle == stored.thread_handle
    assert len(await harness.events(instance.id, AuditEventType.STEP_FAILED)) == 1


@pytest.mark.asyncio
async def test_human_timeout_with_stale_version_is_ignored(harness):
    await harness.define(
        [{"name": "Review", "step_type": "request_human_input", "config": {"prompt": "Review"}}]
    )
    instance = await harness.start()
    await harness.drain()
    paused = await harness.instance(instance.id)

    assert not await harness.engine.human_timeout(instance.id, paused.version - 1)
    assert await harness.engine.human_timeout(instance.id, paused.version)


@pytest.mark.asyncio
async def test_wait_step_sleeps_then_continues(harness):
    await harness.define(
        [
            {"name": "Cool down", "step_type": "wait", "config": {"duration_seconds": 30}},
            {"name": "Follow up", "step_type": "notify", "config": {"message": "checking in"}, "on_success": "complete"},
        ]
    )
    instance = await harness.start()
    await harness.drain()

    sleeping = await harness.instance(instance.id)
    assert sleeping.status is InstanceStatus.PAUSED_FOR_TIMER
    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert job.step_position == 1
    assert 30 <= (job.not_before - job.timestamp).total_seconds() < 35

    await harness.flush()
    assert (await harness.instance(instance.id)).status is InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_schedule_followup_delay_uses_minutes(harness):
    await harness.define(
        [
            {"name": "Later", "step_type": "schedule_followup", "config": {"delay_minutes": 2}},
        ]
    )
    instance = await harness.start()
    await harness.drain()

    assert (await harness.instance(instance.id)).status is InstanceStatus.PAUSED_FOR_TIMER
    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert 120 <= (job.not_before - job.timestamp).total_seconds() < 125


@pytest.mark.asyncio
async def test_sub_process_child_is_deterministic(harness):
    await harness.define(
        [{"name": "Nurture", "step_type": "notify", "config": {"message": "nurturing {{ name }}"}}],
        slug="nurture",
    )
    definition = await harness.define(
        [
            {
                "name": "Spawn nurture",
                "step_type": "schedule_followup",
                "config": {"process_slug": "nurture", "context_override": {"source": "parent"}},
            }
        ],
        slug="parent",
    )
    parent = await harness.start("parent", {"name": "Ada"}, enqueue=False)

    ctx = StepContext(harness.engine, definition, definition.steps[0], parent, None, "job-1")
    first = await handle_schedule_followup(ctx)
    second = await handle_schedule_followup(ctx)

    expected = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{parent.id}/job-1/0"))
    assert first.output == {"step_0_child_id": expected}
    assert second.output == first.output
    children = [
        i for i in await harness.repository.list_instances() if i.parent_id == parent.id
    ]
    assert [c.id for c in children] == [expected]
    assert children[0].status is InstanceStatus.PENDING
    assert children[0].working_data == {"name": "Ada", "source": "parent"}


@pytest.mark.asyncio
async def test_sub_process_runs_to_completion(harness):
    await harness.define(
        [{"name": "Nurture", "step_type": "notify", "config": {"message": "nurturing"}, "on_success": "complete"}],
        slug="nurture",
    )
    await harness.define(
        [{"name": "Spawn", "step_type": "schedule_followup", "config": {"process_slug": "nurture"}, "on_success": "complete"}],
        slug="parent",
    )
    parent = await harness.start("parent")
    await harness.drain()

    stored = await harness.instance(parent.id)
    child = await harness.instance(stored.working_data["step_0_child_id"])
    assert stored.status is InstanceStatus.COMPLETED
    assert child.status is InstanceStatus.COMPLETED
    assert child.parent_id == parent.id


@pytest.mark.asyncio
async def test_sub_process_requires_active_definition(harness):
    await harness.define(
        [{"name": "Spawn", "step_type": "schedule_followup", "config": {"process_slug": "missing"}}],
        slug="parent",
    )
    parent = await harness.start("parent")
    await harness.drain()

    stored = await harness.instance(parent.id)
    assert stored.status is InstanceStatus.FAILED
    assert "missing" in stored.error_message


@pytest.mark.asyncio
async def test_notify_failure_is_step_failure(harness):
    harness.notifier.failing_channels.add("#sales")
    await harness.define(
        [{"name": "Tell sales", "step_type": "notify", "config": {"message": "hi", "channel": "#sales"}}]
    )
    instance = await harness.start()
    await harness.drain()

    stored = await harness.instance(instance.id)
    assert stored.status is InstanceStatus.FAILED
    assert "channel_not_found" in stored.error_message


@pytest.mark.asyncio
async def test_notify_uses_role_channel(harness):
    await harness.add_role("sales", channel="#sales")
    await harness.define(
        [{"name": "Tell sales", "step_type": "notify", "config": {"message": "hi"}, "on_success": "complete"}],
        role="sales",
    )
    instance = await harness.start()
    await harness.drain()

    assert [m.channel for m in harness.notifier.messages] == ["#sales", "#sales"]
    stored = await harness.instance(instance.id)
    assert stored.thread_handle == harness.notifier.messages[0].handle
    assert harness.notifier.messages[1].thread_handle == stored.thread_handle
