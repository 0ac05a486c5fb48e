"""Agent loop scheduler tests."""

from datetime import timedelta

import pytest

from sopflow.constants import ENGINE_TOPIC, SCHEDULER_TOPIC
from sopflow.contracts import JobKind
from sopflow.persistence import AuditEventType, InstanceStatus, ProcessInstance, RoleStatus, Watcher
from sopflow.persistence.models import utcnow
from sopflow.scheduler import CycleAction, SchedulerBeat

NOTIFY = [{"name": "Say hi", "step_type": "notify", "config": {"message": "hi"}, "on_success": "complete"}]


async def _pending(harness, count, priority=5, role="ops"):
    created = []
    for _ in range(count):
        instance = ProcessInstance(process_slug="proc", role=role, priority=priority)
        await harness.repository.create_instance(instance)
        created.append(instance)
    return created


@pytest.mark.asyncio
async def test_cycle_enqueues_exactly_one_instance(harness):
    await harness.add_role("ops", channel="#ops")
    await harness.define(NOTIFY, role="ops")
    created = await _pending(harness, 10)

    report = await harness.scheduler.run_cycle("ops")

    assert report.action is CycleAction.PROCESS_INSTANCE
    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert job.kind is JobKind.ADVANCE
    assert job.instance_id == created[0].id == report.instance_id

    statuses = [i.status for i in await harness.repository.list_instances(role="ops")]
    assert statuses.count(InstanceStatus.ACTIVE) == 1
    assert statuses.count(InstanceStatus.PENDING) == 9
    assert report.survey.pending == 10


@pytest.mark.asyncio
async def test_enqueued_instance_runs_on_worker(harness):
    await harness.add_role("ops")
    await harness.define(NOTIFY, role="ops")
    [instance] = await _pending(harness, 1)

    await harness.scheduler.run_cycle("ops")
    await harness.drain()

    assert (await harness.instance(instance.id)).status is InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_high_priority_first(harness):
    await harness.add_role("ops")
    await _pending(harness, 2, priority=5)
    [urgent] = await _pending(harness, 1, priority=9)

    report = await harness.scheduler.run_cycle("ops")

    assert report.instance_id == urgent.id
    assert "high-priority" in report.description
    assert report.assessment.needs_attention


@pytest.mark.asyncio
async def test_failed_instances_escalate_before_anything_else(harness):
    await harness.add_role("ops")
    await harness.define(NOTIFY, role="ops")
    failed = ProcessInstance(
        process_slug="proc", role="ops", status=InstanceStatus.FAILED, error_message="API down"
    )
    await harness.repository.create_instance(failed)
    [urgent] = await _pending(harness, 1, priority=9)

    report = await harness.scheduler.run_cycle("ops")

    assert report.action is CycleAction.ESCALATE_FAILED
    assert report.escalated_ids == [failed.id]
    assert harness.transport.pending(ENGINE_TOPIC) == []
    [escalation] = harness.notifier.in_channel("#escalations")
    assert "API down" in escalation.text
    assert (await harness.instance(failed.id)).attention_notified_at is not None

    # already escalated failures are not repeated
    report = await harness.scheduler.run_cycle("ops")
    assert report.action is CycleAction.PROCESS_INSTANCE
    assert report.instance_id == urgent.id


@pytest.mark.asyncio
async def test_old_failures_are_outside_lookback(harness):
    await harness.add_role("ops")
    old = ProcessInstance(
        process_slug="proc",
        role="ops",
        status=InstanceStatus.FAILED,
        updated_at=utcnow() - timedelta(hours=3),
    )
    await harness.repository.create_instance(old)

    report = await harness.scheduler.run_cycle("ops")

    assert report.action is CycleAction.NONE
    assert harness.notifier.in_channel("#escalations") == []


@pytest.mark.asyncio
async def test_due_watcher_runs_before_normal_pending(harness):
    await harness.add_role("ops")
    await harness.define(NOTIFY, role="ops")
    await _pending(harness, 1)
    watcher = Watcher(name="Morning digest", role="ops", process_slug="proc")
    await harness.repository.save_watcher(watcher)

    report = await harness.scheduler.run_cycle("ops")

    assert report.action is CycleAction.RUN_WATCHER
    assert report.watcher_id == watcher.id
    assert len(report.created_instance_ids) == 1
    assert harness.transport.pending(ENGINE_TOPIC) == []

    # the watcher is no longer due, so the next cycle processes pending work
    report = await harness.scheduler.run_cycle("ops")
    assert report.action is CycleAction.PROCESS_INSTANCE


@pytest.mark.asyncio
async def test_stranded_active_instance_is_recovered(harness):
    await harness.add_role("ops")
    stranded = ProcessInstance(
        process_slug="proc",
        role="ops",
        status=InstanceStatus.ACTIVE,
        current_position=2,
        updated_at=utcnow() - timedelta(hours=1),
    )
    await harness.repository.create_instance(stranded)
    recent = ProcessInstance(process_slug="proc", role="ops", status=InstanceStatus.ACTIVE)
    await harness.repository.create_instance(recent)

    report = await harness.scheduler.run_cycle("ops")

    assert report.instance_id == stranded.id
    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert job.expected_version == stranded.version


@pytest.mark.asyncio
async def test_nothing_to_do(harness):
    await harness.add_role("ops")

    report = await harness.scheduler.run_cycle("ops")

    assert report.action is CycleAction.NONE
    assert report.description == "No action needed"


@pytest.mark.asyncio
async def test_cycle_skipped_while_lock_held(harness):
    await harness.add_role("ops")
    await _pending(harness, 1)
    token = await harness.transport.acquire_lock("scheduler:ops", 60)

    report = await harness.scheduler.run_cycle("ops")

    assert report.skipped == "cycle already running"
    assert harness.transport.pending(ENGINE_TOPIC) == []
    assert (await harness.repository.get_role("ops")).last_heartbeat_at is None

    await harness.transport.release_lock("scheduler:ops", token)
    report = await harness.scheduler.run_cycle("ops")
    assert report.skipped is None
    # the cycle released its own lock
    assert await harness.transport.acquire_lock("scheduler:ops", 60) is not None


@pytest.mark.asyncio
async def test_paused_unknown_and_reactive_roles_skip(harness):
    await harness.add_role("paused", status=RoleStatus.PAUSED)
    await harness.add_role("hooks", loop_interval_seconds=None)

    assert (await harness.scheduler.run_cycle("paused")).skipped == "role paused"
    assert (await harness.scheduler.run_cycle("hooks")).skipped == "role has no loop"
    assert (await harness.scheduler.run_cycle("ghost")).skipped == "unknown role"


@pytest.mark.asyncio
async def test_report_posts_heartbeat_and_attention(harness):
    await harness.add_role("ops", channel="#ops")
    await _pending(harness, 1, priority=9)
    now = utcnow()

    await harness.scheduler.run_cycle("ops", now=now)

    role = await harness.repository.get_role("ops")
    assert role.last_heartbeat_at == now
    [heartbeat] = harness.notifier.in_channel("#ops-log")
    assert "Loop Complete" in heartbeat.text
    assert "Pending: 1" in heartbeat.text
    [attention] = harness.notifier.in_channel("#ops")
    assert "high-priority" in attention.text


@pytest.mark.asyncio
async def test_long_human_wait_is_a_concern(harness):
    await harness.add_role("ops")
    waiting = ProcessInstance(
        process_slug="proc",
        role="ops",
        status=InstanceStatus.PAUSED_FOR_HUMAN,
        paused_at=utcnow() - timedelta(hours=3),
    )
    await harness.repository.create_instance(waiting)

    report = await harness.scheduler.run_cycle("ops")

    assert report.assessment.needs_attention
    assert "waiting on human" in report.assessment.concerns[0]


@pytest.mark.asyncio
async def test_cycles_leave_memory_notes(harness):
    await harness.add_role("ops")
    await _pending(harness, 1)

    await harness.scheduler.run_cycle("ops")
    report = await harness.scheduler.run_cycle("ops")

    assert any(note.startswith("Processed task") for note in report.survey.memories)


@pytest.mark.asyncio
async def test_stale_roles(harness):
    now = utcnow()
    await harness.add_role("fresh", last_heartbeat_at=now)
    await harness.add_role("stale", last_heartbeat_at=now - timedelta(minutes=20))
    await harness.add_role("off", status=RoleStatus.DISABLED)

    stale = await harness.scheduler.stale_roles(now)

    assert [r.slug for r in stale] == ["stale"]


@pytest.mark.asyncio
async def test_scheduler_cycle_job_runs_through_worker(harness):
    await harness.add_role("ops")
    await _pending(harness, 1)
    beat = SchedulerBeat(harness.repository, harness.transport)

    await beat.tick()
    await harness.drain(SCHEDULER_TOPIC)

    assert len(harness.transport.pending(ENGINE_TOPIC)) == 1


@pytest.mark.asyncio
async def test_beat_respects_role_interval(harness):
    await harness.add_role("ops", loop_interval_seconds=300)
    await harness.add_role("paused", status=RoleStatus.PAUSED)
    beat = SchedulerBeat(harness.repository, harness.transport)
    now = utcnow()

    first = await beat.tick(now)
    assert [j.role for j in first] == ["ops"]
    assert await beat.tick(now + timedelta(seconds=10)) == []
    assert len(await beat.tick(now + timedelta(seconds=301))) == 1
    assert all(j.kind is JobKind.SCHEDULER_CYCLE for j in harness.transport.pending(SCHEDULER_TOPIC))


@pytest.mark.asyncio
async def test_cycle_prunes_expired_memory_notes(harness):
    await harness.add_role("ops")
    await harness.memory.record("ops", "Processed a lead", 5)
    await harness.memory.record("ops", "Customer X prefers email", 9)
    later = utcnow() + timedelta(days=8)

    report = await harness.scheduler.run_cycle("ops", now=later)

    assert report.action is CycleAction.NONE
    assert await harness.memory.prune_expired(later) == 0
    notes = [n.content for n in await harness.memory.top_notes("ops", 10)]
    assert "Processed a lead" not in notes
    assert "Customer X prefers email" in notes


@pytest.mark.asyncio
async def test_instance_in_retry_backoff_is_not_recovered(harness):
    await harness.add_role("ops")
    await harness.define(
        [
            {
                "name": "Look up customer",
                "step_type": "conditional_query",
                "config": {"query_type": "find"},
                "on_failure": "retry",
                "max_retries": 5,
            }
        ],
        role="ops",
    )
    instance = await harness.start(data={"customer_id": "missing"})
    await harness.drain()
    for _ in range(3):
        [job] = harness.transport.pending(ENGINE_TOPIC)
        await harness.drain(now=job.not_before)

    [job] = harness.transport.pending(ENGINE_TOPIC)
    assert (job.not_before - job.timestamp).total_seconds() >= 960
    waiting = await harness.instance(instance.id)
    assert waiting.status is InstanceStatus.ACTIVE
    assert waiting.resume_after is not None
    failures = len(await harness.events(instance.id, AuditEventType.STEP_FAILED))
    assert failures == 4

    soon = utcnow() + timedelta(seconds=901)
    report = await harness.scheduler.run_cycle("ops", now=soon)
    assert report.action is not CycleAction.PROCESS_INSTANCE
    await harness.drain(now=soon)
    assert len(await harness.events(instance.id, AuditEventType.STEP_FAILED)) == failures

    late = waiting.resume_after + timedelta(seconds=harness.config.engine.claim_lease_seconds + 1)
    report = await harness.scheduler.run_cycle("ops", now=late)
    assert report.action is CycleAction.PROCESS_INSTANCE
    assert report.instance_id == instance.id
