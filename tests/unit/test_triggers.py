"""Watcher trigger tests."""

import pytest

from sopflow.constants import ENGINE_TOPIC
from sopflow.persistence import InstanceStatus, RoleStatus, Watcher, WatcherType
from sopflow.persistence.models import utcnow

NOTIFY = [{"name": "Say hi", "step_type": "notify", "config": {"message": "hi"}}]


@pytest.mark.asyncio
async def test_schedule_watcher_creates_pending_instance(harness):
    await harness.define(NOTIFY, slug="digest")
    watcher = Watcher(
        name="Daily digest",
        role="ops",
        process_slug="digest",
        check_config={"context": {"report": "daily"}, "priority": 6},
    )
    now = utcnow()

    [created] = await harness.triggers.check(watcher, now)

    assert created.status is InstanceStatus.PENDING
    assert created.role == "ops"
    assert created.priority == 6
    assert created.working_data["report"] == "daily"
    assert created.working_data["triggered_by"] == "schedule"
    assert created.working_data["watcher_id"] == watcher.id
    assert harness.transport.pending(ENGINE_TOPIC) == []
    saved = await harness.repository.get_watcher(watcher.id)
    assert saved.last_checked_at == now


@pytest.mark.asyncio
async def test_inbound_messages_become_instances(harness):
    await harness.define(NOTIFY, slug="lead_response")
    inbox = Watcher(
        name="Sales inbox",
        role="sales",
        process_slug="lead_response",
        check_type=WatcherType.INBOUND_MESSAGE,
        check_config={"source": "email"},
    )
    other = Watcher(
        name="Chat",
        role="sales",
        process_slug="lead_response",
        check_type=WatcherType.INBOUND_MESSAGE,
        check_config={"source": "chat"},
    )
    await harness.repository.save_watcher(inbox)
    await harness.repository.save_watcher(other)

    delivered = await harness.triggers.ingest_inbound_message(
        {"source": "email", "from": "ada@example.com", "subject": "Pricing", "headers": {"x": 1}}
    )
    assert delivered == 1

    stored = await harness.repository.get_watcher(inbox.id)
    [created] = await harness.triggers.check(stored)

    assert created.working_data["message_from"] == "ada@example.com"
    assert created.working_data["message_subject"] == "Pricing"
    assert "message_headers" not in created.working_data
    assert created.working_data["inbound_message"]["headers"] == {"x": 1}
    assert (await harness.repository.get_watcher(inbox.id)).state["inbox"] == []
    assert await harness.triggers.check(await harness.repository.get_watcher(inbox.id)) == []


@pytest.mark.asyncio
async def test_message_ingested_after_watcher_load_is_not_lost(harness):
    await harness.define(NOTIFY, slug="lead_response")
    watcher = Watcher(
        name="Sales inbox",
        role="sales",
        process_slug="lead_response",
        check_type=WatcherType.INBOUND_MESSAGE,
    )
    await harness.repository.save_watcher(watcher)
    await harness.triggers.ingest_inbound_message({"subject": "first"})
    loaded = await harness.repository.get_watcher(watcher.id)
    await harness.triggers.ingest_inbound_message({"subject": "second"})

    created = await harness.triggers.check(loaded)

    subjects = sorted(i.working_data["message_subject"] for i in created)
    assert subjects == ["first", "second"]
    stored = await harness.repository.get_watcher(watcher.id)
    assert stored.state["inbox"] == []
    assert stored.version == loaded.version + 2


@pytest.mark.asyncio
async def test_inbound_message_without_watchers(harness):
    assert await harness.triggers.ingest_inbound_message({"source": "email"}) == 0


@pytest.mark.asyncio
async def test_data_condition_only_triggers_new_records(harness):
    await harness.define(NOTIFY, slug="welcome")
    watcher = Watcher(
        name="New signups",
        role="ops",
        process_slug="welcome",
        check_type=WatcherType.DATA_CONDITION,
        check_config={"filters": {"status": "new"}},
    )

    created = await harness.triggers.check(watcher)
    assert sorted(i.working_data["record_id"] for i in created) == ["c1", "c2"]

    again = await harness.triggers.check(await harness.repository.get_watcher(watcher.id))
    assert again == []


@pytest.mark.asyncio
async def test_inactive_definition_keeps_watcher_state(harness):
    await harness.define(NOTIFY, slug="lead_response", status="disabled")
    watcher = Watcher(
        name="Sales inbox",
        role="sales",
        process_slug="lead_response",
        check_type=WatcherType.INBOUND_MESSAGE,
        state={"inbox": [{"from": "ada@example.com"}]},
    )

    assert await harness.triggers.check(watcher) == []

    saved = await harness.repository.get_watcher(watcher.id)
    assert saved.state["inbox"] == [{"from": "ada@example.com"}]
    assert saved.last_checked_at is not None


@pytest.mark.asyncio
async def test_paused_watcher_is_skipped(harness):
    await harness.define(NOTIFY, slug="digest")
    watcher = Watcher(name="w", role="ops", process_slug="digest", status=RoleStatus.PAUSED)

    assert await harness.triggers.check(watcher) == []
    assert await harness.repository.get_watcher(watcher.id) is None
