"""Data models for persisted process state."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from ..errors import WorkingDataViolation


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED_FOR_HUMAN = "paused_for_human"
    PAUSED_FOR_TIMER = "paused_for_timer"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"

    @property
    def is_advanceable(self) -> bool:
        return self in ADVANCEABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failed(self) -> bool:
        """Failed and escalated instances both need a human."""
        return self in (InstanceStatus.FAILED, InstanceStatus.ESCALATED)


ADVANCEABLE_STATUSES = frozenset(
    {InstanceStatus.PENDING, InstanceStatus.ACTIVE, InstanceStatus.PAUSED_FOR_TIMER}
)
TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.ESCALATED}
)
OPEN_STATUSES = frozenset(InstanceStatus) - TERMINAL_STATUSES


def merge_working_data(
    current: Mapping[str, Any], updates: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Merge ``updates`` into ``current`` without ever dropping a key."""
    merged = dict(current)
    if updates:
        merged.update(updates)
    return merged


def ensure_append_only(previous: Mapping[str, Any], proposed: Mapping[str, Any]) -> None:
    """Raise :class:`WorkingDataViolation` if ``proposed`` lost any key."""
    missing = set(previous) - set(proposed)
    if missing:
        raise WorkingDataViolation(missing)


class ProcessInstance(BaseModel):
    """One running or finished execution of a process definition."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    process_slug: str
    process_version: int = 1
    role: Optional[str] = None
    status: InstanceStatus = InstanceStatus.PENDING
    current_position: int = 0
    working_data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    parent_id: Optional[str] = None
    thread_handle: Optional[str] = None
    error_message: Optional[str] = None

    # engine-owned bookkeeping
    version: int = 1
    retry_counts: Dict[int, int] = Field(default_factory=dict)
    tier_overrides: Dict[int, int] = Field(default_factory=dict)
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    resume_after: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    attention_notified_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def with_data(self, updates: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        return merge_working_data(self.working_data, updates)

    def claim_expired(self, lease_seconds: float, now: Optional[datetime] = None) -> bool:
        if self.claimed_by is None or self.claimed_at is None:
            return True
        now = now or utcnow()
        return self.claimed_at + timedelta(seconds=lease_seconds) <= now

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds(), 2)


class AuditEventType(str, enum.Enum):
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    DECISION_CALL = "decision_call"
    DECISION_ESCALATED = "decision_escalated"
    HUMAN_INPUT_REQUESTED = "human_input_requested"
    HUMAN_INPUT_RECEIVED = "human_input_received"
    EXTERNAL_CALL_MADE = "external_call_made"
    ERROR = "error"
    NOTE = "note"


DECISION_EVENT_TYPES = frozenset(
    {AuditEventType.DECISION_CALL, AuditEventType.DECISION_ESCALATED}
)


class AuditEvent(BaseModel):
    """Immutable audit record tied to an instance and optionally a step."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    instance_id: str
    event_type: AuditEventType
    step_position: Optional[int] = None
    tier: Optional[int] = None
    model: Optional[str] = None
    tokens_in: Optional[int] = Field(default=None, ge=0)
    tokens_out: Optional[int] = Field(default=None, ge=0)
    latency_ms: Optional[int] = Field(default=None, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    input_summary: Optional[str] = None
    output_summary: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class RoleStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class WorkerRole(BaseModel):
    """Named unit of responsibility driven by its own scheduler cycle."""

    slug: str
    name: str
    channel: Optional[str] = None
    status: RoleStatus = RoleStatus.ACTIVE
    loop_interval_seconds: Optional[float] = 300
    last_heartbeat_at: Optional[datetime] = None

    @property
    def has_loop(self) -> bool:
        return self.loop_interval_seconds is not None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True when no heartbeat was seen for more than two intervals."""
        if not self.has_loop or self.status is not RoleStatus.ACTIVE:
            return False
        if self.last_heartbeat_at is None:
            return True
        now = now or utcnow()
        window = timedelta(seconds=2 * (self.loop_interval_seconds or 0))
        return now - self.last_heartbeat_at > window


class WatcherType(str, enum.Enum):
    SCHEDULE = "schedule"
    INBOUND_MESSAGE = "inbound_message"
    DATA_CONDITION = "data_condition"


class Watcher(BaseModel):
    """Periodic check turning an external condition into new instances."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    role: str
    process_slug: str
    check_type: WatcherType = WatcherType.SCHEDULE
    interval_minutes: int = Field(default=15, gt=0)
    check_config: Dict[str, Any] = Field(default_factory=dict)
    status: RoleStatus = RoleStatus.ACTIVE
    last_checked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    state: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.status is not RoleStatus.ACTIVE:
            return False
        if self.last_checked_at is None:
            return True
        now = now or utcnow()
        return self.last_checked_at + timedelta(minutes=self.interval_minutes) <= now
